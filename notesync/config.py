"""Shared configuration utilities."""

import os
from dataclasses import dataclass
from typing import Optional

from notesync.models import CloudProvider


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> str:
    """Get environment variable with optional default and required validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value


def _get_int(key: str, default: int) -> int:
    raw = get_env(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {key} must be an integer, got {raw!r}")


def _get_float(key: str, default: float) -> float:
    raw = get_env(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {key} must be a number, got {raw!r}")


def get_database_url() -> str:
    """Get the local note database URL from environment."""
    return get_env("NOTESYNC_DATABASE_URL", "sqlite:///notesync.db")


@dataclass
class EngineConfig:
    """Tuning knobs for the sync engine."""
    max_concurrency: int = 4
    operation_timeout: float = 30.0
    max_retries: int = 3
    retry_initial_delay: float = 1.0
    conflict_policy: Optional[str] = None
    preview_length: int = 200


def get_engine_config() -> EngineConfig:
    """Get sync engine configuration from environment."""
    config = EngineConfig(
        max_concurrency=_get_int("SYNC_MAX_CONCURRENCY", 4),
        operation_timeout=_get_float("SYNC_OPERATION_TIMEOUT", 30.0),
        max_retries=_get_int("SYNC_MAX_RETRIES", 3),
        retry_initial_delay=_get_float("SYNC_RETRY_INITIAL_DELAY", 1.0),
        conflict_policy=get_env("SYNC_CONFLICT_POLICY") or None,
        preview_length=_get_int("SYNC_PREVIEW_LENGTH", 200),
    )
    if config.max_concurrency < 1:
        raise ValueError("SYNC_MAX_CONCURRENCY must be at least 1")
    return config


def get_provider_config(provider: CloudProvider) -> dict:
    """Get transport configuration for a provider from environment.

    Variables are prefixed with the provider name, e.g. ``SYNC_ONEDRIVE_FOLDER``
    or ``SYNC_GOOGLEDRIVE_S3_BUCKET``.
    """
    prefix = f"SYNC_{provider.value.upper()}"
    return {
        "folder": get_env(f"{prefix}_FOLDER"),
        "s3_bucket": get_env(f"{prefix}_S3_BUCKET"),
        "s3_prefix": get_env(f"{prefix}_S3_PREFIX", "notes/"),
        "s3_endpoint_url": get_env(f"{prefix}_S3_ENDPOINT_URL"),
        "region": get_env(f"{prefix}_S3_REGION", "us-east-1"),
        "access_key_id": get_env(f"{prefix}_ACCESS_KEY_ID"),
        "secret_access_key": get_env(f"{prefix}_SECRET_ACCESS_KEY"),
    }


def get_notification_config() -> dict:
    """Get critical error notification configuration from environment."""
    return {
        "enabled": get_env("ENABLE_NOTIFICATIONS", "false").lower() == "true",
        "webhook_url": get_env("NOTIFICATION_WEBHOOK_URL"),
    }
