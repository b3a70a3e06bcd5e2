"""Note Sync Service - HTTP control surface for the cloud sync engine."""

import logging
import sys
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))
from notesync.config import get_engine_config, get_env
from notesync.db_operations import DatabaseOperations
from notesync.encryption import EncryptionService
from notesync.models import CloudProvider, CloudSyncSettings
from services.remote_storage.registry import build_default_registry
from services.sync_service.conflicts import ConflictResolver, get_policy
from services.sync_service.connection import ConnectionManager
from services.sync_service.notifications import NotificationService, ProgressNotifier
from services.sync_service.orchestrator import SyncOrchestrator
from services.sync_service.scheduler import PeriodicSyncScheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

DEFAULT_CONFLICT_POLICY = "keep_most_recent"

# Global instances
db_ops: Optional[DatabaseOperations] = None
orchestrator: Optional[SyncOrchestrator] = None
scheduler: Optional[PeriodicSyncScheduler] = None


def scheduler_enabled() -> bool:
    """Whether the periodic background sync runs inside the service."""
    return get_env("SYNC_SCHEDULER_ENABLED", "true").lower() == "true"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global db_ops, orchestrator, scheduler

    logger.info("Note Sync Service starting up...")

    db_ops = DatabaseOperations()
    db_ops.create_tables()
    logger.info("Database connection initialized")

    encryption_service = EncryptionService(salt=db_ops.get_or_create_key_salt())
    logger.info("Encryption service initialized")

    registry = build_default_registry()
    logger.info(f"Configured providers: {[p.value for p in registry.available_providers()]}")

    config = get_engine_config()
    resolver = ConflictResolver(
        auto_policy=get_policy(config.conflict_policy or DEFAULT_CONFLICT_POLICY),
        preview_length=config.preview_length
    )
    orchestrator = SyncOrchestrator(
        note_store=db_ops,
        connection=ConnectionManager(registry),
        encryption_service=encryption_service,
        settings_store=db_ops,
        conflict_resolver=resolver,
        engine_config=config,
        progress=ProgressNotifier(),
        notification_service=NotificationService()
    )

    scheduler = PeriodicSyncScheduler(orchestrator)
    if scheduler_enabled():
        scheduler.start()

    yield

    # Cleanup
    await scheduler.stop()
    await orchestrator.connection.disconnect()
    logger.info("Note Sync Service shutting down...")


# Create FastAPI application
app = FastAPI(
    title="Note Sync Service",
    description="Synchronizes local notes with a cloud storage provider",
    version="0.1.0",
    lifespan=lifespan
)


# Error handling middleware
@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """Global error handling middleware."""
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc)
            }
        )


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    db_healthy = False
    try:
        with db_ops.get_session() as session:
            session.execute(text("SELECT 1"))
        db_healthy = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")

    return {
        "status": "healthy" if db_healthy else "degraded",
        "service": "note_sync_service",
        "version": "0.1.0",
        "dependencies": {
            "database": "up" if db_healthy else "down"
        },
        "sync_status": orchestrator.status.value
    }


@app.get("/", status_code=status.HTTP_200_OK)
async def root():
    """Root endpoint."""
    return {
        "service": "Note Sync Service",
        "version": "0.1.0",
        "status": "running"
    }


# Request/Response models
class ConnectRequest(BaseModel):
    """Request model for connecting to a provider."""
    provider: CloudProvider


class ConnectResponse(BaseModel):
    """Response model for connect/disconnect."""
    status: str
    provider: Optional[str] = None
    error: Optional[str] = None


class PassphraseRequest(BaseModel):
    """Request model for setting or verifying the passphrase."""
    passphrase: str


class SettingsRequest(BaseModel):
    """Request model for updating sync settings."""
    is_enabled: bool
    provider: Optional[CloudProvider] = None
    sync_interval_seconds: int = 300
    encrypt_data: bool = True


@app.get("/sync/status", status_code=status.HTTP_200_OK)
async def get_sync_status():
    """Current engine state and the last cycle result."""
    return orchestrator.summary()


@app.post("/sync", status_code=status.HTTP_200_OK)
async def execute_sync():
    """
    Run a full sync cycle and return its result.

    A request made while another cycle runs is answered immediately with
    ``success: false`` and "Sync already in progress".
    """
    logger.info("Received manual sync request")
    result = await orchestrator.execute_sync()
    return result.to_dict()


@app.post("/sync/notes/{note_id}", status_code=status.HTTP_200_OK)
async def sync_single_note(note_id: str):
    """Run a sync cycle restricted to one note."""
    logger.info(f"Received sync request for note {note_id}")
    result = await orchestrator.sync_note(note_id)
    return result.to_dict()


@app.post("/connect", response_model=ConnectResponse, status_code=status.HTTP_200_OK)
async def connect(request: ConnectRequest):
    """Connect to a cloud provider."""
    if not orchestrator.connection.registry.is_registered(request.provider):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Provider {request.provider.value} is not configured"
        )

    connected = await orchestrator.connect(request.provider)
    if not connected:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=orchestrator.connection.last_error or f"Could not connect to {request.provider.value}"
        )

    return ConnectResponse(status=orchestrator.status.value, provider=request.provider.value)


@app.post("/disconnect", response_model=ConnectResponse, status_code=status.HTTP_200_OK)
async def disconnect():
    """Disconnect from the cloud provider and forget the passphrase."""
    await orchestrator.disconnect()
    return ConnectResponse(status=orchestrator.status.value)


@app.post("/passphrase", status_code=status.HTTP_200_OK)
async def set_passphrase(request: PassphraseRequest):
    """Set the encryption passphrase for this session."""
    try:
        orchestrator.set_encryption_passphrase(request.passphrase)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {"message": "Passphrase set"}


@app.post("/passphrase/verify", status_code=status.HTTP_200_OK)
async def verify_passphrase(request: PassphraseRequest):
    """Check a passphrase against the stored hash."""
    return {"valid": orchestrator.verify_passphrase(request.passphrase)}


@app.put("/settings", status_code=status.HTTP_200_OK)
async def update_settings(request: SettingsRequest):
    """Replace the sync settings; they apply from the next cycle."""
    if request.sync_interval_seconds < 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="sync_interval_seconds must be at least 1"
        )

    settings = db_ops.save_settings(CloudSyncSettings(
        is_enabled=request.is_enabled,
        provider=request.provider,
        sync_interval_seconds=request.sync_interval_seconds,
        encrypt_data=request.encrypt_data,
    ))
    logger.info(f"Sync settings updated: enabled={settings.is_enabled}, provider={settings.provider}")
    return {
        "is_enabled": settings.is_enabled,
        "provider": settings.provider.value if settings.provider else None,
        "sync_interval_seconds": settings.sync_interval_seconds,
        "encrypt_data": settings.encrypt_data,
    }


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("SYNC_SERVICE_PORT", 8005))
    uvicorn.run(app, host="0.0.0.0", port=port)
