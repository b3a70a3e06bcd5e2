"""Registry mapping cloud providers to transport factories."""

import logging
import threading
from typing import Callable, Dict, List

from notesync.config import get_provider_config
from notesync.models import CloudProvider
from services.remote_storage.folder_transport import FolderTransport
from services.remote_storage.s3_transport import S3Transport
from services.remote_storage.transport import RemoteTransport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], RemoteTransport]


class ProviderRegistry:
    """Creates transports for registered providers.

    New providers are added by registering a factory, without touching the
    connection manager.
    """

    def __init__(self):
        self._factories: Dict[CloudProvider, TransportFactory] = {}
        self._lock = threading.Lock()

    def register_provider(self, provider: CloudProvider, factory: TransportFactory) -> None:
        if factory is None:
            raise ValueError("factory must not be None")
        with self._lock:
            self._factories[provider] = factory

    def create_provider(self, provider: CloudProvider) -> RemoteTransport:
        """
        Create a transport instance.

        Raises:
            ValueError: If the provider is not registered
        """
        with self._lock:
            factory = self._factories.get(provider)
        if factory is None:
            raise ValueError(f"Cloud provider '{provider.value}' is not registered")
        return factory()

    def available_providers(self) -> List[CloudProvider]:
        with self._lock:
            return list(self._factories)

    def is_registered(self, provider: CloudProvider) -> bool:
        with self._lock:
            return provider in self._factories


def _factory_from_config(provider: CloudProvider, config: dict):
    if config.get("folder"):
        folder = config["folder"]
        return lambda: FolderTransport(folder, provider_name=provider.value)

    if config.get("s3_bucket"):
        return lambda: S3Transport(
            bucket_name=config["s3_bucket"],
            region=config["region"],
            access_key_id=config.get("access_key_id"),
            secret_access_key=config.get("secret_access_key"),
            endpoint_url=config.get("s3_endpoint_url"),
            prefix=config.get("s3_prefix") or "notes/",
            provider_name=provider.value,
        )

    return None


def build_default_registry() -> ProviderRegistry:
    """Register a transport for every provider configured in the environment."""
    registry = ProviderRegistry()
    for provider in CloudProvider:
        factory = _factory_from_config(provider, get_provider_config(provider))
        if factory is None:
            logger.info(f"No transport configured for {provider.value}")
            continue
        registry.register_provider(provider, factory)
        logger.info(f"Registered transport for {provider.value}")
    return registry
