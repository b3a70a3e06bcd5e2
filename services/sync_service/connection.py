"""Cloud provider connection lifecycle and status state machine."""

import logging
import threading
from typing import Callable, List, Optional

from notesync.errors import AuthenticationError
from notesync.models import CloudProvider, SyncStatus
from services.remote_storage.registry import ProviderRegistry
from services.remote_storage.transport import RemoteTransport

logger = logging.getLogger(__name__)

StatusListener = Callable[[SyncStatus, SyncStatus], None]

# Allowed transitions; DISCONNECTED is reachable from anywhere via disconnect()
ALLOWED_TRANSITIONS = {
    SyncStatus.DISCONNECTED: {SyncStatus.CONNECTING},
    SyncStatus.CONNECTING: {SyncStatus.IDLE, SyncStatus.ERROR, SyncStatus.DISCONNECTED},
    SyncStatus.IDLE: {SyncStatus.SYNCING, SyncStatus.CONNECTING, SyncStatus.DISCONNECTED},
    SyncStatus.SYNCING: {SyncStatus.IDLE, SyncStatus.ERROR, SyncStatus.DISCONNECTED},
    SyncStatus.ERROR: {SyncStatus.CONNECTING, SyncStatus.IDLE, SyncStatus.DISCONNECTED},
}


class ConnectionManager:
    """Owns provider selection, authentication and the connection status."""

    def __init__(self, registry: ProviderRegistry):
        """
        Initialize the connection manager.

        Args:
            registry: Registry used to create provider transports
        """
        self.registry = registry
        self._status = SyncStatus.DISCONNECTED
        self._lock = threading.Lock()
        self._transport: Optional[RemoteTransport] = None
        self._provider: Optional[CloudProvider] = None
        self._last_error: Optional[str] = None
        self._listeners: List[StatusListener] = []

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def current_provider(self) -> Optional[CloudProvider]:
        return self._provider

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def transport(self) -> Optional[RemoteTransport]:
        return self._transport

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def compare_and_set(self, expected: SyncStatus, new: SyncStatus) -> bool:
        """
        Atomically move from ``expected`` to ``new``.

        Returns:
            True if the transition happened, False if the current status
            was not ``expected`` or the transition is not allowed
        """
        with self._lock:
            if self._status != expected or new not in ALLOWED_TRANSITIONS[expected]:
                return False
            self._status = new
        logger.debug(f"Status {expected.value} -> {new.value}")
        self._notify(expected, new)
        return True

    def _force_status(self, new: SyncStatus) -> None:
        with self._lock:
            old = self._status
            self._status = new
        if old != new:
            self._notify(old, new)

    def _notify(self, old: SyncStatus, new: SyncStatus) -> None:
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception as e:
                logger.error(f"Status listener failed: {e}", exc_info=True)

    def mark_error(self, reason: str) -> None:
        """Record a failure and move to ERROR from CONNECTING or SYNCING."""
        self._last_error = reason
        with self._lock:
            current = self._status
        if current in (SyncStatus.CONNECTING, SyncStatus.SYNCING):
            self.compare_and_set(current, SyncStatus.ERROR)

    async def connect(self, provider: CloudProvider) -> bool:
        """
        Connect to a cloud provider and authenticate.

        Rejected immediately while a connection attempt or a sync is in flight.

        Args:
            provider: The provider to connect to

        Returns:
            True if connected, False otherwise (reason in ``last_error``)
        """
        with self._lock:
            current = self._status
            if current in (SyncStatus.CONNECTING, SyncStatus.SYNCING):
                logger.warning(f"Connect to {provider.value} rejected: status is {current.value}")
                return False
            self._status = SyncStatus.CONNECTING
        self._notify(current, SyncStatus.CONNECTING)

        logger.info(f"Connecting to {provider.value}")
        await self._release_transport()

        try:
            transport = self.registry.create_provider(provider)
            authenticated = await transport.authenticate()
        except Exception as e:
            logger.error(f"Connection to {provider.value} failed: {e}", exc_info=True)
            self.mark_error(str(e))
            return False

        if not authenticated:
            transport.close()
            self.mark_error(f"Authentication with {provider.value} was rejected")
            logger.error(self._last_error)
            return False

        self._transport = transport
        self._provider = provider
        self._last_error = None
        self.compare_and_set(SyncStatus.CONNECTING, SyncStatus.IDLE)
        logger.info(f"Connected to {provider.value}")
        return True

    async def disconnect(self) -> None:
        """Discard credentials and move to DISCONNECTED. Never raises."""
        await self._release_transport()
        self._provider = None
        self._last_error = None
        self._force_status(SyncStatus.DISCONNECTED)
        logger.info("Disconnected from cloud provider")

    async def _release_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            await transport.sign_out()
        except Exception as e:
            logger.warning(f"Sign-out from {transport.provider_name} failed, clearing local state anyway: {e}")
        finally:
            transport.close()

    def ensure_transport(self) -> RemoteTransport:
        """
        Return the authenticated transport.

        Raises:
            AuthenticationError: If there is none or its credentials expired
        """
        transport = self._transport
        if transport is None or not transport.is_authenticated:
            raise AuthenticationError("Not authenticated with a cloud provider")
        return transport
