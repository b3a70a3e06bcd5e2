"""Unit tests for the connection manager and status state machine."""

from unittest.mock import AsyncMock, Mock

import pytest

from notesync.errors import AuthenticationError
from notesync.models import CloudProvider, SyncStatus
from services.remote_storage.folder_transport import FolderTransport
from services.remote_storage.registry import ProviderRegistry
from services.sync_service.connection import ConnectionManager


@pytest.fixture
def registry(tmp_path):
    registry = ProviderRegistry()
    registry.register_provider(CloudProvider.ONEDRIVE, lambda: FolderTransport(str(tmp_path), "onedrive"))
    return registry


@pytest.fixture
def connection(registry):
    return ConnectionManager(registry)


class TestStatusMachine:
    """Tests for compare-and-set transitions."""

    def test_starts_disconnected(self, connection):
        assert connection.status == SyncStatus.DISCONNECTED
        assert connection.current_provider is None

    def test_compare_and_set_requires_expected_status(self, connection):
        assert connection.compare_and_set(SyncStatus.IDLE, SyncStatus.SYNCING) is False
        assert connection.status == SyncStatus.DISCONNECTED

    def test_compare_and_set_rejects_illegal_transition(self, connection):
        assert connection.compare_and_set(SyncStatus.DISCONNECTED, SyncStatus.SYNCING) is False

    @pytest.mark.asyncio
    async def test_second_compare_and_set_loses(self, connection):
        await connection.connect(CloudProvider.ONEDRIVE)

        assert connection.compare_and_set(SyncStatus.IDLE, SyncStatus.SYNCING) is True
        assert connection.compare_and_set(SyncStatus.IDLE, SyncStatus.SYNCING) is False

    def test_listeners_receive_transitions(self, connection):
        seen = []
        connection.add_status_listener(lambda old, new: seen.append((old, new)))
        connection._force_status(SyncStatus.IDLE)

        connection.compare_and_set(SyncStatus.IDLE, SyncStatus.SYNCING)

        assert seen == [
            (SyncStatus.DISCONNECTED, SyncStatus.IDLE),
            (SyncStatus.IDLE, SyncStatus.SYNCING),
        ]

    def test_broken_listener_does_not_block_transition(self, connection):
        connection.add_status_listener(Mock(side_effect=RuntimeError("ui gone")))
        connection._force_status(SyncStatus.IDLE)

        assert connection.compare_and_set(SyncStatus.IDLE, SyncStatus.SYNCING) is True

    def test_mark_error_from_syncing(self, connection):
        connection._force_status(SyncStatus.SYNCING)

        connection.mark_error("boom")

        assert connection.status == SyncStatus.ERROR
        assert connection.last_error == "boom"


class TestConnect:
    """Tests for connect and disconnect."""

    @pytest.mark.asyncio
    async def test_connect_success(self, connection):
        assert await connection.connect(CloudProvider.ONEDRIVE) is True

        assert connection.status == SyncStatus.IDLE
        assert connection.current_provider == CloudProvider.ONEDRIVE
        assert connection.ensure_transport().provider_name == "onedrive"

    @pytest.mark.asyncio
    async def test_connect_unregistered_provider(self, connection):
        assert await connection.connect(CloudProvider.GOOGLE_DRIVE) is False

        assert connection.status == SyncStatus.ERROR
        assert "not registered" in connection.last_error

    @pytest.mark.asyncio
    async def test_connect_rejected_credentials(self):
        transport = Mock()
        transport.authenticate = AsyncMock(return_value=False)
        registry = ProviderRegistry()
        registry.register_provider(CloudProvider.ONEDRIVE, lambda: transport)
        connection = ConnectionManager(registry)

        assert await connection.connect(CloudProvider.ONEDRIVE) is False

        assert connection.status == SyncStatus.ERROR
        transport.close.assert_called_once()
        with pytest.raises(AuthenticationError):
            connection.ensure_transport()

    @pytest.mark.asyncio
    async def test_connect_rejected_while_syncing(self, connection):
        await connection.connect(CloudProvider.ONEDRIVE)
        connection.compare_and_set(SyncStatus.IDLE, SyncStatus.SYNCING)

        assert await connection.connect(CloudProvider.ONEDRIVE) is False
        assert connection.status == SyncStatus.SYNCING

    @pytest.mark.asyncio
    async def test_reconnect_after_error(self, connection):
        await connection.connect(CloudProvider.GOOGLE_DRIVE)

        assert await connection.connect(CloudProvider.ONEDRIVE) is True
        assert connection.status == SyncStatus.IDLE
        assert connection.last_error is None

    @pytest.mark.asyncio
    async def test_disconnect(self, connection):
        await connection.connect(CloudProvider.ONEDRIVE)
        transport = connection.transport

        await connection.disconnect()

        assert connection.status == SyncStatus.DISCONNECTED
        assert connection.current_provider is None
        assert connection.transport is None
        assert transport.is_authenticated is False

    @pytest.mark.asyncio
    async def test_disconnect_survives_sign_out_failure(self):
        transport = Mock()
        transport.authenticate = AsyncMock(return_value=True)
        transport.sign_out = AsyncMock(side_effect=RuntimeError("network down"))
        registry = ProviderRegistry()
        registry.register_provider(CloudProvider.ONEDRIVE, lambda: transport)
        connection = ConnectionManager(registry)
        await connection.connect(CloudProvider.ONEDRIVE)

        await connection.disconnect()

        assert connection.status == SyncStatus.DISCONNECTED
        transport.close.assert_called_once()
