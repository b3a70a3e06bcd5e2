"""Unit tests for progress events and critical error notifications."""

from unittest.mock import AsyncMock, MagicMock, Mock, patch

import httpx
import pytest

from services.sync_service.notifications import NotificationService, ProgressNotifier


class TestProgressNotifier:
    """Tests for ProgressNotifier."""

    @pytest.mark.asyncio
    async def test_events_delivered_in_order(self):
        notifier = ProgressNotifier()
        seen = []
        notifier.subscribe(lambda event: seen.append((event.operation, event.progress_percent)))

        await notifier.emit("Connecting", 0)
        await notifier.emit("Uploading", 50, "Uploading note a", 1, 2)
        await notifier.emit("Complete", 100)

        assert seen == [("Connecting", 0), ("Uploading", 50), ("Complete", 100)]

    @pytest.mark.asyncio
    async def test_async_listener(self):
        notifier = ProgressNotifier()
        listener = AsyncMock()
        notifier.subscribe(listener)

        event = await notifier.emit("Fetching", 10, "Reading remote manifest...", 0, 3)

        listener.assert_awaited_once_with(event)
        assert event.total_items == 3

    @pytest.mark.asyncio
    async def test_percent_is_clamped(self):
        event = await ProgressNotifier().emit("Odd", 140)

        assert event.progress_percent == 100

    @pytest.mark.asyncio
    async def test_broken_listener_does_not_stop_others(self):
        notifier = ProgressNotifier()
        good = Mock()
        notifier.subscribe(Mock(side_effect=RuntimeError("closed window")))
        notifier.subscribe(good)

        await notifier.emit("Complete", 100)

        good.assert_called_once()

    def test_subscribe_unsubscribe(self):
        notifier = ProgressNotifier()
        listener = Mock()

        notifier.subscribe(listener)
        notifier.subscribe(listener)
        assert notifier.listener_count == 1

        notifier.unsubscribe(listener)
        assert notifier.listener_count == 0


class TestNotificationService:
    """Tests for NotificationService."""

    @pytest.mark.asyncio
    async def test_disabled_sends_nothing(self):
        service = NotificationService(enabled=False, webhook_url="https://hooks.example.com/x")

        with patch("services.sync_service.notifications.httpx.AsyncClient") as client_cls:
            await service.send_critical_error_notification("session-1", "provider down")

        client_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_posts_to_webhook(self):
        service = NotificationService(enabled=True, webhook_url="https://hooks.example.com/x")
        client = MagicMock()
        client.post = AsyncMock()
        client_cls = MagicMock()
        client_cls.return_value.__aenter__ = AsyncMock(return_value=client)
        client_cls.return_value.__aexit__ = AsyncMock(return_value=False)

        with patch("services.sync_service.notifications.httpx.AsyncClient", client_cls):
            await service.send_critical_error_notification(
                "session-1", "provider down", {"requires_reconnect": True}
            )

        args, kwargs = client.post.call_args
        assert args[0] == "https://hooks.example.com/x"
        assert kwargs["json"]["session_id"] == "session-1"
        assert kwargs["json"]["error"] == "provider down"
        assert "requires_reconnect" in kwargs["json"]["text"]

    @pytest.mark.asyncio
    async def test_webhook_failure_is_swallowed(self):
        service = NotificationService(enabled=True, webhook_url="https://hooks.example.com/x")
        client = MagicMock()
        client.post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        client_cls = MagicMock()
        client_cls.return_value.__aenter__ = AsyncMock(return_value=client)
        client_cls.return_value.__aexit__ = AsyncMock(return_value=False)

        with patch("services.sync_service.notifications.httpx.AsyncClient", client_cls):
            await service.send_critical_error_notification("session-1", "provider down")

        client.post.assert_awaited_once()
