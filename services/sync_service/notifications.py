"""Progress events and critical error notifications."""

import inspect
import logging
from typing import Awaitable, Callable, List, Optional, Union

import httpx

from notesync.config import get_notification_config
from notesync.models import SyncProgress

logger = logging.getLogger(__name__)

ProgressListener = Callable[[SyncProgress], Union[None, Awaitable[None]]]


class ProgressNotifier:
    """Delivers progress events to subscribers in the order they were emitted."""

    def __init__(self):
        self._listeners: List[ProgressListener] = []

    def subscribe(self, listener: ProgressListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: ProgressListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def emit(
        self,
        operation: str,
        percent: int,
        message: str = "",
        processed: int = 0,
        total: int = 0
    ) -> SyncProgress:
        """Build a progress event and hand it to every subscriber."""
        event = SyncProgress(
            operation=operation,
            progress_percent=max(0, min(100, percent)),
            message=message,
            items_processed=processed,
            total_items=total,
        )
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                # A broken observer must not break the cycle
                logger.error(f"Progress listener failed: {e}", exc_info=True)
        return event


class NotificationService:
    """Reports aborted sync cycles to the log and an optional webhook."""

    def __init__(self, enabled: Optional[bool] = None, webhook_url: Optional[str] = None):
        config = get_notification_config()
        self.notification_enabled = config["enabled"] if enabled is None else enabled
        self.notification_webhook = webhook_url or config["webhook_url"]

    async def send_critical_error_notification(
        self,
        session_id: str,
        error_message: str,
        context: Optional[dict] = None
    ):
        """
        Report a sync cycle that aborted.

        The message is always logged. It is also posted to the webhook when one is configured.
        """
        if not self.notification_enabled:
            logger.info(f"Notifications disabled, not reporting aborted session {session_id}")
            return

        lines = [
            "Cloud sync aborted",
            f"Session: {session_id}",
            f"Reason: {error_message}",
        ]
        lines.extend(f"{key}: {value}" for key, value in (context or {}).items())
        text = "\n".join(lines)
        logger.warning(f"Sync abort notification: {text}")

        if not self.notification_webhook:
            return
        payload = {"text": text, "session_id": session_id, "error": error_message}
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                await client.post(self.notification_webhook, json=payload)
            logger.info(f"Abort notification delivered for session {session_id}")
        except httpx.HTTPError as e:
            logger.error(f"Failed to deliver abort notification: {e}")
