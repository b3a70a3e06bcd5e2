"""Periodic background sync."""

import asyncio
import logging
from typing import Optional

from notesync.errors import SyncError

logger = logging.getLogger(__name__)

PENDING_POLL_SECONDS = 1.0


class PeriodicSyncScheduler:
    """Runs a full sync every ``sync_interval_seconds`` and drains queued changes in between."""

    def __init__(self, orchestrator, poll_interval: float = PENDING_POLL_SECONDS):
        self.orchestrator = orchestrator
        self.poll_interval = poll_interval
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._stopping = asyncio.Event()
        self.orchestrator.resume()
        self._task = asyncio.create_task(self._run())
        logger.info("Periodic sync scheduler started")

    async def stop(self) -> None:
        """Stop after the current cycle finishes its in-flight note operations."""
        if not self.is_running:
            return
        self._stopping.set()
        self.orchestrator.request_shutdown()
        try:
            await self._task
        finally:
            self._task = None
        logger.info("Periodic sync scheduler stopped")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_full_sync = loop.time()

        while not self._stopping.is_set():
            try:
                settings = self.orchestrator.settings_store.load_settings()
            except SyncError as e:
                logger.error(f"Scheduler could not load settings: {e}")
                settings = None

            if settings is not None and settings.is_enabled:
                if loop.time() >= next_full_sync:
                    result = await self.orchestrator.execute_sync(settings)
                    if not result.success:
                        logger.warning(f"Scheduled sync did not succeed: {result.error_message}")
                    next_full_sync = loop.time() + max(1, settings.sync_interval_seconds)
                else:
                    await self.orchestrator.process_pending_changes(settings)

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
