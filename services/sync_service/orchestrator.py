"""Sync orchestration logic."""

import asyncio
import json
import logging
import threading
from datetime import timedelta
from typing import Awaitable, Callable, Collection, Dict, List, Optional, Tuple

from notesync.config import EngineConfig
from notesync.encryption import EncryptionService
from notesync.errors import (
    AuthenticationError,
    ConflictUnresolved,
    DecryptionError,
    RecordNotFoundError,
    SyncError,
    TransportError,
)
from notesync.models import (
    CloudProvider,
    CloudSyncSettings,
    Note,
    PendingSyncChange,
    PlanAction,
    RemoteNoteRecord,
    SyncChangeType,
    SyncConflictResolution,
    SyncResult,
    SyncSession,
    SyncStatus,
    ensure_utc,
    utc_now,
)
from notesync.note_store import NoteStore
from notesync.retry import calculate_retry_delay, retry_with_exponential_backoff
from services.remote_storage.transport import RemoteTransport
from services.sync_service.conflicts import ConflictResolver, merge_notes
from services.sync_service.connection import ConnectionManager
from services.sync_service.notifications import NotificationService, ProgressNotifier
from services.sync_service.reconciler import PlanEntry, ReconciliationPlan, compute_plan

logger = logging.getLogger(__name__)

MAX_PENDING_RETRY_ATTEMPTS = 3

SYNC_IN_PROGRESS = "Sync already in progress"
NOT_CONNECTED = "Not connected to cloud provider"
SHUTTING_DOWN = "Sync engine is shutting down"


class SyncOrchestrator:
    """Drives sync cycles between the local note store and a cloud provider."""

    def __init__(
        self,
        note_store: NoteStore,
        connection: ConnectionManager,
        encryption_service: EncryptionService,
        settings_store,
        conflict_resolver: Optional[ConflictResolver] = None,
        engine_config: Optional[EngineConfig] = None,
        progress: Optional[ProgressNotifier] = None,
        notification_service: Optional[NotificationService] = None
    ):
        """
        Initialize the sync orchestrator.

        Args:
            note_store: Local note store
            connection: Connection manager owning the transport and status
            encryption_service: Codec for note payloads
            settings_store: Provides ``load_settings()`` and stores the
                passphrase hash (``store_passphrase_hash``/``get_passphrase_hash``)
            conflict_resolver: Decides conflicts; conflicts are deferred if omitted
            engine_config: Concurrency, timeout and retry settings
            progress: Progress event notifier
            notification_service: Critical error notifications
        """
        self.note_store = note_store
        self.connection = connection
        self.encryption_service = encryption_service
        self.settings_store = settings_store
        self.conflict_resolver = conflict_resolver or ConflictResolver()
        self.config = engine_config or EngineConfig()
        self.progress = progress or ProgressNotifier()
        self.notification_service = notification_service or NotificationService(enabled=False)

        self._passphrase: Optional[str] = None
        self._last_sync_result: Optional[SyncResult] = None
        self._stop_requested = threading.Event()
        self._pending: List[PendingSyncChange] = []
        self._pending_lock = threading.Lock()
        self._progress_done = 0
        self._progress_total = 0
        self._auth_failed = False

    # Public surface

    @property
    def status(self) -> SyncStatus:
        return self.connection.status

    @property
    def current_provider(self) -> Optional[CloudProvider]:
        return self.connection.current_provider

    @property
    def last_sync_result(self) -> Optional[SyncResult]:
        return self._last_sync_result

    @property
    def pending_changes(self) -> Tuple[PendingSyncChange, ...]:
        with self._pending_lock:
            return tuple(self._pending)

    async def connect(self, provider: CloudProvider) -> bool:
        return await self.connection.connect(provider)

    async def disconnect(self) -> None:
        """Disconnect, forget the passphrase and drop queued changes."""
        await self.connection.disconnect()
        self._passphrase = None
        with self._pending_lock:
            self._pending.clear()

    def set_encryption_passphrase(self, passphrase: str) -> None:
        """Keep the passphrase in memory and store its verification hash."""
        if not passphrase:
            raise ValueError("Passphrase cannot be empty")
        self._passphrase = passphrase
        self.settings_store.store_passphrase_hash(EncryptionService.hash_passphrase(passphrase))
        logger.info("Encryption passphrase set")

    def verify_passphrase(self, passphrase: str) -> bool:
        """Check a re-entered passphrase against the stored hash."""
        return EncryptionService.verify_passphrase(passphrase, self.settings_store.get_passphrase_hash())

    @property
    def has_passphrase(self) -> bool:
        return self._passphrase is not None

    def request_shutdown(self) -> None:
        """Let in-flight note operations finish and start no new ones."""
        logger.info("Shutdown requested, stopping after in-flight note operations")
        self._stop_requested.set()

    def resume(self) -> None:
        """Accept new cycles again after a shutdown request."""
        self._stop_requested.clear()

    async def execute_sync(self, settings: Optional[CloudSyncSettings] = None) -> SyncResult:
        """
        Run a full sync cycle.

        Args:
            settings: Settings for this cycle; loaded from the settings store if omitted

        Returns:
            SyncResult. Never raises; failures are reported in the result.
        """
        return await self._run(settings, note_ids=None)

    async def sync_note(self, note_id: str, settings: Optional[CloudSyncSettings] = None) -> SyncResult:
        """Run a sync cycle restricted to a single note."""
        return await self._run(settings, note_ids={note_id})

    # Pending change queue

    def queue_note_for_sync(
        self,
        note_id: str,
        change_type: SyncChangeType = SyncChangeType.CREATE_OR_UPDATE
    ) -> PendingSyncChange:
        """Queue a note change, replacing any earlier queued change for the same note."""
        change = PendingSyncChange(note_id=note_id, change_type=change_type)
        with self._pending_lock:
            self._pending = [c for c in self._pending if c.note_id != note_id]
            self._pending.append(change)
        logger.debug(f"Queued {change_type.value} for note {note_id}")
        return change

    async def process_pending_changes(self, settings: Optional[CloudSyncSettings] = None) -> Optional[SyncResult]:
        """
        Sync the queued changes that are due.

        Failed changes are retried with exponential backoff and dropped after
        a fixed number of attempts.

        Returns:
            The result of the cycle, or None if nothing was due
        """
        if self.connection.status != SyncStatus.IDLE:
            # Queued changes wait for the next full cycle to reconnect
            return None

        now = utc_now()
        with self._pending_lock:
            due = sorted(
                (c for c in self._pending if c.next_retry_at is None or c.next_retry_at <= now),
                key=lambda c: c.queued_at
            )
        if not due:
            return None

        result = await self._run(settings, note_ids={c.note_id for c in due})
        if result.session_id is None:
            # The cycle never started; keep everything queued
            return result

        failed_ids = {f.note_id for f in result.failures}
        for change in due:
            if change.note_id in failed_ids or (result.error_message and not result.failures):
                self._handle_retry(change)
            else:
                self._remove_pending(change)
        return result

    def _handle_retry(self, change: PendingSyncChange) -> None:
        change.retry_count += 1
        if change.retry_count >= MAX_PENDING_RETRY_ATTEMPTS:
            logger.warning(f"Giving up on queued change for note {change.note_id} after {change.retry_count} attempts")
            self._remove_pending(change)
            return
        delay = calculate_retry_delay(change.retry_count)
        change.next_retry_at = utc_now() + timedelta(seconds=delay)
        logger.info(f"Retrying queued change for note {change.note_id} in {delay}s")

    def _remove_pending(self, change: PendingSyncChange) -> None:
        with self._pending_lock:
            if change in self._pending:
                self._pending.remove(change)

    # Cycle

    def _load_settings(self, settings: Optional[CloudSyncSettings]) -> CloudSyncSettings:
        if settings is not None:
            return settings
        return self.settings_store.load_settings()

    async def _run(self, settings: Optional[CloudSyncSettings], note_ids: Optional[Collection[str]]) -> SyncResult:
        if self._stop_requested.is_set():
            return SyncResult(success=False, error_message=SHUTTING_DOWN)

        try:
            settings = self._load_settings(settings)
        except SyncError as e:
            logger.error(f"Could not load sync settings: {e}")
            return SyncResult(success=False, error_message=f"Could not load sync settings: {e}")

        if not settings.is_enabled:
            return SyncResult(success=False, error_message="Cloud sync is disabled")

        if settings.encrypt_data and not self._passphrase:
            return SyncResult(success=False, error_message="Encryption is enabled but no passphrase is set")

        if self.connection.status in (SyncStatus.DISCONNECTED, SyncStatus.ERROR) and settings.provider:
            if not await self.connection.connect(settings.provider):
                result = SyncResult(
                    success=False,
                    error_message=f"Failed to connect to {settings.provider.value}: {self.connection.last_error}"
                )
                self._last_sync_result = result
                return result

        if not self.connection.compare_and_set(SyncStatus.IDLE, SyncStatus.SYNCING):
            current = self.connection.status
            if current in (SyncStatus.SYNCING, SyncStatus.CONNECTING):
                logger.info("Sync request rejected: a sync is already in progress")
                return SyncResult(success=False, error_message=SYNC_IN_PROGRESS)
            return SyncResult(success=False, error_message=NOT_CONNECTED)

        session = SyncSession()
        self._auth_failed = False
        scope = "full" if note_ids is None else f"{len(note_ids)} note(s)"
        logger.info(f"Starting sync session {session.session_id} ({scope})")

        try:
            result = await self._run_cycle(session, settings, note_ids)
        except Exception as e:
            logger.error(f"Sync session {session.session_id} failed with error: {e}", exc_info=True)
            result = await self._abort(session, f"Sync failed: {e}", requires_reconnect=False)

        self._last_sync_result = result
        return result

    async def _run_cycle(
        self,
        session: SyncSession,
        settings: CloudSyncSettings,
        note_ids: Optional[Collection[str]]
    ) -> SyncResult:
        await self.progress.emit("Connecting", 0, "Checking connection to cloud provider...")

        # Step 2: active transport
        try:
            transport = self.connection.ensure_transport()
        except AuthenticationError as e:
            return await self._abort(session, str(e), requires_reconnect=True)

        # Step 3: snapshot both sides
        try:
            local_notes = self.note_store.get_all_notes()
            tombstones = self.note_store.get_tombstones()
        except SyncError as e:
            return await self._abort(session, f"Failed to read local notes: {e}", requires_reconnect=False)

        await self.progress.emit("Fetching", 10, "Reading remote manifest...")
        try:
            manifest = await self._call("list_manifest", transport.list_manifest)
        except AuthenticationError as e:
            return await self._abort(session, f"Authentication failed: {e}", requires_reconnect=True)
        except TransportError as e:
            return await self._abort(session, f"Cannot reach cloud provider: {e}", requires_reconnect=False)

        # Step 4: plan
        plan = compute_plan(local_notes, manifest, tombstones, note_ids=note_ids)
        for entry in plan.damaged:
            logger.error(f"Remote record for note {entry.id} is unreadable, leaving it untouched: {entry.error}")
            session.record_failure(entry.id, "read_remote", TransportError(f"Remote record is unreadable: {entry.error}"))
        self._progress_done = 0
        self._progress_total = plan.pending_work
        await self.progress.emit(
            "Reconciling", 20,
            f"{plan.pending_work} of {len(plan.entries)} note(s) need attention",
            0, self._progress_total
        )

        # Steps 5-8
        await self._run_phase(session, plan.by_action(PlanAction.UPLOAD_LOCAL), "Uploading",
                              lambda entry: self._upload(session, transport, settings, entry))
        await self._run_phase(session, plan.by_action(PlanAction.DOWNLOAD_REMOTE), "Downloading",
                              lambda entry: self._download(session, transport, settings, entry))
        await self._run_phase(session, plan.by_action(PlanAction.CONFLICT), "Resolving conflicts",
                              lambda entry: self._resolve_conflict(session, transport, settings, entry))
        await self._run_phase(session, plan.by_action(PlanAction.DELETE_LOCAL), "Deleting",
                              lambda entry: self._delete_local(session, entry))
        await self._run_phase(session, plan.by_action(PlanAction.DELETE_REMOTE), "Deleting",
                              lambda entry: self._delete_remote(session, transport, entry))
        self._clear_stale_tombstones(plan)

        # Step 9
        stopped = self._stop_requested.is_set()
        if stopped:
            session.error_message = "Sync stopped before completion"

        result = session.finalize(success=not stopped)

        if self._auth_failed:
            self.connection.mark_error("Credentials expired during sync")
        elif not self.connection.compare_and_set(SyncStatus.SYNCING, SyncStatus.IDLE):
            logger.info(f"Status changed to {self.connection.status.value} during sync")

        if note_ids is None and not stopped:
            self._clear_pending_after_full_sync(session, result)

        logger.info(
            f"Sync session {session.session_id} completed: {result.notes_uploaded} uploaded, "
            f"{result.notes_downloaded} downloaded, {result.notes_deleted_local + result.notes_deleted_remote} deleted, "
            f"{result.conflicts_detected} conflicts ({result.conflicts_resolved} resolved), "
            f"{len(result.failures)} failed"
        )
        await self.progress.emit(
            "Complete", 100,
            "Sync completed successfully." if result.success else (result.error_message or "Sync completed with errors."),
            self._progress_done, self._progress_total
        )
        return result

    async def _abort(self, session: SyncSession, message: str, requires_reconnect: bool) -> SyncResult:
        """End the cycle early. Status goes to ERROR, and back to IDLE unless a reconnect is needed."""
        logger.error(f"Sync session {session.session_id} aborted: {message}")
        session.error_message = message
        self.connection.mark_error(message)
        if not requires_reconnect:
            self.connection.compare_and_set(SyncStatus.ERROR, SyncStatus.IDLE)

        await self.notification_service.send_critical_error_notification(
            session_id=session.session_id,
            error_message=message,
            context={"requires_reconnect": requires_reconnect}
        )
        await self.progress.emit("Failed", 100, message)
        return session.finalize(success=False)

    async def _run_phase(
        self,
        session: SyncSession,
        entries: List[PlanEntry],
        operation: str,
        handler: Callable[[PlanEntry], Awaitable[None]]
    ) -> None:
        """Run one plan phase with bounded concurrency. Per-note errors never escape."""
        if not entries:
            return
        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def worker(entry: PlanEntry):
            async with semaphore:
                if self._stop_requested.is_set():
                    return
                try:
                    await handler(entry)
                except ConflictUnresolved as e:
                    logger.info(f"Note {entry.note_id} deferred to next cycle: {e}")
                except AuthenticationError as e:
                    self._auth_failed = True
                    logger.error(f"Authentication failed for note {entry.note_id}: {e}")
                    session.record_failure(entry.note_id, entry.action.value, e)
                except SyncError as e:
                    logger.error(f"Failed to process note {entry.note_id} ({entry.action.value}): {e}")
                    session.record_failure(entry.note_id, entry.action.value, e)
                except Exception as e:
                    logger.error(f"Error processing note {entry.note_id}: {e}", exc_info=True)
                    session.record_failure(entry.note_id, entry.action.value, e)

                self._progress_done += 1
                percent = 20 + (75 * self._progress_done) // max(1, self._progress_total)
                await self.progress.emit(operation, percent, f"{operation} note {entry.note_id}",
                                         self._progress_done, self._progress_total)

        await asyncio.gather(*(worker(entry) for entry in entries))

    async def _call(self, operation: str, func: Callable[..., Awaitable], *args, note_id: Optional[str] = None):
        """Invoke a transport call with a timeout and bounded retries for transport errors."""
        timeout = self.config.operation_timeout

        async def attempt():
            try:
                return await asyncio.wait_for(func(*args), timeout=timeout)
            except asyncio.TimeoutError:
                raise TransportError(f"{operation} timed out after {timeout}s", note_id=note_id)

        attempt.__name__ = operation
        retrying = retry_with_exponential_backoff(
            max_retries=self.config.max_retries,
            initial_delay=self.config.retry_initial_delay,
            exceptions=(TransportError,),
            no_retry=(RecordNotFoundError,)
        )(attempt)
        return await retrying()

    # Payload handling

    def _seal(self, note: Note, settings: CloudSyncSettings):
        plaintext = json.dumps(note.to_payload())
        return self.encryption_service.seal(plaintext, self._passphrase, settings.encrypt_data)

    def _open_record(self, record: RemoteNoteRecord, settings: CloudSyncSettings) -> Note:
        plaintext = self.encryption_service.open_bundle(
            record.payload, self._passphrase, require_encrypted=settings.encrypt_data
        )
        try:
            note = Note.from_payload(json.loads(plaintext))
        except (ValueError, KeyError, TypeError) as e:
            raise DecryptionError(f"Remote payload for note {record.id} is not a valid note: {e}", note_id=record.id)
        if note.id != record.id:
            raise DecryptionError(f"Remote payload for note {record.id} belongs to note {note.id}", note_id=record.id)
        note.sync_version = record.sync_version
        return note

    async def _push(self, transport: RemoteTransport, settings: CloudSyncSettings, note: Note, version: int) -> None:
        payload = self._seal(note, settings)
        await self._call(f"upload_{note.id}", transport.put_record,
                         note.id, version, note.modified_date, payload, note_id=note.id)

    async def _fetch(
        self,
        transport: RemoteTransport,
        settings: CloudSyncSettings,
        note_id: str
    ) -> Tuple[RemoteNoteRecord, Note]:
        record = await self._call(f"download_{note_id}", transport.get_payload, note_id, note_id=note_id)
        return record, self._open_record(record, settings)

    # Local store updates

    def _changed_since(self, snapshot: Note) -> Optional[Note]:
        """Return the current copy of a note, raising ConflictUnresolved if it was edited during the cycle."""
        current = self.note_store.get_note_by_id(snapshot.id)
        if current is not None and ensure_utc(current.modified_date) != ensure_utc(snapshot.modified_date):
            raise ConflictUnresolved("Note changed locally during sync", note_id=snapshot.id)
        return current

    def _mark_uploaded(self, snapshot: Note, version: int) -> None:
        """Record a successful upload without overwriting concurrent local edits."""
        current = self.note_store.get_note_by_id(snapshot.id)
        if current is None:
            logger.warning(f"Note {snapshot.id} was deleted locally during sync")
            return

        synced_at = max(utc_now(), ensure_utc(snapshot.modified_date))
        if ensure_utc(current.modified_date) > ensure_utc(snapshot.modified_date):
            # Leave the newer edit looking unsynced so the next cycle uploads it
            synced_at = ensure_utc(snapshot.modified_date)

        current.sync_version = max(current.sync_version, version)
        current.last_synced_date = synced_at
        self.note_store.upsert_note(current)

    def _adopt_remote(self, snapshot: Optional[Note], remote_note: Note) -> None:
        """Overwrite the local note with the remote copy and adopt its version."""
        if snapshot is None:
            current = self.note_store.get_note_by_id(remote_note.id)
            if current is not None:
                raise ConflictUnresolved("Note created locally during sync", note_id=remote_note.id)
        else:
            current = self._changed_since(snapshot)
            if current is None:
                raise ConflictUnresolved("Note deleted locally during sync", note_id=snapshot.id)

        local_version = current.sync_version if current else 0
        remote_note.sync_version = max(remote_note.sync_version, local_version)
        remote_note.last_synced_date = max(utc_now(), ensure_utc(remote_note.modified_date))
        self.note_store.upsert_note(remote_note)

    # Plan phase handlers

    async def _upload(
        self,
        session: SyncSession,
        transport: RemoteTransport,
        settings: CloudSyncSettings,
        entry: PlanEntry
    ) -> None:
        note = entry.local
        version = note.sync_version + 1
        await self._push(transport, settings, note, version)
        self._mark_uploaded(note, version)
        session.notes_uploaded += 1
        logger.info(f"Uploaded note {note.id} at version {version}")

    async def _download(
        self,
        session: SyncSession,
        transport: RemoteTransport,
        settings: CloudSyncSettings,
        entry: PlanEntry
    ) -> None:
        _, remote_note = await self._fetch(transport, settings, entry.note_id)
        self._adopt_remote(entry.local, remote_note)
        session.notes_downloaded += 1
        logger.info(f"Downloaded note {entry.note_id} at version {remote_note.sync_version}")

    async def _resolve_conflict(
        self,
        session: SyncSession,
        transport: RemoteTransport,
        settings: CloudSyncSettings,
        entry: PlanEntry
    ) -> None:
        session.conflicts_detected += 1
        record, remote_note = await self._fetch(transport, settings, entry.note_id)
        local = entry.local
        resolution = await self.conflict_resolver.resolve(local, remote_note)

        if local is None:
            await self._resolve_deletion_conflict(session, transport, entry, remote_note, resolution)
            return

        if resolution == SyncConflictResolution.NONE:
            raise ConflictUnresolved("Conflict left unresolved", note_id=entry.note_id)

        version = record.sync_version + 1

        if resolution == SyncConflictResolution.KEEP_LOCAL:
            self._changed_since(local)
            await self._push(transport, settings, local, version)
            self._mark_uploaded(local, version)
            session.notes_uploaded += 1

        elif resolution == SyncConflictResolution.KEEP_REMOTE:
            self._adopt_remote(local, remote_note)
            session.notes_downloaded += 1

        elif resolution == SyncConflictResolution.MERGE:
            self._changed_since(local)
            merged = merge_notes(local, remote_note)
            await self._push(transport, settings, merged, version)
            merged.sync_version = version
            merged.last_synced_date = max(utc_now(), ensure_utc(merged.modified_date))
            self.note_store.upsert_note(merged)
            session.notes_uploaded += 1

        session.conflicts_resolved += 1
        logger.info(f"Conflict on note {entry.note_id} resolved with {resolution.value}")

    async def _resolve_deletion_conflict(
        self,
        session: SyncSession,
        transport: RemoteTransport,
        entry: PlanEntry,
        remote_note: Note,
        resolution: SyncConflictResolution
    ) -> None:
        """Local deletion against a remote edit. Anything but KEEP_LOCAL restores the remote note."""
        if resolution == SyncConflictResolution.KEEP_LOCAL:
            await self._call(f"delete_{entry.note_id}", transport.delete_record, entry.note_id, note_id=entry.note_id)
            self.note_store.clear_tombstone(entry.note_id)
            session.notes_deleted_remote += 1
        else:
            self._adopt_remote(None, remote_note)
            session.notes_downloaded += 1
        session.conflicts_resolved += 1
        logger.info(f"Deletion conflict on note {entry.note_id} resolved with {resolution.value}")

    async def _delete_local(self, session: SyncSession, entry: PlanEntry) -> None:
        current = self._changed_since(entry.local)
        if current is None:
            return
        self.note_store.delete_note(entry.note_id, record_tombstone=False)
        session.notes_deleted_local += 1
        logger.info(f"Deleted local note {entry.note_id} (deleted remotely)")

    async def _delete_remote(self, session: SyncSession, transport: RemoteTransport, entry: PlanEntry) -> None:
        await self._call(f"delete_{entry.note_id}", transport.delete_record, entry.note_id, note_id=entry.note_id)
        self.note_store.clear_tombstone(entry.note_id)
        session.notes_deleted_remote += 1
        logger.info(f"Deleted remote note {entry.note_id} (deleted locally)")

    def _clear_stale_tombstones(self, plan: ReconciliationPlan) -> None:
        for tombstone in plan.stale_tombstones:
            try:
                self.note_store.clear_tombstone(tombstone.note_id)
            except SyncError as e:
                logger.warning(f"Could not clear tombstone for note {tombstone.note_id}: {e}")

    def _clear_pending_after_full_sync(self, session: SyncSession, result: SyncResult) -> None:
        failed_ids = {f.note_id for f in result.failures}
        with self._pending_lock:
            self._pending = [
                c for c in self._pending
                if c.note_id in failed_ids or c.queued_at > session.started_at
            ]

    def summary(self) -> Dict:
        """Snapshot of the engine state for status displays."""
        return {
            "status": self.status.value,
            "provider": self.current_provider.value if self.current_provider else None,
            "last_error": self.connection.last_error,
            "has_passphrase": self.has_passphrase,
            "pending_changes": len(self.pending_changes),
            "last_sync_result": self._last_sync_result.to_dict() if self._last_sync_result else None,
        }
