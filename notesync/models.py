"""Shared data models for the note cloud sync engine."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

DEFAULT_NOTE_TITLE = "Untitled Note"


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp (accepting a trailing Z) into UTC."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))


class CloudProvider(str, Enum):
    """Supported cloud storage providers."""
    ONEDRIVE = "onedrive"
    GOOGLE_DRIVE = "googledrive"


class SyncStatus(str, Enum):
    """Connection and sync state."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class SyncConflictResolution(str, Enum):
    """Outcome of a conflict decision."""
    NONE = "none"
    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    MERGE = "merge"


class PlanAction(str, Enum):
    """Per-note decision computed by the reconciler."""
    UPLOAD_LOCAL = "upload_local"
    DOWNLOAD_REMOTE = "download_remote"
    CONFLICT = "conflict"
    NO_OP = "no_op"
    DELETE_LOCAL = "delete_local"
    DELETE_REMOTE = "delete_remote"


class SyncChangeType(str, Enum):
    """Kind of queued change."""
    CREATE_OR_UPDATE = "create_or_update"
    DELETE = "delete"


@dataclass
class Note:
    """A note as held by the local note store."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    title: str = DEFAULT_NOTE_TITLE
    content: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_date: datetime = field(default_factory=utc_now)
    modified_date: datetime = field(default_factory=utc_now)
    sync_version: int = 0
    last_synced_date: Optional[datetime] = None

    def has_unsynced_edits(self) -> bool:
        """True when the note was edited after it was last confirmed synchronized."""
        if self.last_synced_date is None:
            return True
        return ensure_utc(self.modified_date) > ensure_utc(self.last_synced_date)

    def to_payload(self) -> Dict[str, Any]:
        """Serialize the user-visible fields that travel inside the encrypted payload."""
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "metadata": self.metadata,
            "created_date": ensure_utc(self.created_date).isoformat(),
            "modified_date": ensure_utc(self.modified_date).isoformat(),
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Note":
        return cls(
            id=data["id"],
            title=data.get("title", DEFAULT_NOTE_TITLE),
            content=data.get("content", ""),
            metadata=dict(data.get("metadata") or {}),
            created_date=parse_datetime(data.get("created_date")) or utc_now(),
            modified_date=parse_datetime(data.get("modified_date")) or utc_now(),
        )


@dataclass
class NoteTombstone:
    """Marker for a synced note deleted locally since the last sync."""
    note_id: str
    sync_version: int
    deleted_at: datetime = field(default_factory=utc_now)


@dataclass
class ManifestEntry:
    """Version information describing one note without its payload.

    A damaged entry stands for a record that exists remotely but could not
    be read; its version and date carry no meaning.
    """
    id: str
    sync_version: int
    modified_date: datetime
    damaged: bool = False
    error: Optional[str] = None


@dataclass
class CipherBundle:
    """Encrypted (or plaintext-wrapped) note payload."""
    nonce: bytes
    ciphertext: bytes
    tag: bytes
    encrypted: bool = True
    format_version: int = 1
    salt: bytes = b""


@dataclass
class RemoteNoteRecord:
    """One note as stored by the remote transport."""
    id: str
    sync_version: int
    modified_date: datetime
    payload: CipherBundle

    def manifest_entry(self) -> ManifestEntry:
        return ManifestEntry(
            id=self.id,
            sync_version=self.sync_version,
            modified_date=self.modified_date,
        )


@dataclass
class CloudSyncSettings:
    """User-facing sync configuration, read at the start of every cycle."""
    is_enabled: bool = False
    provider: Optional[CloudProvider] = None
    sync_interval_seconds: int = 300
    encrypt_data: bool = True


@dataclass
class SyncProgress:
    """Progress event emitted to observers during a cycle."""
    operation: str
    progress_percent: int
    message: str = ""
    items_processed: int = 0
    total_items: int = 0


@dataclass
class NoteFailure:
    """A per-note failure recorded during a cycle."""
    note_id: str
    operation: str
    error: str


@dataclass
class SyncResult:
    """Outcome of a sync cycle."""
    success: bool
    notes_uploaded: int = 0
    notes_downloaded: int = 0
    notes_deleted_local: int = 0
    notes_deleted_remote: int = 0
    conflicts_detected: int = 0
    conflicts_resolved: int = 0
    failures: List[NoteFailure] = field(default_factory=list)
    error_message: Optional[str] = None
    completed_at: datetime = field(default_factory=utc_now)
    session_id: Optional[str] = None

    @property
    def partial(self) -> bool:
        """The cycle ran to the end but some notes failed."""
        return bool(self.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "notes_uploaded": self.notes_uploaded,
            "notes_downloaded": self.notes_downloaded,
            "notes_deleted_local": self.notes_deleted_local,
            "notes_deleted_remote": self.notes_deleted_remote,
            "conflicts_detected": self.conflicts_detected,
            "conflicts_resolved": self.conflicts_resolved,
            "failures": [
                {"note_id": f.note_id, "operation": f.operation, "error": f.error}
                for f in self.failures
            ],
            "error_message": self.error_message,
            "completed_at": self.completed_at.isoformat(),
            "session_id": self.session_id,
        }


@dataclass
class SyncSession:
    """Mutable counters for the cycle currently running."""
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=utc_now)
    status: SyncStatus = SyncStatus.SYNCING
    notes_uploaded: int = 0
    notes_downloaded: int = 0
    notes_deleted_local: int = 0
    notes_deleted_remote: int = 0
    conflicts_detected: int = 0
    conflicts_resolved: int = 0
    failures: List[NoteFailure] = field(default_factory=list)
    error_message: Optional[str] = None

    def record_failure(self, note_id: str, operation: str, error: Exception) -> None:
        self.failures.append(NoteFailure(note_id=note_id, operation=operation, error=str(error)))

    def finalize(self, success: bool) -> SyncResult:
        """Freeze the session into a result."""
        error_message = self.error_message
        if error_message is None and self.failures:
            details = "; ".join(f"{f.note_id} ({f.operation}): {f.error}" for f in self.failures[:5])
            if len(self.failures) > 5:
                details += f"; and {len(self.failures) - 5} more"
            error_message = f"{len(self.failures)} note(s) failed to sync: {details}"

        return SyncResult(
            success=success and not self.failures,
            notes_uploaded=self.notes_uploaded,
            notes_downloaded=self.notes_downloaded,
            notes_deleted_local=self.notes_deleted_local,
            notes_deleted_remote=self.notes_deleted_remote,
            conflicts_detected=self.conflicts_detected,
            conflicts_resolved=self.conflicts_resolved,
            failures=list(self.failures),
            error_message=error_message,
            session_id=self.session_id,
        )


@dataclass
class PendingSyncChange:
    """A note change waiting to be pushed outside a full cycle."""
    note_id: str
    change_type: SyncChangeType = SyncChangeType.CREATE_OR_UPDATE
    queued_at: datetime = field(default_factory=utc_now)
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
