"""Conflict resolution between divergent local and remote notes."""

import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional, Union

from notesync.models import Note, SyncConflictResolution, ensure_utc, utc_now

logger = logging.getLogger(__name__)

LOCAL_MARKER = "<<<<<<< LOCAL"
SEPARATOR_MARKER = "======="
REMOTE_MARKER = ">>>>>>> REMOTE"


def _preview(content: str, length: int) -> str:
    if len(content) <= length:
        return content
    return content[:length].rstrip() + "..."


@dataclass
class SyncConflict:
    """Both sides of a conflict, as shown to whoever decides it.

    ``local_note`` is None when the note was deleted locally and edited remotely.
    """
    note_id: str
    local_note: Optional[Note]
    remote_note: Note
    preview_length: int = 200

    @property
    def local_title(self) -> Optional[str]:
        return self.local_note.title if self.local_note else None

    @property
    def remote_title(self) -> str:
        return self.remote_note.title

    @property
    def local_modified(self) -> Optional[datetime]:
        return self.local_note.modified_date if self.local_note else None

    @property
    def remote_modified(self) -> datetime:
        return self.remote_note.modified_date

    @property
    def local_preview(self) -> str:
        return _preview(self.local_note.content, self.preview_length) if self.local_note else ""

    @property
    def remote_preview(self) -> str:
        return _preview(self.remote_note.content, self.preview_length)


ConflictCallback = Callable[
    [SyncConflict],
    Union[SyncConflictResolution, Awaitable[SyncConflictResolution]]
]
ConflictPolicy = Callable[[Optional[Note], Note], SyncConflictResolution]


def keep_local_policy(local: Optional[Note], remote: Note) -> SyncConflictResolution:
    return SyncConflictResolution.KEEP_LOCAL


def keep_remote_policy(local: Optional[Note], remote: Note) -> SyncConflictResolution:
    return SyncConflictResolution.KEEP_REMOTE


def merge_policy(local: Optional[Note], remote: Note) -> SyncConflictResolution:
    return SyncConflictResolution.MERGE


def keep_most_recent_policy(local: Optional[Note], remote: Note) -> SyncConflictResolution:
    """Keep whichever side was modified last; ties go to the remote copy."""
    if local is None:
        return SyncConflictResolution.KEEP_REMOTE
    if ensure_utc(local.modified_date) > ensure_utc(remote.modified_date):
        return SyncConflictResolution.KEEP_LOCAL
    return SyncConflictResolution.KEEP_REMOTE


POLICIES: Dict[str, ConflictPolicy] = {
    "keep_local": keep_local_policy,
    "keep_remote": keep_remote_policy,
    "merge": merge_policy,
    "keep_most_recent": keep_most_recent_policy,
}


def get_policy(name: str) -> ConflictPolicy:
    """Look up an automatic resolution policy by name."""
    try:
        return POLICIES[name]
    except KeyError:
        raise ValueError(f"Unknown conflict policy '{name}'. Choose one of: {', '.join(sorted(POLICIES))}")


def merge_notes(local: Note, remote: Note) -> Note:
    """
    Textual union of both versions separated by conflict markers.

    Metadata and identity come from the local note. The caller assigns the
    new sync version when the merged note is uploaded.
    """
    content = (
        f"{LOCAL_MARKER}\n"
        f"{local.content}\n"
        f"{SEPARATOR_MARKER}\n"
        f"{remote.content}\n"
        f"{REMOTE_MARKER}\n"
    )
    return Note(
        id=local.id,
        title=local.title,
        content=content,
        metadata=dict(local.metadata),
        created_date=local.created_date,
        modified_date=utc_now(),
        sync_version=local.sync_version,
        last_synced_date=local.last_synced_date,
    )


class ConflictResolver:
    """Obtains a resolution for each conflicting note."""

    def __init__(
        self,
        callback: Optional[ConflictCallback] = None,
        auto_policy: Optional[ConflictPolicy] = None,
        preview_length: int = 200
    ):
        """
        Initialize the resolver.

        Args:
            callback: Decision-maker (usually a UI dialog), sync or async
            auto_policy: Automatic policy consulted before the callback; off by default
            preview_length: Maximum characters of content shown per side
        """
        self.callback = callback
        self.auto_policy = auto_policy
        self.preview_length = preview_length

    async def resolve(self, local_note: Optional[Note], remote_note: Note) -> SyncConflictResolution:
        """
        Decide a conflict.

        Returns:
            The resolution; NONE when nobody decided, the decision-maker
            cancelled, or it failed
        """
        note_id = remote_note.id

        if self.auto_policy is not None:
            resolution = self.auto_policy(local_note, remote_note)
            if resolution != SyncConflictResolution.NONE:
                logger.info(f"Conflict on note {note_id} resolved automatically: {resolution.value}")
                return resolution

        if self.callback is None:
            logger.info(f"Conflict on note {note_id} has no decision-maker, deferring")
            return SyncConflictResolution.NONE

        conflict = SyncConflict(
            note_id=note_id,
            local_note=local_note,
            remote_note=remote_note,
            preview_length=self.preview_length,
        )
        try:
            resolution = self.callback(conflict)
            if inspect.isawaitable(resolution):
                resolution = await resolution
        except Exception as e:
            logger.error(f"Conflict callback failed for note {note_id}: {e}", exc_info=True)
            return SyncConflictResolution.NONE

        if not isinstance(resolution, SyncConflictResolution):
            logger.warning(f"Conflict callback returned {resolution!r} for note {note_id}, treating as cancelled")
            return SyncConflictResolution.NONE

        logger.info(f"Conflict on note {note_id} resolved by user: {resolution.value}")
        return resolution
