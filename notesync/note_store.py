"""Interface the sync engine expects from the local note store."""

from abc import ABC, abstractmethod
from typing import List, Optional

from notesync.models import Note, NoteTombstone


class NoteStore(ABC):
    """Local note persistence consumed by the sync engine.

    Implementations must serialize their own writes; the engine may call
    them from concurrently running transfer tasks.
    """

    @abstractmethod
    def get_all_notes(self) -> List[Note]:
        """Return every local note."""

    @abstractmethod
    def get_note_by_id(self, note_id: str) -> Optional[Note]:
        """Return a note or None if it does not exist."""

    @abstractmethod
    def upsert_note(self, note: Note) -> Note:
        """Insert or replace a note."""

    @abstractmethod
    def delete_note(self, note_id: str, record_tombstone: bool = True) -> bool:
        """Delete a note, optionally leaving a tombstone for the next sync."""

    @abstractmethod
    def get_tombstones(self) -> List[NoteTombstone]:
        """Return notes deleted locally since they were last synced."""

    @abstractmethod
    def clear_tombstone(self, note_id: str) -> None:
        """Forget a tombstone once the deletion has been reconciled."""
