"""Exception types raised by the sync engine."""

from typing import Optional


class SyncError(Exception):
    """Base class for all sync engine errors."""

    def __init__(self, message: str, note_id: Optional[str] = None):
        super().__init__(message)
        self.note_id = note_id


class AuthenticationError(SyncError):
    """Credentials are missing, invalid or expired. Requires a reconnect."""


class TransportError(SyncError):
    """A network or provider failure on a specific remote call."""


class RecordNotFoundError(TransportError):
    """The requested remote record does not exist."""


class DecryptionError(SyncError):
    """Ciphertext was tampered with, the passphrase is wrong, or the format is unknown."""


class NoteStoreError(SyncError):
    """The local note store failed to read or write a note."""


class ConflictUnresolved(SyncError):
    """A conflict was left unresolved. Deferred to the next cycle, not a failure."""
