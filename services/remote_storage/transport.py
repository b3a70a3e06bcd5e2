"""Remote blob-store abstraction used by the sync engine."""

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List

from notesync.encryption import bundle_from_dict, bundle_to_dict
from notesync.errors import DecryptionError, TransportError
from notesync.models import CipherBundle, ManifestEntry, RemoteNoteRecord, ensure_utc, parse_datetime, utc_now

RECORD_PREFIX = "notes/"
RECORD_SUFFIX = ".json"


def record_key(note_id: str, prefix: str = RECORD_PREFIX) -> str:
    """Object key of a note record."""
    return f"{prefix}{note_id}{RECORD_SUFFIX}"


def note_id_from_key(key: str, prefix: str = RECORD_PREFIX):
    """Extract the note ID from an object key, or None if the key is not a record."""
    if not key.startswith(prefix) or not key.endswith(RECORD_SUFFIX):
        return None
    note_id = key[len(prefix):-len(RECORD_SUFFIX)]
    if not note_id or "/" in note_id:
        return None
    return note_id


def damaged_entry(note_id: str, reason: str) -> ManifestEntry:
    """Manifest entry for a record that exists but cannot be read."""
    return ManifestEntry(id=note_id, sync_version=0, modified_date=utc_now(), damaged=True, error=reason)


def encode_record(record: RemoteNoteRecord) -> bytes:
    """Serialize a record into the JSON document stored remotely."""
    return json.dumps({
        "id": record.id,
        "sync_version": record.sync_version,
        "modified_date": ensure_utc(record.modified_date).isoformat(),
        "payload": bundle_to_dict(record.payload),
    }).encode("utf-8")


def decode_record(data: bytes) -> RemoteNoteRecord:
    """Parse a stored JSON document back into a record."""
    try:
        doc = json.loads(data.decode("utf-8"))
        return RemoteNoteRecord(
            id=doc["id"],
            sync_version=int(doc["sync_version"]),
            modified_date=parse_datetime(doc["modified_date"]),
            payload=bundle_from_dict(doc["payload"]),
        )
    except (UnicodeDecodeError, ValueError, KeyError, TypeError, DecryptionError) as e:
        raise TransportError(f"Corrupted remote record: {e}")


class RemoteTransport(ABC):
    """Opaque per-note record store on a cloud provider.

    Implementations must make ``put_record`` atomic from the caller's point
    of view and every call safe to retry with the same arguments.
    """

    provider_name: str = "remote"

    @property
    @abstractmethod
    def is_authenticated(self) -> bool:
        """Whether the transport currently holds valid credentials."""

    @abstractmethod
    async def authenticate(self) -> bool:
        """Authenticate with the provider. Returns False if credentials are rejected."""

    @abstractmethod
    async def sign_out(self) -> None:
        """Discard credentials."""

    @abstractmethod
    async def list_manifest(self) -> List[ManifestEntry]:
        """Enumerate all stored records without their payloads."""

    @abstractmethod
    async def get_payload(self, note_id: str) -> RemoteNoteRecord:
        """Fetch a record. Raises RecordNotFoundError if it does not exist."""

    @abstractmethod
    async def put_record(
        self,
        note_id: str,
        sync_version: int,
        modified_date: datetime,
        payload: CipherBundle
    ) -> None:
        """Write a record atomically. Raises TransportError on failure."""

    @abstractmethod
    async def delete_record(self, note_id: str) -> None:
        """Delete a record. Deleting a missing record succeeds."""

    def close(self) -> None:
        """Release any held resources."""
