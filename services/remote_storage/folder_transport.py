"""Transport backed by a folder mirrored by a provider's desktop client."""

import asyncio
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from notesync.errors import AuthenticationError, RecordNotFoundError, TransportError
from notesync.models import CipherBundle, ManifestEntry, RemoteNoteRecord
from services.remote_storage.transport import (
    RECORD_SUFFIX,
    RemoteTransport,
    damaged_entry,
    decode_record,
    encode_record,
)

logger = logging.getLogger(__name__)


class FolderTransport(RemoteTransport):
    """Stores one JSON record per note in a local directory.

    OneDrive and Google Drive desktop clients mirror a folder to the cloud;
    pointing this transport at such a folder hands replication to the client.
    Writes go to a temporary file that is renamed over the record, so a
    reader never observes a half-written record.
    """

    def __init__(self, root: str, provider_name: str = "folder"):
        """
        Initialize folder transport.

        Args:
            root: Directory that holds the synced notes
            provider_name: Name used in logs and status
        """
        self.root = Path(root)
        self.notes_dir = self.root / "notes"
        self.provider_name = provider_name
        self._authenticated = False

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    async def authenticate(self) -> bool:
        try:
            self.notes_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Cannot use sync folder {self.root}: {e}")
            self._authenticated = False
            return False

        if not os.access(self.notes_dir, os.R_OK | os.W_OK):
            logger.error(f"Sync folder {self.notes_dir} is not readable and writable")
            self._authenticated = False
            return False

        self._authenticated = True
        logger.info(f"Connected to sync folder {self.notes_dir}")
        return True

    async def sign_out(self) -> None:
        self._authenticated = False

    def _require_auth(self):
        if not self._authenticated:
            raise AuthenticationError(f"Not connected to {self.provider_name}")

    def _path(self, note_id: str) -> Path:
        if not note_id or "/" in note_id or "\\" in note_id or note_id in (".", ".."):
            raise TransportError(f"Invalid note id {note_id!r}", note_id=note_id)
        return self.notes_dir / f"{note_id}{RECORD_SUFFIX}"

    async def list_manifest(self) -> List[ManifestEntry]:
        self._require_auth()
        return await asyncio.to_thread(self._list_manifest)

    def _list_manifest(self) -> List[ManifestEntry]:
        entries = []
        try:
            paths = sorted(self.notes_dir.glob(f"*{RECORD_SUFFIX}"))
        except OSError as e:
            raise TransportError(f"Failed to list {self.notes_dir}: {e}")

        for path in paths:
            try:
                record = decode_record(path.read_bytes())
            except FileNotFoundError:
                # Deleted between listing and reading
                continue
            except OSError as e:
                raise TransportError(f"Failed to read {path.name}: {e}")
            except TransportError as e:
                logger.warning(f"Remote record {path.name} is unreadable: {e}")
                entries.append(damaged_entry(path.name[:-len(RECORD_SUFFIX)], str(e)))
                continue
            entries.append(record.manifest_entry())
        return entries

    async def get_payload(self, note_id: str) -> RemoteNoteRecord:
        self._require_auth()
        return await asyncio.to_thread(self._get_payload, note_id)

    def _get_payload(self, note_id: str) -> RemoteNoteRecord:
        path = self._path(note_id)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise RecordNotFoundError(f"Remote record {note_id} not found", note_id=note_id)
        except OSError as e:
            raise TransportError(f"Failed to read record {note_id}: {e}", note_id=note_id)
        return decode_record(data)

    async def put_record(
        self,
        note_id: str,
        sync_version: int,
        modified_date: datetime,
        payload: CipherBundle
    ) -> None:
        self._require_auth()
        record = RemoteNoteRecord(
            id=note_id,
            sync_version=sync_version,
            modified_date=modified_date,
            payload=payload,
        )
        await asyncio.to_thread(self._write_atomic, self._path(note_id), encode_record(record))
        logger.debug(f"Stored remote record {note_id} at version {sync_version}")

    def _write_atomic(self, path: Path, data: bytes) -> None:
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.notes_dir, prefix=".tmp-", suffix=".part")
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
            tmp_path = None
        except OSError as e:
            raise TransportError(f"Failed to write {path.name}: {e}")
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    logger.warning(f"Could not remove temporary file {tmp_path}")

    async def delete_record(self, note_id: str) -> None:
        self._require_auth()
        path = self._path(note_id)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as e:
            raise TransportError(f"Failed to delete record {note_id}: {e}", note_id=note_id)
