"""Database operations for the local note store."""

import json
import logging
import threading
from contextlib import contextmanager
from typing import List, Optional

from sqlalchemy import create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from notesync.config import get_database_url
from notesync.db_models import Base, NoteRecord, NoteTombstoneRecord, SyncSettingsRecord
from notesync.encryption import EncryptionService
from notesync.errors import NoteStoreError
from notesync.models import CloudProvider, CloudSyncSettings, Note, NoteTombstone, utc_now
from notesync.note_store import NoteStore

logger = logging.getLogger(__name__)


class DatabaseOperations(NoteStore):
    """Handles all database operations for the local note store and sync settings."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection."""
        self.database_url = database_url or get_database_url()
        if self.database_url.startswith("sqlite") and ":memory:" in self.database_url:
            # One shared connection, otherwise every session sees an empty database
            self.engine = create_engine(
                self.database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        elif self.database_url.startswith("sqlite"):
            self.engine = create_engine(
                self.database_url,
                connect_args={"check_same_thread": False},
            )
        else:
            self.engine = create_engine(self.database_url, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self._write_lock = threading.RLock()

    def create_tables(self):
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    @contextmanager
    def _write_session(self):
        """Serialized read-write session that commits on success."""
        with self._write_lock:
            with self.get_session() as session:
                try:
                    yield session
                    session.commit()
                except SQLAlchemyError as e:
                    session.rollback()
                    raise NoteStoreError(f"Database write failed: {e}")

    # Note Operations

    def get_all_notes(self) -> List[Note]:
        """
        Get all local notes.

        Returns:
            List of Note objects
        """
        try:
            with self.get_session() as session:
                rows = session.execute(select(NoteRecord)).scalars().all()
                return [self._to_note(row) for row in rows]
        except SQLAlchemyError as e:
            raise NoteStoreError(f"Failed to load notes: {e}")

    def get_note_by_id(self, note_id: str) -> Optional[Note]:
        """
        Get a specific note.

        Args:
            note_id: The note ID

        Returns:
            Note or None if not found
        """
        try:
            with self.get_session() as session:
                row = session.get(NoteRecord, note_id)
                return self._to_note(row) if row else None
        except SQLAlchemyError as e:
            raise NoteStoreError(f"Failed to load note {note_id}: {e}", note_id=note_id)

    def upsert_note(self, note: Note) -> Note:
        """
        Insert or replace a note exactly as given.

        Args:
            note: The note to store

        Returns:
            The stored note
        """
        with self._write_session() as session:
            row = session.get(NoteRecord, note.id)
            if row is None:
                row = NoteRecord(id=note.id)
                session.add(row)
            row.title = note.title
            row.content = note.content
            row.attributes = json.dumps(note.metadata)
            row.created_date = note.created_date
            row.modified_date = note.modified_date
            row.sync_version = note.sync_version
            row.last_synced_date = note.last_synced_date
            # A note that exists again is no longer deleted
            tombstone = session.get(NoteTombstoneRecord, note.id)
            if tombstone is not None:
                session.delete(tombstone)
        return note

    def edit_note(
        self,
        note_id: str,
        title: Optional[str] = None,
        content: Optional[str] = None
    ) -> Optional[Note]:
        """
        Apply a local user edit and bump the note's modified date.

        Args:
            note_id: The note ID
            title: New title, unchanged if None
            content: New content, unchanged if None

        Returns:
            The updated note or None if not found
        """
        with self._write_lock:
            note = self.get_note_by_id(note_id)
            if note is None:
                return None
            if title is not None:
                note.title = title
            if content is not None:
                note.content = content
            note.modified_date = utc_now()
            return self.upsert_note(note)

    def delete_note(self, note_id: str, record_tombstone: bool = True) -> bool:
        """
        Delete a note.

        Args:
            note_id: The note ID
            record_tombstone: Remember the deletion for the next sync if the
                note had been synced before

        Returns:
            True if the note was deleted, False if not found
        """
        with self._write_session() as session:
            row = session.get(NoteRecord, note_id)
            if row is None:
                return False

            if record_tombstone and row.sync_version > 0:
                session.merge(NoteTombstoneRecord(
                    note_id=note_id,
                    sync_version=row.sync_version,
                    deleted_at=utc_now()
                ))
            session.delete(row)
            return True

    def get_tombstones(self) -> List[NoteTombstone]:
        """Get all pending local deletions."""
        try:
            with self.get_session() as session:
                rows = session.execute(select(NoteTombstoneRecord)).scalars().all()
                return [
                    NoteTombstone(note_id=r.note_id, sync_version=r.sync_version, deleted_at=r.deleted_at)
                    for r in rows
                ]
        except SQLAlchemyError as e:
            raise NoteStoreError(f"Failed to load tombstones: {e}")

    def clear_tombstone(self, note_id: str) -> None:
        """Remove a tombstone."""
        with self._write_session() as session:
            tombstone = session.get(NoteTombstoneRecord, note_id)
            if tombstone is not None:
                session.delete(tombstone)

    # Sync Settings Operations

    def _settings_row(self, session: Session) -> SyncSettingsRecord:
        row = session.get(SyncSettingsRecord, 1)
        if row is None:
            row = SyncSettingsRecord(id=1)
            session.add(row)
            session.flush()
        return row

    def load_settings(self) -> CloudSyncSettings:
        """
        Load cloud sync settings.

        Returns:
            CloudSyncSettings, with defaults if none were saved yet
        """
        try:
            with self.get_session() as session:
                row = session.get(SyncSettingsRecord, 1)
                if row is None:
                    return CloudSyncSettings()
                return CloudSyncSettings(
                    is_enabled=row.is_enabled,
                    provider=CloudProvider(row.provider) if row.provider else None,
                    sync_interval_seconds=row.sync_interval_seconds,
                    encrypt_data=row.encrypt_data,
                )
        except SQLAlchemyError as e:
            raise NoteStoreError(f"Failed to load sync settings: {e}")

    def save_settings(self, settings: CloudSyncSettings) -> CloudSyncSettings:
        """Persist cloud sync settings."""
        with self._write_session() as session:
            row = self._settings_row(session)
            row.is_enabled = settings.is_enabled
            row.provider = settings.provider.value if settings.provider else None
            row.sync_interval_seconds = settings.sync_interval_seconds
            row.encrypt_data = settings.encrypt_data
        return settings

    def get_or_create_key_salt(self) -> bytes:
        """
        Get the per-installation key derivation salt, generating it on first use.

        Returns:
            Salt bytes
        """
        with self._write_session() as session:
            row = self._settings_row(session)
            if not row.key_salt:
                row.key_salt = EncryptionService.generate_salt()
                logger.info("Generated new key derivation salt for this installation")
            return row.key_salt

    def store_passphrase_hash(self, passphrase_hash: Optional[str]) -> None:
        """Store (or clear) the passphrase verification hash."""
        with self._write_session() as session:
            row = self._settings_row(session)
            row.passphrase_hash = passphrase_hash

    def get_passphrase_hash(self) -> Optional[str]:
        """Get the passphrase verification hash."""
        try:
            with self.get_session() as session:
                row = session.get(SyncSettingsRecord, 1)
                return row.passphrase_hash if row else None
        except SQLAlchemyError as e:
            raise NoteStoreError(f"Failed to load passphrase hash: {e}")

    @staticmethod
    def _to_note(row: NoteRecord) -> Note:
        return Note(
            id=row.id,
            title=row.title,
            content=row.content,
            metadata=json.loads(row.attributes or '{}'),
            created_date=row.created_date,
            modified_date=row.modified_date,
            sync_version=row.sync_version,
            last_synced_date=row.last_synced_date,
        )
