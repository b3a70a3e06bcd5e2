"""SQLAlchemy database models for the local note store."""

from datetime import timezone
from sqlalchemy import (
    Column, String, Integer, Boolean, Text, DateTime, LargeBinary, TypeDecorator
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every dialect.

    SQLite has no timezone support, so values are stored naive in UTC and
    the tzinfo is restored on load.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


Base = declarative_base()


class NoteRecord(Base):
    """Model for notes table."""
    __tablename__ = 'notes'

    id = Column(String(64), primary_key=True)
    title = Column(String(512), nullable=False, default='')
    content = Column(Text, nullable=False, default='')
    attributes = Column(Text, nullable=False, default='{}')  # JSON-encoded note metadata
    created_date = Column(UTCDateTime(), nullable=False)
    modified_date = Column(UTCDateTime(), nullable=False)
    sync_version = Column(Integer, nullable=False, default=0)
    last_synced_date = Column(UTCDateTime(), nullable=True)


class NoteTombstoneRecord(Base):
    """Model for note_tombstones table."""
    __tablename__ = 'note_tombstones'

    note_id = Column(String(64), primary_key=True)
    sync_version = Column(Integer, nullable=False)
    deleted_at = Column(UTCDateTime(), nullable=False)


class SyncSettingsRecord(Base):
    """Model for sync_settings table (single row)."""
    __tablename__ = 'sync_settings'

    id = Column(Integer, primary_key=True, default=1)
    is_enabled = Column(Boolean, nullable=False, default=False)
    provider = Column(String(50), nullable=True)
    sync_interval_seconds = Column(Integer, nullable=False, default=300)
    encrypt_data = Column(Boolean, nullable=False, default=True)
    key_salt = Column(LargeBinary, nullable=True)
    passphrase_hash = Column(String(128), nullable=True)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
