"""Unit tests for the shared sync data models."""

from datetime import datetime, timedelta, timezone

from notesync.errors import TransportError
from notesync.models import (
    ManifestEntry,
    Note,
    NoteFailure,
    RemoteNoteRecord,
    SyncResult,
    SyncSession,
    ensure_utc,
    parse_datetime,
    utc_now,
)


def test_utc_now_is_aware():
    assert utc_now().tzinfo is not None


def test_ensure_utc_treats_naive_as_utc():
    naive = datetime(2024, 1, 1, 12, 0, 0)

    assert ensure_utc(naive) == datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    assert ensure_utc(None) is None


def test_ensure_utc_converts_offsets():
    plus_two = datetime(2024, 1, 1, 14, 0, 0, tzinfo=timezone(timedelta(hours=2)))

    assert ensure_utc(plus_two) == datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_parse_datetime_accepts_z_suffix():
    assert parse_datetime("2024-01-01T10:00:00Z") == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
    assert parse_datetime(None) is None
    assert parse_datetime("") is None


class TestNote:
    """Tests for Note."""

    def test_defaults(self):
        note = Note()

        assert note.id
        assert note.title == "Untitled Note"
        assert note.sync_version == 0
        assert note.last_synced_date is None

    def test_never_synced_has_unsynced_edits(self):
        assert Note().has_unsynced_edits() is True

    def test_unsynced_edits_strictly_after_last_sync(self):
        t1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        note = Note(modified_date=t1, last_synced_date=t1, sync_version=1)

        # Equal timestamps count as synced
        assert note.has_unsynced_edits() is False

        note.modified_date = t1 + timedelta(microseconds=1)
        assert note.has_unsynced_edits() is True

    def test_payload_round_trip_excludes_sync_state(self):
        note = Note(
            title="Trip",
            content="Pack the tent",
            metadata={"pinned": True, "color": "blue"},
            sync_version=4,
            last_synced_date=utc_now(),
        )

        payload = note.to_payload()
        restored = Note.from_payload(payload)

        assert "sync_version" not in payload
        assert restored.id == note.id
        assert restored.title == "Trip"
        assert restored.content == "Pack the tent"
        assert restored.metadata == {"pinned": True, "color": "blue"}
        assert restored.modified_date == ensure_utc(note.modified_date)
        assert restored.sync_version == 0
        assert restored.last_synced_date is None

    def test_payload_without_title_uses_default(self):
        restored = Note.from_payload({"id": "a"})

        assert restored.title == Note().title == "Untitled Note"


def test_remote_record_manifest_entry():
    record = RemoteNoteRecord(id="a", sync_version=3, modified_date=utc_now(), payload=None)

    entry = record.manifest_entry()

    assert entry == ManifestEntry(id="a", sync_version=3, modified_date=record.modified_date)


class TestSyncSession:
    """Tests for session aggregation into a result."""

    def test_clean_session_succeeds(self):
        session = SyncSession()
        session.notes_uploaded = 2

        result = session.finalize(success=True)

        assert result.success is True
        assert result.partial is False
        assert result.notes_uploaded == 2
        assert result.error_message is None
        assert result.session_id == session.session_id

    def test_failures_make_partial_result(self):
        session = SyncSession()
        session.notes_downloaded = 1
        session.record_failure("n1", "download_remote", TransportError("timeout"))

        result = session.finalize(success=True)

        assert result.success is False
        assert result.partial is True
        assert result.failures == [NoteFailure("n1", "download_remote", "timeout")]
        assert result.error_message.startswith("1 note(s) failed to sync")
        assert "n1" in result.error_message

    def test_many_failures_are_truncated_in_message(self):
        session = SyncSession()
        for i in range(7):
            session.record_failure(f"n{i}", "upload_local", TransportError("down"))

        result = session.finalize(success=True)

        assert "and 2 more" in result.error_message
        assert len(result.failures) == 7

    def test_explicit_error_message_wins(self):
        session = SyncSession()
        session.error_message = "Cannot reach cloud provider"

        result = session.finalize(success=False)

        assert result.success is False
        assert result.partial is False
        assert result.error_message == "Cannot reach cloud provider"


def test_sync_result_to_dict():
    result = SyncResult(success=False, notes_uploaded=1, failures=[NoteFailure("n", "upload_local", "x")])

    data = result.to_dict()

    assert data["success"] is False
    assert data["notes_uploaded"] == 1
    assert data["failures"] == [{"note_id": "n", "operation": "upload_local", "error": "x"}]
    assert isinstance(data["completed_at"], str)
