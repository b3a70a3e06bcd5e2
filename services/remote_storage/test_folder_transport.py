"""Unit tests for the folder-backed transport and the record format."""

import json
from datetime import datetime, timezone

import pytest

from notesync.errors import AuthenticationError, RecordNotFoundError, TransportError
from notesync.models import CipherBundle, RemoteNoteRecord
from services.remote_storage.folder_transport import FolderTransport
from services.remote_storage.transport import (
    decode_record,
    encode_record,
    note_id_from_key,
    record_key,
)

MODIFIED = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


def _bundle(text="payload"):
    return CipherBundle(nonce=b"", ciphertext=text.encode(), tag=b"", encrypted=False)


@pytest.fixture
async def transport(tmp_path):
    """Authenticated transport on a temporary folder."""
    folder = FolderTransport(str(tmp_path), provider_name="onedrive")
    assert await folder.authenticate() is True
    return folder


class TestRecordFormat:
    """Tests for record keys and JSON encoding."""

    def test_record_key(self):
        assert record_key("abc") == "notes/abc.json"
        assert record_key("abc", prefix="sync/notes/") == "sync/notes/abc.json"

    def test_note_id_from_key(self):
        assert note_id_from_key("notes/abc.json") == "abc"
        assert note_id_from_key("notes/abc.txt") is None
        assert note_id_from_key("other/abc.json") is None
        assert note_id_from_key("notes/nested/abc.json") is None

    def test_encode_decode(self):
        record = RemoteNoteRecord(id="n1", sync_version=3, modified_date=MODIFIED, payload=_bundle())

        restored = decode_record(encode_record(record))

        assert restored.id == "n1"
        assert restored.sync_version == 3
        assert restored.modified_date == MODIFIED
        assert restored.payload.ciphertext == b"payload"
        assert restored.payload.encrypted is False

    def test_decode_corrupted(self):
        with pytest.raises(TransportError, match="Corrupted"):
            decode_record(b"{not json")

        with pytest.raises(TransportError, match="Corrupted"):
            decode_record(json.dumps({"id": "x"}).encode())


class TestFolderTransport:
    """Tests for FolderTransport."""

    @pytest.mark.asyncio
    async def test_requires_authentication(self, tmp_path):
        folder = FolderTransport(str(tmp_path))

        assert folder.is_authenticated is False
        with pytest.raises(AuthenticationError):
            await folder.list_manifest()

    @pytest.mark.asyncio
    async def test_authenticate_creates_notes_dir(self, tmp_path):
        folder = FolderTransport(str(tmp_path / "OneDrive"))

        assert await folder.authenticate() is True
        assert (tmp_path / "OneDrive" / "notes").is_dir()

    @pytest.mark.asyncio
    async def test_authenticate_fails_on_file_path(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")

        folder = FolderTransport(str(blocker))

        assert await folder.authenticate() is False
        assert folder.is_authenticated is False

    @pytest.mark.asyncio
    async def test_put_get_and_manifest(self, transport):
        await transport.put_record("n1", 1, MODIFIED, _bundle("one"))
        await transport.put_record("n2", 4, MODIFIED, _bundle("two"))

        manifest = await transport.list_manifest()
        record = await transport.get_payload("n2")

        assert sorted((e.id, e.sync_version) for e in manifest) == [("n1", 1), ("n2", 4)]
        assert record.sync_version == 4
        assert record.payload.ciphertext == b"two"

    @pytest.mark.asyncio
    async def test_put_replaces_record(self, transport):
        await transport.put_record("n1", 1, MODIFIED, _bundle("old"))
        await transport.put_record("n1", 2, MODIFIED, _bundle("new"))

        record = await transport.get_payload("n1")

        assert record.sync_version == 2
        assert record.payload.ciphertext == b"new"

    @pytest.mark.asyncio
    async def test_no_temporary_files_left(self, transport):
        await transport.put_record("n1", 1, MODIFIED, _bundle())

        assert [p.name for p in transport.notes_dir.iterdir()] == ["n1.json"]

    @pytest.mark.asyncio
    async def test_get_missing_record(self, transport):
        with pytest.raises(RecordNotFoundError):
            await transport.get_payload("missing")

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, transport):
        await transport.put_record("n1", 1, MODIFIED, _bundle())

        await transport.delete_record("n1")
        await transport.delete_record("n1")

        assert await transport.list_manifest() == []

    @pytest.mark.asyncio
    async def test_manifest_flags_corrupted_records(self, transport):
        await transport.put_record("good", 1, MODIFIED, _bundle())
        (transport.notes_dir / "bad.json").write_text("garbage")

        manifest = {e.id: e for e in await transport.list_manifest()}

        assert sorted(manifest) == ["bad", "good"]
        assert manifest["good"].damaged is False
        assert manifest["bad"].damaged is True
        assert "Corrupted" in manifest["bad"].error

    @pytest.mark.asyncio
    async def test_rejects_path_traversal(self, transport):
        with pytest.raises(TransportError):
            await transport.get_payload("../escape")

    @pytest.mark.asyncio
    async def test_sign_out(self, transport):
        await transport.sign_out()

        assert transport.is_authenticated is False
        with pytest.raises(AuthenticationError):
            await transport.get_payload("n1")
