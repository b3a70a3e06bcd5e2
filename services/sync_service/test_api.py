"""Tests for the Sync Service HTTP endpoints."""

import os
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from services.sync_service.main import app


@pytest.fixture
def client(tmp_path):
    """Service backed by an in-memory database and a folder remote."""
    env = {
        "NOTESYNC_DATABASE_URL": "sqlite:///:memory:",
        "SYNC_ONEDRIVE_FOLDER": str(tmp_path / "OneDrive"),
        "SYNC_SCHEDULER_ENABLED": "false",
    }
    with patch.dict(os.environ, env):
        with TestClient(app) as test_client:
            yield test_client


def _enable(client, encrypt_data=True):
    return client.put("/settings", json={
        "is_enabled": True,
        "provider": "onedrive",
        "sync_interval_seconds": 60,
        "encrypt_data": encrypt_data,
    })


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["status"] == "running"


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["dependencies"]["database"] == "up"
    assert data["sync_status"] == "disconnected"


def test_status_before_any_sync(client):
    data = client.get("/sync/status").json()

    assert data["status"] == "disconnected"
    assert data["last_sync_result"] is None
    assert data["pending_changes"] == 0


def test_sync_disabled_by_default(client):
    response = client.post("/sync")

    assert response.status_code == 200
    assert response.json()["success"] is False
    assert response.json()["error_message"] == "Cloud sync is disabled"


def test_update_settings(client):
    response = _enable(client)

    assert response.status_code == 200
    assert response.json()["provider"] == "onedrive"


def test_update_settings_rejects_bad_interval(client):
    response = client.put("/settings", json={"is_enabled": True, "sync_interval_seconds": 0})

    assert response.status_code == 400


def test_connect_and_disconnect(client):
    response = client.post("/connect", json={"provider": "onedrive"})

    assert response.status_code == 200
    assert response.json() == {"status": "idle", "provider": "onedrive", "error": None}

    response = client.post("/disconnect")

    assert response.json()["status"] == "disconnected"


def test_connect_unconfigured_provider(client):
    response = client.post("/connect", json={"provider": "googledrive"})

    assert response.status_code == 400


def test_connect_unknown_provider(client):
    response = client.post("/connect", json={"provider": "dropbox"})

    assert response.status_code == 422


def test_passphrase_set_and_verify(client):
    assert client.post("/passphrase", json={"passphrase": "open sesame"}).status_code == 200

    assert client.post("/passphrase/verify", json={"passphrase": "open sesame"}).json() == {"valid": True}
    assert client.post("/passphrase/verify", json={"passphrase": "nope"}).json() == {"valid": False}


def test_empty_passphrase_rejected(client):
    response = client.post("/passphrase", json={"passphrase": ""})

    assert response.status_code == 400


def test_full_sync_over_http(client):
    _enable(client)
    client.post("/passphrase", json={"passphrase": "open sesame"})

    response = client.post("/sync")

    data = response.json()
    assert data["success"] is True
    assert data["session_id"] is not None
    status = client.get("/sync/status").json()
    assert status["status"] == "idle"
    assert status["provider"] == "onedrive"
    assert status["last_sync_result"]["session_id"] == data["session_id"]


def test_sync_single_note_over_http(client):
    _enable(client, encrypt_data=False)

    response = client.post("/sync/notes/some-note")

    assert response.json()["success"] is True
    assert response.json()["notes_uploaded"] == 0
