"""Tests for settings loading."""

from pathlib import Path

from draftsync.config import SyncSettings


def test_defaults(monkeypatch):
    for name in ("DRAFTSYNC_MAX_QUEUE_SIZE", "DRAFTSYNC_REMOTE_URL", "DRAFTSYNC_STORAGE_PATH"):
        monkeypatch.delenv(name, raising=False)

    settings = SyncSettings(_env_file=None)

    assert settings.max_queue_size == 100
    assert settings.max_retry_count == 3
    assert settings.max_backoff_seconds == 30.0
    assert settings.expiry_hours == 24.0
    assert settings.remote_timeout == 10.0
    assert settings.remote_url is None
    assert settings.storage_path == Path.home() / ".draftsync"


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("DRAFTSYNC_MAX_QUEUE_SIZE", "25")
    monkeypatch.setenv("DRAFTSYNC_REMOTE_URL", "https://drafts.example.com")
    monkeypatch.setenv("DRAFTSYNC_STORAGE_PATH", str(tmp_path))

    settings = SyncSettings(_env_file=None)

    assert settings.max_queue_size == 25
    assert settings.remote_url == "https://drafts.example.com"
    assert settings.storage_path == tmp_path
