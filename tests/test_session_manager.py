"""Tests for session diagnosis, persistence and reset."""

import json
import os
from datetime import datetime, timedelta, timezone

import pytest

from korero.autonomous.session_manager import (
    ResetReason,
    SessionManager,
    SessionReason,
    compute_context_hash,
)
from korero.utils.exceptions import SessionError

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def manager(tmp_path):
    return SessionManager(
        tmp_path / ".claude_session_id",
        tmp_path / ".session_history",
        expiry_hours=24,
        clock=lambda: NOW.timestamp(),
    )


def write_record(manager, **fields):
    manager.session_file.write_text(json.dumps(fields))


class TestDiagnose:
    """Every branch maps to a reason code."""

    def test_no_session_file(self, manager):
        assert manager.diagnose().reason is SessionReason.NO_SESSION_FILE

    def test_empty_session_file(self, manager):
        manager.session_file.write_text("  \n")
        assert manager.diagnose().reason is SessionReason.EMPTY_SESSION_FILE

    def test_corrupted_session(self, manager):
        manager.session_file.write_text('{"session_id": "abc", ')
        diagnosis = manager.diagnose()
        assert diagnosis.reason is SessionReason.CORRUPTED_SESSION
        assert "invalid JSON" in diagnosis.message

    def test_missing_session_id(self, manager):
        write_record(manager, timestamp=NOW.isoformat())
        assert manager.diagnose().reason is SessionReason.MISSING_SESSION_ID

    def test_camel_case_session_id(self, manager):
        write_record(manager, sessionId="abc", timestamp=NOW.isoformat())
        diagnosis = manager.diagnose()
        assert diagnosis.reason is SessionReason.SESSION_VALID
        assert diagnosis.session_id == "abc"

    def test_no_timestamp(self, manager):
        write_record(manager, session_id="abc")
        assert manager.diagnose().reason is SessionReason.NO_TIMESTAMP

    def test_unparseable_timestamp(self, manager):
        write_record(manager, session_id="abc", timestamp="yesterday-ish")
        assert manager.diagnose().reason is SessionReason.UNPARSEABLE_TIMESTAMP

    def test_valid_session(self, manager):
        write_record(manager, session_id="abc", timestamp=(NOW - timedelta(minutes=30)).isoformat())
        diagnosis = manager.diagnose()
        assert diagnosis.is_valid
        assert diagnosis.message == "Session 'abc' is valid (30m old). Resuming."

    def test_zulu_timestamp(self, manager):
        write_record(manager, session_id="abc", timestamp="2026-03-01T11:00:00Z")
        assert manager.diagnose().is_valid

    def test_expired_session(self, manager):
        write_record(manager, session_id="abc", timestamp=(NOW - timedelta(hours=30)).isoformat())
        diagnosis = manager.diagnose()
        assert diagnosis.reason is SessionReason.SESSION_EXPIRED
        assert diagnosis.message == "Session expired (30h old, max 24h). Starting fresh."

    def test_legacy_plain_text_uses_mtime(self, manager):
        manager.session_file.write_text("legacy-session-id\n")
        assert manager.diagnose().session_id == "legacy-session-id"

        old = (NOW - timedelta(hours=48)).timestamp()
        os.utime(manager.session_file, (old, old))
        diagnosis = manager.diagnose()
        assert diagnosis.reason is SessionReason.SESSION_EXPIRED
        assert "is 48 hours old" in diagnosis.detail

    def test_legacy_fresh_file_is_valid(self, manager):
        manager.session_file.write_text("legacy-session-id")
        now = NOW.timestamp()
        os.utime(manager.session_file, (now - 60, now - 60))
        assert manager.diagnose().is_valid

    def test_context_changed(self, manager):
        write_record(manager, session_id="abc", timestamp=NOW.isoformat(), context_hash="old")
        assert manager.diagnose(context_hash="new").reason is SessionReason.CONTEXT_CHANGED
        assert manager.diagnose(context_hash="old").is_valid
        assert manager.diagnose().is_valid


class TestSaveAndLoad:
    def test_save_then_load(self, manager):
        manager.save("sess-1", context_hash="h1")
        assert manager.load_session_id(context_hash="h1") == "sess-1"

        record = json.loads(manager.session_file.read_text())
        assert record["session_id"] == "sess-1"
        assert record["context_hash"] == "h1"
        assert record["timestamp"].startswith("2026-03-01T12:00:00")

    def test_resaving_same_session_keeps_creation_time(self, tmp_path):
        now = [NOW.timestamp()]
        manager = SessionManager(
            tmp_path / ".claude_session_id",
            tmp_path / ".session_history",
            expiry_hours=24,
            clock=lambda: now[0],
        )
        manager.save("sess-1")
        for _ in range(25):
            now[0] += 3600
            manager.save("sess-1")

        diagnosis = manager.diagnose()
        assert diagnosis.reason is SessionReason.SESSION_EXPIRED
        assert manager.load_session_id() is None

    def test_new_session_id_gets_new_timestamp(self, tmp_path):
        now = [NOW.timestamp()]
        manager = SessionManager(
            tmp_path / ".claude_session_id",
            tmp_path / ".session_history",
            clock=lambda: now[0],
        )
        manager.save("sess-1")
        now[0] += 3600
        manager.save("sess-2")
        record = json.loads(manager.session_file.read_text())
        assert record["session_id"] == "sess-2"
        assert record["timestamp"].startswith("2026-03-01T13:00:00")

    def test_save_empty_id_raises(self, manager):
        with pytest.raises(SessionError):
            manager.save("  ")
        assert not manager.session_file.exists()

    def test_load_invalid_returns_none(self, manager):
        manager.session_file.write_text("{broken")
        assert manager.load_session_id() is None

    def test_load_expired_resets(self, manager):
        write_record(manager, session_id="abc", timestamp=(NOW - timedelta(days=2)).isoformat())
        assert manager.load_session_id() is None
        assert not manager.session_file.exists()
        assert manager.get_history()[-1]["reason"] == "expired"


class TestReset:
    def test_reset_deletes_and_records(self, manager):
        manager.save("sess-1")
        manager.reset(ResetReason.CIRCUIT_OPEN)
        assert not manager.session_file.exists()
        entry = manager.get_history()[-1]
        assert entry["event"] == "reset"
        assert entry["reason"] == "circuit_open"
        assert entry["session_id"] == "sess-1"

    def test_reset_is_idempotent(self, manager):
        manager.save("sess-1")
        manager.reset()
        first = manager.diagnose()
        manager.reset()
        second = manager.diagnose()
        assert first == second
        assert first.reason is SessionReason.NO_SESSION_FILE

    def test_history_is_capped(self, manager):
        for _ in range(55):
            manager.reset(ResetReason.MANUAL_RESET)
        assert len(manager.get_history()) == 50


class TestContextHash:
    def test_hash_tracks_prompt_changes(self, tmp_path):
        korero_dir = tmp_path / ".korero"
        korero_dir.mkdir()
        config_file = tmp_path / ".korerorc"
        (korero_dir / "PROMPT.md").write_text("v1")
        first = compute_context_hash(korero_dir, config_file)
        assert first == compute_context_hash(korero_dir, config_file)

        (korero_dir / "PROMPT.md").write_text("v2")
        assert compute_context_hash(korero_dir, config_file) != first

    def test_hash_tracks_config_file(self, tmp_path):
        korero_dir = tmp_path / ".korero"
        korero_dir.mkdir()
        config_file = tmp_path / ".korerorc"
        before = compute_context_hash(korero_dir, config_file)
        config_file.write_text("MAX_CALLS_PER_HOUR=10\n")
        assert compute_context_hash(korero_dir, config_file) != before
