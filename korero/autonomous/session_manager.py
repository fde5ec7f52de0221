"""Session continuity for the agent subprocess.

Decides at the start of each iteration whether to resume the agent's
previous conversation (``--resume <id>``) or start fresh, and explains why.
The session record lives in ``.korero/.claude_session_id`` as a JSON object
``{session_id, timestamp, context_hash}``; older installs wrote only the
bare session id, in which case the file's mtime stands in for the
timestamp.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import orjson

from korero.autonomous.persistence import append_capped, atomic_write_json, read_json
from korero.utils.exceptions import SessionError

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50


class SessionReason(str, Enum):
    """Outcome of diagnosing the session record."""

    NO_SESSION_FILE = "no_session_file"
    EMPTY_SESSION_FILE = "empty_session_file"
    CORRUPTED_SESSION = "corrupted_session"
    MISSING_SESSION_ID = "missing_session_id"
    SESSION_EXPIRED = "session_expired"
    UNPARSEABLE_TIMESTAMP = "unparseable_timestamp"
    NO_TIMESTAMP = "no_timestamp"
    CONTEXT_CHANGED = "context_changed"
    SESSION_VALID = "session_valid"


class ResetReason(str, Enum):
    """Why a session was discarded."""

    CIRCUIT_OPEN = "circuit_open"
    MANUAL_INTERRUPT = "manual_interrupt"
    PROJECT_COMPLETE = "project_complete"
    MANUAL_RESET = "manual_reset"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SessionDiagnosis:
    reason: SessionReason
    message: str
    detail: str = ""
    session_id: str | None = None
    age_seconds: float | None = None

    @property
    def is_valid(self) -> bool:
        return self.reason is SessionReason.SESSION_VALID

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason.value,
            "message": self.message,
            "detail": self.detail,
            "session_id": self.session_id,
            "age_seconds": None if self.age_seconds is None else int(self.age_seconds),
        }


def compute_context_hash(korero_dir: Path, config_file: Path) -> str:
    """Fingerprint of the files that shape the agent's context.

    Covers ``PROMPT.md``, ``AGENT.md`` and ``.korerorc``; missing files are
    skipped.
    """
    combined = hashlib.md5()
    for path in (korero_dir / "PROMPT.md", config_file, korero_dir / "AGENT.md"):
        try:
            combined.update(hashlib.md5(path.read_bytes()).hexdigest().encode())
        except OSError:
            continue
    return combined.hexdigest()


def _parse_timestamp(value: str) -> float | None:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


class SessionManager:
    """Owns the session record and its reset history."""

    def __init__(
        self,
        session_file: Path,
        history_file: Path,
        expiry_hours: int = 24,
        clock: Callable[[], float] = time.time,
    ):
        self.session_file = Path(session_file)
        self.history_file = Path(history_file)
        self.expiry_hours = expiry_hours
        self._clock = clock

    @property
    def max_age_seconds(self) -> int:
        return self.expiry_hours * 3600

    def diagnose(self, context_hash: str | None = None) -> SessionDiagnosis:
        """Explain whether the stored session can be resumed.

        Never raises; every unusable record maps to a reason code and a
        fresh start.

        Args:
            context_hash: Current context fingerprint. When given and the
                record stores a different one, the session is not resumed.
        """
        path = self.session_file
        try:
            content = path.read_text(encoding="utf-8", errors="replace").strip()
        except FileNotFoundError:
            return SessionDiagnosis(
                SessionReason.NO_SESSION_FILE,
                "No previous session found. Starting fresh.",
                f"File '{path}' does not exist.",
            )
        except OSError as e:
            return SessionDiagnosis(
                SessionReason.CORRUPTED_SESSION,
                "Session file could not be read. Starting fresh.",
                str(e),
            )

        if not content:
            return SessionDiagnosis(
                SessionReason.EMPTY_SESSION_FILE,
                "Session file exists but is empty. Starting fresh.",
                f"File '{path}' has no content.",
            )

        if content.startswith("{"):
            return self._diagnose_record(content, context_hash)
        return self._diagnose_legacy(content)

    def _diagnose_record(self, content: str, context_hash: str | None) -> SessionDiagnosis:
        try:
            record = orjson.loads(content)
        except ValueError:
            record = None
        if not isinstance(record, dict):
            return SessionDiagnosis(
                SessionReason.CORRUPTED_SESSION,
                "Session file is corrupted (invalid JSON). Starting fresh.",
                f"Could not parse '{self.session_file}' as valid JSON.",
            )

        session_id = record.get("session_id") or record.get("sessionId")
        if not session_id or not isinstance(session_id, str):
            return SessionDiagnosis(
                SessionReason.MISSING_SESSION_ID,
                "Session file has no session ID. Starting fresh.",
                "No 'session_id' or 'sessionId' field found.",
            )

        timestamp = record.get("timestamp")
        if not timestamp:
            return SessionDiagnosis(
                SessionReason.NO_TIMESTAMP,
                "Session has no timestamp. Starting fresh.",
                "No 'timestamp' field in session file.",
                session_id=session_id,
            )

        started = _parse_timestamp(str(timestamp))
        if started is None:
            return SessionDiagnosis(
                SessionReason.UNPARSEABLE_TIMESTAMP,
                "Could not parse session timestamp. Starting fresh.",
                f"Timestamp '{timestamp}' could not be converted to epoch.",
                session_id=session_id,
            )

        age = max(0.0, self._clock() - started)
        expired = self._expired(session_id, age)
        if expired is not None:
            return expired

        stored_hash = record.get("context_hash")
        if context_hash and stored_hash and stored_hash != context_hash:
            return SessionDiagnosis(
                SessionReason.CONTEXT_CHANGED,
                "Project context changed since the session started. Starting fresh.",
                "PROMPT.md, AGENT.md or .korerorc was modified.",
                session_id=session_id,
                age_seconds=age,
            )

        return SessionDiagnosis(
            SessionReason.SESSION_VALID,
            f"Session '{session_id}' is valid ({int(age // 60)}m old). Resuming.",
            f"Session within {self.max_age_seconds}s expiration window.",
            session_id=session_id,
            age_seconds=age,
        )

    def _diagnose_legacy(self, content: str) -> SessionDiagnosis:
        session_id = content.splitlines()[0].strip()
        try:
            mtime = self.session_file.stat().st_mtime
        except OSError:
            mtime = 0.0
        age = max(0.0, self._clock() - mtime)
        expired = self._expired(session_id, age, legacy=True)
        if expired is not None:
            return expired
        return SessionDiagnosis(
            SessionReason.SESSION_VALID,
            f"Session '{session_id}' is valid ({int(age // 60)}m old). Resuming.",
            "Session within expiration window.",
            session_id=session_id,
            age_seconds=age,
        )

    def _expired(self, session_id: str, age: float, legacy: bool = False) -> SessionDiagnosis | None:
        if age < self.max_age_seconds:
            return None
        age_hours = int(age // 3600)
        if legacy:
            detail = f"Session file for '{session_id}' is {age_hours} hours old."
        else:
            detail = f"Session '{session_id}' created {age_hours} hours ago exceeds {self.expiry_hours}h limit."
        return SessionDiagnosis(
            SessionReason.SESSION_EXPIRED,
            f"Session expired ({age_hours}h old, max {self.expiry_hours}h). Starting fresh.",
            detail,
            session_id=session_id,
            age_seconds=age,
        )

    def load_session_id(self, context_hash: str | None = None) -> str | None:
        """Session id to resume, or None to start fresh.

        An expired session is reset (and recorded in the history) so the
        next iteration does not diagnose it again.
        """
        diagnosis = self.diagnose(context_hash)
        if diagnosis.is_valid:
            logger.info(diagnosis.message)
            return diagnosis.session_id

        logger.info(f"{diagnosis.message} ({diagnosis.reason.value})")
        if diagnosis.reason is SessionReason.SESSION_EXPIRED:
            self.reset(ResetReason.EXPIRED)
        return None

    def save(self, session_id: str, context_hash: str | None = None) -> None:
        """Persist the session id reported by the agent.

        Re-saving the id already on disk keeps its original timestamp, so a
        session resumed every iteration still ages toward expiry.

        Raises:
            SessionError: if ``session_id`` is empty.
        """
        if not session_id or not session_id.strip():
            raise SessionError("Cannot save an empty session id")
        session_id = session_id.strip()
        timestamp = datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()
        existing = read_json(self.session_file)
        if existing is not None and existing.get("session_id") == session_id and existing.get("timestamp"):
            timestamp = existing["timestamp"]
        record = {"session_id": session_id, "timestamp": timestamp}
        if context_hash:
            record["context_hash"] = context_hash
        atomic_write_json(self.session_file, record)

    def current_session_id(self) -> str | None:
        """Stored session id regardless of validity (for status reports)."""
        return self.diagnose().session_id

    def reset(self, reason: ResetReason | str = ResetReason.MANUAL_RESET) -> None:
        """Discard the session so the next iteration starts fresh.

        Resetting when there is no session still records the event.
        """
        reason_value = reason.value if isinstance(reason, ResetReason) else str(reason)
        session_id = self.current_session_id()
        try:
            self.session_file.unlink()
        except FileNotFoundError:
            pass
        append_capped(
            self.history_file,
            {
                "timestamp": datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
                "event": "reset",
                "reason": reason_value,
                "session_id": session_id,
            },
            HISTORY_LIMIT,
        )
        logger.info(f"Session reset ({reason_value})")

    def get_history(self) -> list[dict[str, Any]]:
        return read_json(self.history_file, expected=list) or []
