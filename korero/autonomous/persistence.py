"""On-disk state helpers for the loop's components.

Every write goes to a temporary file in the target's directory and is then
renamed over the target, so a crash mid-write leaves either the old file or
the new one, never a half-written state file. Reads treat a missing or
unparseable file as absent.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import orjson

logger = logging.getLogger(__name__)


def atomic_write_bytes(path: Path, content: bytes) -> None:
    """Write bytes to path atomically (temp file + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as fp:
            fp.write(content)
            fp.flush()
            os.fsync(fp.fileno())
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def atomic_write_json(path: Path, data: Any) -> None:
    """Serialize data with orjson and write it atomically."""
    atomic_write_bytes(path, orjson.dumps(data, option=orjson.OPT_INDENT_2))


def read_json(path: Path, expected: type | tuple[type, ...] = dict) -> Any | None:
    """Load JSON from path.

    Returns None when the file is missing, unreadable, not valid JSON, or
    not of the expected top-level type. Corruption is logged, never raised.
    """
    try:
        content = path.read_bytes()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning(f"Could not read state file {path}: {e}")
        return None

    try:
        data = orjson.loads(content)
    except orjson.JSONDecodeError:
        logger.warning(f"State file {path} is corrupted; treating as absent")
        return None

    if not isinstance(data, expected):
        logger.warning(f"State file {path} has unexpected shape; treating as absent")
        return None
    return data


def append_capped(path: Path, entry: dict[str, Any], limit: int) -> list[dict[str, Any]]:
    """Append an entry to a JSON array file, keeping only the last ``limit`` items."""
    history = read_json(path, expected=list) or []
    history.append(entry)
    if len(history) > limit:
        history = history[-limit:]
    atomic_write_json(path, history)
    return history
