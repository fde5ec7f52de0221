"""Logging configuration for the CLI."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(
    log_level: str = "INFO",
    log_file: Path | None = None,
    console_level: str = "WARNING",
) -> None:
    """Configure the root logger.

    Console output goes to stderr so it does not interleave with the rich
    status display on stdout. ``log_file`` (normally
    ``.korero/logs/korero.log``) receives everything at ``log_level``.
    """
    stream = logging.StreamHandler(sys.stderr)
    stream.setLevel(getattr(logging, console_level.upper()))
    handlers: list[logging.Handler] = [stream]

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(getattr(logging, log_level.upper()))
        handlers.append(file_handler)

    logging.basicConfig(
        level=min(getattr(logging, log_level.upper()), stream.level),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
