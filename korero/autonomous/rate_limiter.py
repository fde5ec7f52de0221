"""Hourly call budget for agent invocations.

The window is checked lazily: every query first rolls the window over if
more than an hour has passed since it started. Counters are persisted after
every mutation so a restarted process resumes with the same budget.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from korero.autonomous.persistence import atomic_write_json, read_json
from korero.utils.exceptions import RateLimitError

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 3600
WARNING_REMAINING_PCT = 20
CRITICAL_REMAINING_PCT = 5


class WarningLevel(str, Enum):
    """Budget warning levels, ordered by severity."""

    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {WarningLevel.NONE: 0, WarningLevel.WARNING: 1, WarningLevel.CRITICAL: 2}


@dataclass
class RateLimitCounters:
    """Persisted rate limit state."""

    call_count: int = 0
    window_start: int = 0
    max_calls: int = 100
    last_warned_level: str = WarningLevel.NONE.value

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any], max_calls: int) -> RateLimitCounters:
        level = data.get("last_warned_level", WarningLevel.NONE.value)
        if level not in {lvl.value for lvl in WarningLevel}:
            level = WarningLevel.NONE.value
        return cls(
            call_count=max(0, int(data.get("call_count", 0))),
            window_start=int(data.get("window_start", 0)),
            max_calls=max_calls,
            last_warned_level=level,
        )


def warning_level_for(call_count: int, max_calls: int) -> WarningLevel:
    """Classify how close a call count is to the budget."""
    if max_calls <= 0:
        return WarningLevel.NONE
    remaining = max(0, max_calls - call_count)
    if remaining * 100 <= max_calls * CRITICAL_REMAINING_PCT:
        return WarningLevel.CRITICAL
    if remaining * 100 <= max_calls * WARNING_REMAINING_PCT:
        return WarningLevel.WARNING
    return WarningLevel.NONE


def format_rate_limit_warning(call_count: int, max_calls: int) -> str:
    """Human-readable warning for the given usage, or an empty string."""
    remaining = max(0, max_calls - call_count)
    level = warning_level_for(call_count, max_calls)
    if level is WarningLevel.CRITICAL:
        return f"CRITICAL: Rate limit at {call_count}/{max_calls} - only {remaining} calls remaining!"
    if level is WarningLevel.WARNING:
        return f"WARNING: Rate limit approaching - {call_count}/{max_calls} used ({remaining} remaining)"
    return ""


class RateLimiter:
    """Tracks agent invocations against an hourly budget."""

    def __init__(
        self,
        max_calls: int,
        state_file: Path,
        clock: Callable[[], float] = time.time,
    ):
        self.max_calls = max_calls
        self.state_file = Path(state_file)
        self._clock = clock
        self.counters = self._load()

    def _load(self) -> RateLimitCounters:
        data = read_json(self.state_file, expected=(dict, int))
        if isinstance(data, int):
            # Legacy format: the file held just the call count
            counters = RateLimitCounters(call_count=max(0, data), max_calls=self.max_calls)
        elif isinstance(data, dict):
            try:
                counters = RateLimitCounters.from_dict(data, self.max_calls)
            except (TypeError, ValueError):
                logger.warning(f"Invalid rate limit counters in {self.state_file}, resetting")
                counters = RateLimitCounters(max_calls=self.max_calls)
        else:
            counters = RateLimitCounters(max_calls=self.max_calls)

        if counters.window_start <= 0:
            counters.window_start = int(self._clock())
        return counters

    def _save(self) -> None:
        atomic_write_json(self.state_file, self.counters.to_dict())

    def _refresh_window(self) -> None:
        now = self._clock()
        if now - self.counters.window_start > WINDOW_SECONDS:
            logger.info(f"Rate limit window elapsed, resetting {self.counters.call_count} calls")
            self.counters.call_count = 0
            self.counters.window_start = int(now)
            self.counters.last_warned_level = WarningLevel.NONE.value
            self._save()

    @property
    def call_count(self) -> int:
        self._refresh_window()
        return self.counters.call_count

    def remaining(self) -> int:
        """Calls left in the current window, never negative."""
        self._refresh_window()
        return max(0, self.max_calls - self.counters.call_count)

    def is_exhausted(self) -> bool:
        return self.remaining() == 0

    def seconds_until_reset(self) -> float:
        self._refresh_window()
        elapsed = self._clock() - self.counters.window_start
        return max(0.0, WINDOW_SECONDS - elapsed)

    def record_call(self) -> int:
        """Count one invocation against the budget.

        Returns:
            Calls remaining after this one.

        Raises:
            RateLimitError: if the budget is already exhausted.
        """
        if self.is_exhausted():
            raise RateLimitError(
                f"Hourly budget of {self.max_calls} calls exhausted",
                limit=self.max_calls,
                reset_after=self.seconds_until_reset(),
            )
        self.counters.call_count += 1
        self._save()
        return self.max_calls - self.counters.call_count

    def check_warning(self) -> WarningLevel | None:
        """Return a warning level if usage crossed a new, higher threshold.

        Each level is reported at most once per window; the remembered level
        only escalates.
        """
        self._refresh_window()
        level = warning_level_for(self.counters.call_count, self.max_calls)
        last = WarningLevel(self.counters.last_warned_level)
        if level is WarningLevel.NONE or level.severity <= last.severity:
            return None
        self.counters.last_warned_level = level.value
        self._save()
        return level

    def status(self) -> dict[str, Any]:
        """Rate limit fragment for status reports."""
        current = self.call_count
        percentage = current * 100 // self.max_calls if self.max_calls else 0
        return {
            "current": current,
            "max": self.max_calls,
            "remaining": self.remaining(),
            "percentage": percentage,
            "warning_level": warning_level_for(current, self.max_calls).value,
            "seconds_until_reset": int(self.seconds_until_reset()),
        }

    def reset(self) -> None:
        """Start a fresh window with no calls recorded."""
        self.counters = RateLimitCounters(max_calls=self.max_calls, window_start=int(self._clock()))
        self._save()
