"""Per-iteration duration history (last 10 loops)."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Callable

from korero.autonomous.persistence import atomic_write_json, read_json

HISTORY_LIMIT = 10


def format_duration(seconds: float) -> str:
    total = max(0, int(seconds))
    if total < 60:
        return f"{total}s"
    if total < 3600:
        return f"{total // 60}m {total % 60}s"
    return f"{total // 3600}h {(total % 3600) // 60}m"


class DurationTracker:
    def __init__(self, history_file: Path, clock: Callable[[], float] = time.monotonic):
        self.history_file = Path(history_file)
        self._clock = clock
        self._started: float | None = None

    def start(self) -> None:
        self._started = self._clock()

    def stop(self) -> float | None:
        """Record the elapsed time since :meth:`start`; returns it in seconds."""
        if self._started is None:
            return None
        duration = self._clock() - self._started
        self._started = None
        history = self.history()
        history.append(round(duration, 3))
        atomic_write_json(self.history_file, history[-HISTORY_LIMIT:])
        return duration

    def history(self) -> list[float]:
        data = read_json(self.history_file, expected=list) or []
        return [float(d) for d in data if isinstance(d, (int, float))]

    def last(self) -> float:
        history = self.history()
        return history[-1] if history else 0.0

    def average(self) -> float:
        history = self.history()
        return sum(history) / len(history) if history else 0.0

    def summary(self) -> dict[str, Any]:
        return {
            "last_seconds": round(self.last(), 1),
            "average_seconds": round(self.average(), 1),
            "last": format_duration(self.last()),
            "average": format_duration(self.average()),
            "samples": len(self.history()),
        }
