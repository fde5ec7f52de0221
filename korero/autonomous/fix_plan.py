"""Task tracking from ``.korero/fix_plan.md`` checkbox lines."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

_TASK_LINE = re.compile(r"^\s*[-*]\s*\[(?P<mark>[ xX])\]\s*(?P<text>.*)$")


@dataclass(frozen=True)
class TaskSummary:
    total: int = 0
    completed: int = 0
    pending_tasks: tuple[str, ...] = field(default_factory=tuple)

    @property
    def pending(self) -> int:
        return self.total - self.completed

    @property
    def all_complete(self) -> bool:
        return self.total > 0 and self.pending == 0


def parse_tasks(content: str) -> TaskSummary:
    total = 0
    completed = 0
    pending: list[str] = []
    for line in content.splitlines():
        match = _TASK_LINE.match(line)
        if not match:
            continue
        total += 1
        if match.group("mark").lower() == "x":
            completed += 1
        else:
            pending.append(match.group("text").strip())
    return TaskSummary(total=total, completed=completed, pending_tasks=tuple(pending))


def load_tasks(path: Path) -> TaskSummary | None:
    """Summary of the fix plan, or None if there is no readable plan."""
    try:
        return parse_tasks(path.read_text(encoding="utf-8", errors="replace"))
    except OSError:
        return None
