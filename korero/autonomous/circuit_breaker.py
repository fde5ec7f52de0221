"""Circuit breaker for the autonomous loop.

Halts the loop when iterations stop producing measurable progress. Three
independent stagnation counters are kept because their remedies differ:
iterations with no progress, iterations repeating errors, and iterations in
which the agent was denied tool permissions.

State is loaded from and persisted to ``.korero/.circuit_breaker_state``
once per iteration; transitions are appended to
``.korero/.circuit_breaker_history``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from korero.autonomous.persistence import append_capped, atomic_write_json, read_json
from korero.autonomous.response_analyzer import LoopRecord
from korero.utils.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50
HALF_OPEN_AFTER = 2


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    HALF_OPEN = "HALF_OPEN"  # Suspected stagnation
    OPEN = "OPEN"  # Halted until manually reset


class HaltCause(str, Enum):
    """Why the circuit opened; also the loop's halt reason code."""

    NO_PROGRESS = "no_progress"
    SAME_ERROR = "same_error"
    PERMISSION_DENIED = "permission_denied"


RECOVERY_SUGGESTIONS: dict[HaltCause, list[str]] = {
    HaltCause.NO_PROGRESS: [
        "Check .korero/fix_plan.md: the project may be complete or the next task unclear",
        "Clarify .korero/PROMPT.md if the agent lacks direction",
        "Verify ALLOWED_TOOLS in .korerorc lets the agent edit files",
    ],
    HaltCause.SAME_ERROR: [
        "Inspect recent logs: tail -20 .korero/logs/korero.log",
        "Open the latest agent output: ls -lt .korero/logs/claude_output_*.log | head -1",
        "Fix the repeated failure by hand or add guidance to .korero/fix_plan.md",
    ],
    HaltCause.PERMISSION_DENIED: [
        "Widen the tool allowlist: update ALLOWED_TOOLS in .korerorc (e.g. ALLOWED_TOOLS=\"@standard\")",
        "Check which tool was denied in the latest agent output",
    ],
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class CircuitBreakerState:
    """Persisted breaker state. Unknown fields are ignored on load."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_no_progress: int = 0
    consecutive_same_error: int = 0
    consecutive_permission_denials: int = 0
    last_progress_loop: int = 0
    total_opens: int = 0
    reason: str = ""
    current_loop: int = 0
    cause: str | None = None
    last_change: str = ""
    last_output_length: int = 0
    consecutive_output_decline: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CircuitBreakerState:
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["state"] = CircuitState(values.get("state", CircuitState.CLOSED.value))
        for name in (
            "consecutive_no_progress", "consecutive_same_error", "consecutive_permission_denials",
            "last_progress_loop", "total_opens", "current_loop", "last_output_length",
            "consecutive_output_decline",
        ):
            if name in values:
                values[name] = max(0, int(values[name]))
        return cls(**values)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    no_progress_threshold: int = 3
    same_error_threshold: int = 5
    permission_denial_threshold: int = 2
    output_decline_threshold: int = 70


class CircuitBreaker:
    """Three-state stagnation guard.

    Implements the transition table:

    - CLOSED: OPEN on permission denials, then no progress, then repeated
      errors (in that priority order); HALF_OPEN after two loops without
      progress.
    - HALF_OPEN: OPEN on permission denials; CLOSED on any progress; OPEN
      once the no-progress threshold is reached.
    - OPEN: terminal until :meth:`reset`.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        state_file: Path,
        history_file: Path,
    ):
        self.config = config
        self.state_file = Path(state_file)
        self.history_file = Path(history_file)
        self.data = self.load()

    @property
    def state(self) -> CircuitState:
        return self.data.state

    def load(self) -> CircuitBreakerState:
        """Load persisted state; a missing or corrupted file means CLOSED."""
        raw = read_json(self.state_file)
        if raw is None:
            return CircuitBreakerState()
        try:
            return CircuitBreakerState.from_dict(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid circuit breaker state in {self.state_file} ({e}), resetting to CLOSED")
            return CircuitBreakerState()

    def save(self) -> None:
        atomic_write_json(self.state_file, self.data.to_dict())

    def can_execute(self) -> bool:
        return self.data.state is not CircuitState.OPEN

    def ensure_can_execute(self) -> None:
        """Raise CircuitOpenError when the breaker is OPEN."""
        if not self.can_execute():
            raise CircuitOpenError(
                f"Circuit breaker is open: {self.data.reason}",
                reason=self.data.cause,
                total_opens=self.data.total_opens,
            )

    def should_halt(self) -> bool:
        return not self.can_execute()

    @property
    def halt_cause(self) -> HaltCause | None:
        if self.data.cause is None:
            return None
        try:
            return HaltCause(self.data.cause)
        except ValueError:
            return None

    def recovery_suggestions(self) -> list[str]:
        """Remediation steps keyed off the reason the circuit opened."""
        cause = self.halt_cause or HaltCause.NO_PROGRESS
        return [*RECOVERY_SUGGESTIONS[cause], "Reset the circuit breaker: korero reset-circuit"]

    def record_result(self, record: LoopRecord) -> CircuitState:
        """Update counters from one iteration, apply transitions, persist.

        Returns:
            The state after this iteration.
        """
        data = self.data
        current = data.state
        loop_number = record.loop_number

        if record.has_progress:
            data.consecutive_no_progress = 0
            data.last_progress_loop = loop_number
        else:
            data.consecutive_no_progress += 1

        data.consecutive_same_error = data.consecutive_same_error + 1 if record.has_errors else 0
        data.consecutive_permission_denials = (
            data.consecutive_permission_denials + 1 if record.has_permission_denials else 0
        )
        self._track_output_decline(record.output_length)
        data.current_loop = loop_number

        new_state, cause, reason = self._next_state(current, record.has_progress)
        if new_state is not current:
            data.state = new_state
            data.reason = reason
            data.cause = cause.value if cause else None
            data.last_change = _now()
            if new_state is CircuitState.OPEN:
                data.total_opens += 1
            self._log_transition(current, new_state, reason, loop_number)
        elif current is CircuitState.OPEN:
            data.reason = data.reason or "Circuit breaker is open, execution halted"

        self.save()
        return data.state

    def _next_state(
        self, current: CircuitState, has_progress: bool
    ) -> tuple[CircuitState, HaltCause | None, str]:
        data = self.data
        cfg = self.config
        denials = data.consecutive_permission_denials
        no_progress = data.consecutive_no_progress
        same_error = data.consecutive_same_error

        if current is CircuitState.CLOSED:
            if denials >= cfg.permission_denial_threshold:
                return (
                    CircuitState.OPEN,
                    HaltCause.PERMISSION_DENIED,
                    f"Permission denied in {denials} consecutive loops - update ALLOWED_TOOLS in .korerorc",
                )
            if no_progress >= cfg.no_progress_threshold:
                return (
                    CircuitState.OPEN,
                    HaltCause.NO_PROGRESS,
                    f"No progress detected in {no_progress} consecutive loops",
                )
            if same_error >= cfg.same_error_threshold:
                return (
                    CircuitState.OPEN,
                    HaltCause.SAME_ERROR,
                    f"Same error repeated in {same_error} consecutive loops",
                )
            if no_progress >= HALF_OPEN_AFTER:
                return CircuitState.HALF_OPEN, None, f"Monitoring: {no_progress} loops without progress"

        elif current is CircuitState.HALF_OPEN:
            if denials >= cfg.permission_denial_threshold:
                return (
                    CircuitState.OPEN,
                    HaltCause.PERMISSION_DENIED,
                    f"Permission denied in {denials} consecutive loops - update ALLOWED_TOOLS in .korerorc",
                )
            if has_progress:
                return CircuitState.CLOSED, None, "Progress detected, circuit recovered"
            if no_progress >= cfg.no_progress_threshold:
                return (
                    CircuitState.OPEN,
                    HaltCause.NO_PROGRESS,
                    f"No recovery, opening circuit after {no_progress} loops",
                )

        return current, None, data.reason

    def _track_output_decline(self, output_length: int) -> None:
        data = self.data
        if output_length > 0 and data.last_output_length > 0:
            decline_pct = (data.last_output_length - output_length) * 100 / data.last_output_length
            if decline_pct > self.config.output_decline_threshold:
                data.consecutive_output_decline += 1
                logger.info(f"Output declined {decline_pct:.0f}% since previous loop")
            else:
                data.consecutive_output_decline = 0
        data.last_output_length = output_length

    def _log_transition(
        self, from_state: CircuitState, to_state: CircuitState, reason: str, loop_number: int
    ) -> None:
        entry = {
            "timestamp": _now(),
            "loop": loop_number,
            "from_state": from_state.value,
            "to_state": to_state.value,
            "reason": reason,
        }
        append_capped(self.history_file, entry, HISTORY_LIMIT)
        if to_state is CircuitState.OPEN:
            logger.warning(f"Circuit breaker OPEN: {reason}")
        else:
            logger.info(f"Circuit breaker {from_state.value} -> {to_state.value}: {reason}")

    def get_history(self) -> list[dict[str, Any]]:
        return read_json(self.history_file, expected=list) or []

    def reset(self, reason: str = "Manual reset") -> CircuitBreakerState:
        """Return to CLOSED with all counters zeroed.

        The resulting state is the same whatever the prior state was.
        """
        previous = self.data.state
        self.data = CircuitBreakerState(reason=reason)
        self.save()
        if previous is not CircuitState.CLOSED:
            self._log_transition(previous, CircuitState.CLOSED, reason, 0)
        logger.info("Circuit breaker reset to CLOSED")
        return self.data

    def status(self) -> dict[str, Any]:
        return {
            **self.data.to_dict(),
            "no_progress_threshold": self.config.no_progress_threshold,
            "same_error_threshold": self.config.same_error_threshold,
            "permission_denial_threshold": self.config.permission_denial_threshold,
        }
