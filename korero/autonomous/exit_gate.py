"""Exit gate: decides whether the loop continues, exits, or halts.

The decision is a pure function of a short rolling history of LoopRecords
plus external facts (task list, breaker state). The primary path needs BOTH
heuristic confidence and the agent's explicit ``EXIT_SIGNAL: true`` in the
latest iteration; completion phrases alone never end the run.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Sequence

from korero.autonomous.circuit_breaker import CircuitState, HaltCause
from korero.autonomous.fix_plan import TaskSummary
from korero.autonomous.response_analyzer import LoopRecord


class GateAction(str, Enum):
    CONTINUE = "continue"
    EXIT = "exit"
    HALT = "halt"


class ExitReason(str, Enum):
    PROJECT_COMPLETE = "project_complete"
    PLAN_COMPLETE = "plan_complete"
    COMPLETION_SIGNALS = "completion_signals"
    TEST_SATURATION = "test_saturation"
    CIRCUIT_OPEN = "circuit_open"


@dataclass(frozen=True)
class ExitGateConfig:
    completion_threshold: int = 2
    max_consecutive_done_signals: int = 2
    test_loop_ratio: float = 0.8
    test_loop_window: int = 5
    history_size: int = 5


@dataclass(frozen=True)
class ExitDecision:
    action: GateAction
    reason: str | None = None
    detail: str = ""

    @property
    def should_stop(self) -> bool:
        return self.action is not GateAction.CONTINUE


CONTINUE = ExitDecision(GateAction.CONTINUE)


def completion_confidence(history: Iterable[LoopRecord]) -> int:
    """Completion indicators summed over iterations that also set exit_signal."""
    return sum(record.completion_indicators for record in history if record.exit_signal)


def consecutive_done_signals(history: Sequence[LoopRecord]) -> int:
    """Length of the trailing run of iterations with an explicit exit signal."""
    count = 0
    for record in reversed(history):
        if not record.exit_signal:
            break
        count += 1
    return count


def ratio_of_test_only_loops(history: Sequence[LoopRecord], window: int) -> float:
    """Share of test-only iterations in the trailing window (0 if not yet full)."""
    if window <= 0 or len(history) < window:
        return 0.0
    recent = list(history)[-window:]
    return sum(1 for record in recent if record.is_test_only) / window


def evaluate_exit(
    history: Sequence[LoopRecord],
    config: ExitGateConfig,
    tasks: TaskSummary | None = None,
    circuit_state: CircuitState = CircuitState.CLOSED,
    halt_cause: HaltCause | None = None,
) -> ExitDecision:
    """Decide the loop's next step from recent records and external state."""
    if circuit_state is CircuitState.OPEN:
        reason = halt_cause.value if halt_cause else ExitReason.CIRCUIT_OPEN.value
        return ExitDecision(GateAction.HALT, reason, "Circuit breaker is open")

    if not history:
        return CONTINUE

    latest = history[-1]
    window = list(history)[-config.history_size:]

    confidence = completion_confidence(window)
    if latest.exit_signal and confidence >= config.completion_threshold:
        return ExitDecision(
            GateAction.EXIT,
            ExitReason.PROJECT_COMPLETE.value,
            f"Exit signal with completion confidence {confidence}/{config.completion_threshold}",
        )

    if tasks is not None and tasks.all_complete:
        return ExitDecision(
            GateAction.EXIT,
            ExitReason.PLAN_COMPLETE.value,
            f"All {tasks.total} fix plan tasks are complete",
        )

    done = consecutive_done_signals(history)
    if done >= config.max_consecutive_done_signals:
        return ExitDecision(
            GateAction.EXIT,
            ExitReason.COMPLETION_SIGNALS.value,
            f"{done} consecutive loops signaled completion",
        )

    ratio = ratio_of_test_only_loops(history, config.test_loop_window)
    if ratio >= config.test_loop_ratio:
        return ExitDecision(
            GateAction.EXIT,
            ExitReason.TEST_SATURATION.value,
            f"{ratio:.0%} of the last {config.test_loop_window} loops were test-only",
        )

    return CONTINUE


class ExitGate:
    """Holds the rolling record history and evaluates the gate."""

    def __init__(self, config: ExitGateConfig):
        self.config = config
        size = max(config.history_size, config.test_loop_window, config.max_consecutive_done_signals)
        self.history: deque[LoopRecord] = deque(maxlen=size)

    def record(self, record: LoopRecord) -> None:
        self.history.append(record)

    def evaluate(
        self,
        tasks: TaskSummary | None = None,
        circuit_state: CircuitState = CircuitState.CLOSED,
        halt_cause: HaltCause | None = None,
    ) -> ExitDecision:
        return evaluate_exit(list(self.history), self.config, tasks, circuit_state, halt_cause)

    def reset(self) -> None:
        self.history.clear()
