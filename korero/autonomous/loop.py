"""The Korero loop controller.

Runs the agent repeatedly against a project until the exit gate allows a
clean exit, the circuit breaker opens, the hourly budget runs out (when not
waiting), a health check fails, or the user interrupts.

One iteration:

1. pre-flight health checks (any ERROR aborts before the agent runs)
2. decide whether to resume the agent's session
3. count the call against the hourly budget, then invoke the agent
4. diff the working tree, analyze the output into a LoopRecord
5. feed the record to the circuit breaker and exit gate
6. persist status and either continue, exit or halt

Only one agent invocation is ever in flight.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from rich.console import Console

from korero.autonomous.circuit_breaker import CircuitState
from korero.autonomous.duration_tracker import DurationTracker
from korero.autonomous.exit_gate import ExitGate, ExitGateConfig, GateAction
from korero.autonomous.fix_plan import load_tasks
from korero.autonomous.git_manager import GitManager
from korero.autonomous.health_check import HealthReport, build_default_checks
from korero.autonomous.persistence import atomic_write_json
from korero.autonomous.rate_limiter import RateLimiter, format_rate_limit_warning
from korero.autonomous.response_analyzer import LoopRecord, ResponseAnalyzer
from korero.autonomous.runner import AgentRunner
from korero.autonomous.session_manager import ResetReason, SessionManager, compute_context_hash
from korero.autonomous.status import (
    StatusDisplay,
    circuit_breaker_for,
    render_health_report,
    render_recovery,
    write_status,
)
from korero.config import LoopConfig
from korero.utils.exceptions import InvocationTimeoutError

logger = logging.getLogger(__name__)

COUNTDOWN_INTERVAL = 60.0
PENDING_TASKS_IN_PROMPT = 10

DEFAULT_PROMPT = "Work on the highest-priority unfinished task in .korero/fix_plan.md."

STATUS_BLOCK_INSTRUCTIONS = """\
At the end of your response, report your progress in exactly this block:

---KORERO_STATUS---
STATUS: IN_PROGRESS | COMPLETE | BLOCKED
TASKS_COMPLETED_THIS_LOOP: <number>
FILES_MODIFIED: <number>
TESTS_STATUS: PASSING | FAILING | NOT_RUN
WORK_TYPE: IMPLEMENTATION | TESTING | DOCUMENTATION | REFACTORING
EXIT_SIGNAL: false | true
RECOMMENDATION: <one line summary of what to do next>
---END_KORERO_STATUS---

Set EXIT_SIGNAL: true only when every task is done and nothing remains."""


class RunState(str, Enum):
    """State of the whole run."""

    RUNNING = "RUNNING"
    PAUSED_RATE_LIMIT = "PAUSED_RATE_LIMIT"
    HALTED_CIRCUIT_OPEN = "HALTED_CIRCUIT_OPEN"
    HALTED_HEALTH_CHECK = "HALTED_HEALTH_CHECK"
    EXITED_COMPLETE = "EXITED_COMPLETE"
    EXITED_USER = "EXITED_USER"


EXIT_CODES: dict[RunState, int] = {
    RunState.RUNNING: 0,
    RunState.EXITED_COMPLETE: 0,
    RunState.HALTED_CIRCUIT_OPEN: 2,
    RunState.PAUSED_RATE_LIMIT: 3,
    RunState.HALTED_HEALTH_CHECK: 4,
    RunState.EXITED_USER: 130,
}


@dataclass(frozen=True)
class LoopResult:
    """How a run ended."""

    state: RunState
    reason: str
    loops_run: int

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.state]


@dataclass(frozen=True)
class IterationOutcome:
    state: RunState
    record: LoopRecord | None = None
    reason: str | None = None


class LoopController:
    """Drives the agent loop for one project."""

    def __init__(
        self,
        config: LoopConfig,
        runner: AgentRunner | None = None,
        git: GitManager | None = None,
        console: Console | None = None,
        wait_for_reset: bool = True,
    ):
        self.config = config
        self.runner = runner or AgentRunner(config)
        self.git = git or GitManager(config.project_dir)
        self.wait_for_reset = wait_for_reset

        self.rate_limiter = RateLimiter(config.max_calls_per_hour, config.call_count_file)
        self.breaker = circuit_breaker_for(config)
        self.sessions = SessionManager(
            config.session_file, config.session_history_file, config.session_expiry_hours
        )
        self.analyzer = ResponseAnalyzer(config.output_format)
        self.exit_gate = ExitGate(
            ExitGateConfig(
                completion_threshold=config.completion_threshold,
                max_consecutive_done_signals=config.max_consecutive_done_signals,
                test_loop_ratio=config.test_loop_ratio,
                test_loop_window=config.test_loop_window,
            )
        )
        self.durations = DurationTracker(config.duration_history_file)
        self.health = build_default_checks(config, self.rate_limiter, self.sessions)
        self.display = StatusDisplay(console, verbose=config.verbose_progress)

        self.loop_number = 0
        self._stop = asyncio.Event()
        self._current: asyncio.Future[IterationOutcome] | None = None
        self._agent_started = False

    def stop(self) -> None:
        """Request a user stop; kills an in-flight agent invocation."""
        logger.info("Stop requested")
        self._stop.set()
        if self._current is not None and not self._current.done():
            self._current.cancel()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def _install_signal_handlers(self) -> bool:
        loop = asyncio.get_running_loop()
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self.stop)
        except (NotImplementedError, RuntimeError, ValueError):
            logger.debug("Signal handlers unavailable; relying on KeyboardInterrupt")
            return False
        return True

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    async def run(self, max_loops: int | None = None, handle_signals: bool = True) -> LoopResult:
        """Run until the loop exits, halts or is interrupted.

        Args:
            max_loops: Iteration limit; defaults to MAX_LOOPS from config
                (None means continuous).
            handle_signals: Install SIGINT/SIGTERM handlers that stop the run.
        """
        if max_loops is None:
            max_loops = self.config.max_loop_count
        installed = self._install_signal_handlers() if handle_signals else False
        self.exit_gate.reset()
        self.display.show_loop_start(max_loops)
        logger.info(f"Starting loop in {self.config.project_dir} (max loops: {max_loops or 'continuous'})")

        try:
            return await self._run(max_loops)
        finally:
            if installed:
                self._remove_signal_handlers()

    async def _run(self, max_loops: int | None) -> LoopResult:
        self.breaker.data = self.breaker.load()
        if not self.breaker.can_execute():
            render_recovery(self.breaker, self.display.console)
            reason = self.breaker.data.cause or "circuit_open"
            return self._finish(RunState.HALTED_CIRCUIT_OPEN, reason, 0)

        loops_run = 0
        while True:
            if self._stop.is_set():
                return self._interrupted(loops_run)

            if max_loops is not None and loops_run >= max_loops:
                return self._finish(RunState.EXITED_COMPLETE, "max_loops_reached", loops_run)

            if self.rate_limiter.is_exhausted():
                if not self.wait_for_reset:
                    return self._finish(RunState.PAUSED_RATE_LIMIT, "rate_limit", loops_run)
                self._write_status(RunState.PAUSED_RATE_LIMIT, "rate_limited", "rate_limit")
                if not await self._wait_for_reset():
                    return self._interrupted(loops_run)
                continue

            self._agent_started = False
            self._current = asyncio.ensure_future(self.run_iteration())
            try:
                outcome = await self._current
            except asyncio.CancelledError:
                if not self._stop.is_set():
                    raise
                # only an iteration that reached the agent counts
                return self._interrupted(loops_run + int(self._agent_started))
            finally:
                self._current = None

            if outcome.record is not None:
                loops_run += 1
            if outcome.state is not RunState.RUNNING:
                return self._finish(outcome.state, outcome.reason or outcome.state.value.lower(), loops_run)

    async def _wait_for_reset(self) -> bool:
        """Sleep until the rate window resets.

        Returns:
            False if a stop was requested while waiting.
        """
        while self.rate_limiter.is_exhausted():
            remaining = self.rate_limiter.seconds_until_reset()
            self.display.show_countdown(remaining)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=max(1.0, min(remaining, COUNTDOWN_INTERVAL)))
                return False
            except asyncio.TimeoutError:
                continue
        logger.info("Rate limit window reset, resuming")
        return True

    async def run_iteration(self) -> IterationOutcome:
        """Execute one iteration.

        Raises:
            CircuitOpenError: if the circuit breaker is OPEN.
        """
        self.breaker.data = self.breaker.load()
        self.breaker.ensure_can_execute()

        report = await self.health.run_all()
        if report.has_errors:
            render_health_report(report, self.display.console)
            self._write_status(RunState.HALTED_HEALTH_CHECK, "health_check_failed", "health_check_failed")
            return IterationOutcome(RunState.HALTED_HEALTH_CHECK, reason="health_check_failed")

        self.loop_number += 1
        loop_number = self.loop_number

        context_hash = compute_context_hash(self.config.korero_dir, self.config.config_file)
        session_id = self.sessions.load_session_id(context_hash) if self.config.session_continuity else None

        remaining = self.rate_limiter.record_call()
        warning = self.rate_limiter.check_warning()
        if warning is not None:
            message = format_rate_limit_warning(self.rate_limiter.call_count, self.rate_limiter.max_calls)
            logger.warning(message)
            self.display.show_warning(message)

        self.display.show_iteration(loop_number, remaining)
        self._write_status(RunState.RUNNING, "executing")
        prompt = self.build_prompt(loop_number, remaining)

        start_sha = await asyncio.to_thread(self.git.snapshot)
        self._agent_started = True
        self.durations.start()
        try:
            result = await self.runner.invoke(prompt, session_id)
        except InvocationTimeoutError as e:
            logger.warning(f"Loop {loop_number}: {e}")
            files = await asyncio.to_thread(self.git.count_changed_files, start_sha)
            record = LoopRecord.failed(loop_number, files_changed=files)
        except OSError as e:
            logger.error(f"Loop {loop_number}: could not start agent: {e}")
            record = LoopRecord.failed(loop_number)
        else:
            self._save_output(result.stdout, result.stderr)
            if result.returncode != 0:
                logger.warning(f"Loop {loop_number}: agent exited with code {result.returncode}")
            files = await asyncio.to_thread(self.git.count_changed_files, start_sha)
            record = self.analyzer.analyze(result.stdout, loop_number, files, result.returncode)
            if record.session_id and self.config.session_continuity and result.succeeded:
                self.sessions.save(record.session_id, context_hash)
        elapsed = self.durations.stop() or 0.0

        atomic_write_json(self.config.response_analysis_file, record.to_dict())
        return self._evaluate(record, elapsed)

    def _evaluate(self, record: LoopRecord, elapsed: float) -> IterationOutcome:
        state = self.breaker.record_result(record)
        self.exit_gate.record(record)
        decision = self.exit_gate.evaluate(
            load_tasks(self.config.fix_plan_file), state, self.breaker.halt_cause
        )
        self.display.show_record(record, state, elapsed)
        logger.info(
            f"Loop {record.loop_number}: files={record.files_changed} errors={record.has_errors} "
            f"exit_signal={record.exit_signal} circuit={state.value} decision={decision.action.value}"
        )

        if decision.action is GateAction.HALT:
            self.sessions.reset(ResetReason.CIRCUIT_OPEN)
            render_recovery(self.breaker, self.display.console)
            self._write_status(RunState.HALTED_CIRCUIT_OPEN, "circuit_open", decision.reason)
            return IterationOutcome(RunState.HALTED_CIRCUIT_OPEN, record, decision.reason)

        if decision.action is GateAction.EXIT:
            logger.info(f"Exiting: {decision.detail}")
            self.sessions.reset(ResetReason.PROJECT_COMPLETE)
            self._write_status(RunState.EXITED_COMPLETE, "completed", decision.reason)
            return IterationOutcome(RunState.EXITED_COMPLETE, record, decision.reason)

        self._write_status(RunState.RUNNING, "executed")
        return IterationOutcome(RunState.RUNNING, record)

    def build_prompt(self, loop_number: int, calls_remaining: int) -> str:
        """Assemble the prompt sent on the agent's stdin."""
        try:
            base = self.config.prompt_file.read_text(encoding="utf-8").strip()
        except OSError:
            base = DEFAULT_PROMPT

        lines = [
            base,
            "",
            "---",
            "## Loop context",
            f"- Loop: {loop_number}",
            f"- Calls remaining this hour: {calls_remaining}",
            f"- Circuit breaker: {self.breaker.state.value}",
        ]
        tasks = load_tasks(self.config.fix_plan_file)
        if tasks is not None and tasks.total:
            lines.append(f"- Tasks: {tasks.completed}/{tasks.total} complete")
            pending = tasks.pending_tasks[:PENDING_TASKS_IN_PROMPT]
            if pending:
                lines += ["", "### Next tasks", *(f"- [ ] {task}" for task in pending)]
        lines += ["", STATUS_BLOCK_INSTRUCTIONS]
        return "\n".join(lines) + "\n"

    def _save_output(self, stdout: bytes, stderr: bytes) -> None:
        log_dir = self.config.log_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        path = log_dir / f"claude_output_{datetime.now():%Y-%m-%d_%H-%M-%S}_{self.loop_number}.log"
        content = stdout
        if stderr:
            content += b"\n--- stderr ---\n" + stderr
        path.write_bytes(content)

    def _write_status(self, state: RunState, last_action: str, exit_reason: str | None = None) -> None:
        write_status(
            self.config,
            loop_count=self.loop_number,
            state=state.value,
            last_action=last_action,
            calls_made=self.rate_limiter.call_count,
            circuit_state=self.breaker.state,
            exit_reason=exit_reason,
        )

    def _finish(self, state: RunState, reason: str, loops_run: int) -> LoopResult:
        self._write_status(state, "stopped", reason)
        result = LoopResult(state, reason, loops_run)
        self.display.show_completion(
            state is RunState.EXITED_COMPLETE, f"Loop ended: {state.value} ({reason}) after {loops_run} loops"
        )
        logger.info(f"Loop ended: {state.value} reason={reason} loops={loops_run}")
        return result

    def _interrupted(self, loops_run: int) -> LoopResult:
        self.runner.kill()
        self.breaker.save()
        self.sessions.reset(ResetReason.MANUAL_INTERRUPT)
        return self._finish(RunState.EXITED_USER, "user_interrupt", loops_run)

    async def dry_run(self) -> tuple[HealthReport, dict[str, Any]]:
        """Health checks plus a summary of what a run would do; consumes no calls."""
        report = await self.health.run_all()
        tasks = load_tasks(self.config.fix_plan_file)
        try:
            prompt_lines = len(self.config.prompt_file.read_text(encoding="utf-8").splitlines())
        except OSError:
            prompt_lines = 0
        max_loops = self.config.max_loop_count
        remaining = self.rate_limiter.remaining()
        summary = {
            "loop_limit": max_loops or "continuous",
            "max_calls_per_hour": self.config.max_calls_per_hour,
            "calls_remaining": remaining,
            "projected_calls": min(max_loops, remaining) if max_loops else remaining,
            "timeout_minutes": self.config.timeout_minutes,
            "allowed_tools": ",".join(self.config.expanded_tools) or "not configured",
            "session_continuity": self.config.session_continuity,
            "prompt_lines": prompt_lines,
            "tasks_total": tasks.total if tasks else 0,
            "tasks_pending": tasks.pending if tasks else 0,
            "command": " ".join(self.runner.build_command()),
        }
        return report, summary
