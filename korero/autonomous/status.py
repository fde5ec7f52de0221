"""Status reporting for autonomous mode.

Writes ``.korero/status.json`` at the end of every iteration, aggregates the
persisted state of every component for ``korero status``, and renders both
with rich.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from korero.autonomous.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from korero.autonomous.duration_tracker import DurationTracker, format_duration
from korero.autonomous.fix_plan import load_tasks
from korero.autonomous.health_check import HealthReport, HealthStatus
from korero.autonomous.persistence import atomic_write_json, read_json
from korero.autonomous.rate_limiter import RateLimiter
from korero.autonomous.response_analyzer import LoopRecord
from korero.autonomous.session_manager import SessionManager
from korero.config import LoopConfig
from korero.ui import get_console

logger = logging.getLogger(__name__)

STATE_COLORS = {
    CircuitState.CLOSED: "green",
    CircuitState.HALF_OPEN: "yellow",
    CircuitState.OPEN: "red",
}

HEALTH_LABELS = {
    HealthStatus.OK: "[success]OK[/success]",
    HealthStatus.WARN: "[warning]WARN[/warning]",
    HealthStatus.ERROR: "[error]FAIL[/error]",
}


def circuit_breaker_for(config: LoopConfig) -> CircuitBreaker:
    return CircuitBreaker(
        CircuitBreakerConfig(
            no_progress_threshold=config.no_progress_threshold,
            same_error_threshold=config.same_error_threshold,
            permission_denial_threshold=config.permission_denial_threshold,
            output_decline_threshold=config.output_decline_threshold,
        ),
        config.circuit_state_file,
        config.circuit_history_file,
    )


def write_status(
    config: LoopConfig,
    loop_count: int,
    state: str,
    last_action: str,
    calls_made: int,
    circuit_state: CircuitState,
    exit_reason: str | None = None,
) -> dict[str, Any]:
    """Persist the loop's status record."""
    record = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "loop_count": loop_count,
        "state": state,
        "last_action": last_action,
        "calls_made_this_hour": calls_made,
        "max_calls_per_hour": config.max_calls_per_hour,
        "circuit_state": circuit_state.value,
        "exit_reason": exit_reason,
    }
    atomic_write_json(config.status_file, record)
    return record


def collect_status(config: LoopConfig) -> dict[str, Any]:
    """Aggregate every component's persisted state into one report."""
    loop = read_json(config.status_file) or {}
    sessions = SessionManager(config.session_file, config.session_history_file, config.session_expiry_hours)
    diagnosis = sessions.diagnose()
    tasks = load_tasks(config.fix_plan_file)
    breaker = circuit_breaker_for(config)

    return {
        "project": config.project_dir.name,
        "project_dir": str(config.project_dir),
        "loop": {
            "loop_count": loop.get("loop_count", 0),
            "state": loop.get("state", "NOT_STARTED"),
            "last_action": loop.get("last_action"),
            "exit_reason": loop.get("exit_reason"),
            "updated": loop.get("timestamp"),
        },
        "session": diagnosis.to_dict(),
        "tasks": {
            "total": tasks.total if tasks else 0,
            "completed": tasks.completed if tasks else 0,
            "pending": tasks.pending if tasks else 0,
        },
        "rate_limit": RateLimiter(config.max_calls_per_hour, config.call_count_file).status(),
        "circuit_breaker": breaker.status(),
        "durations": DurationTracker(config.duration_history_file).summary(),
    }


def render_status(report: dict[str, Any], console: Console | None = None) -> None:
    console = console or get_console()
    loop = report["loop"]
    rate = report["rate_limit"]
    cb = report["circuit_breaker"]
    tasks = report["tasks"]
    session = report["session"]
    durations = report["durations"]

    table = Table(show_header=False, box=None, pad_edge=False)
    table.add_column(style="bold")
    table.add_column()
    table.add_row("Loop", f"{loop['loop_count']} ({loop['state']})")
    if loop.get("exit_reason"):
        table.add_row("Exit reason", loop["exit_reason"])
    table.add_row("Session", session["session_id"] or "none")
    table.add_row("", f"[muted]{session['message']}[/muted]")
    table.add_row("Tasks", f"{tasks['completed']}/{tasks['total']} complete")
    table.add_row(
        "Rate limit",
        f"{rate['current']}/{rate['max']} calls ({rate['percentage']}%), "
        f"resets in {format_duration(rate['seconds_until_reset'])}",
    )
    color = STATE_COLORS.get(CircuitState(cb["state"]), "white")
    table.add_row("Circuit", f"[{color}]{cb['state']}[/{color}] (opened {cb['total_opens']} times)")
    if durations["samples"]:
        table.add_row("Loop time", f"last {durations['last']}, average {durations['average']}")

    console.print(Panel(table, title=f"Korero: {report['project']}", expand=False))


def render_circuit_status(breaker: CircuitBreaker, console: Console | None = None) -> None:
    """Display circuit breaker status with color coding."""
    console = console or get_console()
    data = breaker.data
    cfg = breaker.config
    color = STATE_COLORS.get(data.state, "white")

    console.print("\n[bold]Circuit Breaker:[/bold]")
    console.print(f"  State: [{color}]{data.state.value}[/{color}]")
    if data.reason:
        console.print(f"  Reason: {data.reason}")
    console.print(f"  Loops without progress: {data.consecutive_no_progress}/{cfg.no_progress_threshold}")
    console.print(f"  Loops with same error: {data.consecutive_same_error}/{cfg.same_error_threshold}")
    console.print(
        f"  Permission denials: {data.consecutive_permission_denials}/{cfg.permission_denial_threshold}"
    )
    console.print(f"  Output declines: {data.consecutive_output_decline}")
    console.print(f"  Last progress: loop {data.last_progress_loop}")
    console.print(f"  Total opens: {data.total_opens}")
    if data.state is CircuitState.OPEN:
        render_recovery(breaker, console)


def render_recovery(breaker: CircuitBreaker, console: Console | None = None) -> None:
    console = console or get_console()
    lines = "\n".join(f"{i}. {step}" for i, step in enumerate(breaker.recovery_suggestions(), 1))
    console.print(
        Panel(
            f"{escape(breaker.data.reason)}\n\n[bold]Recovery:[/bold]\n{lines}",
            title="[error]Execution halted[/error]",
            border_style="red",
            expand=False,
        )
    )


def render_health_report(report: HealthReport, console: Console | None = None) -> None:
    console = console or get_console()
    console.print("\n[bold]Pre-loop health check[/bold]")
    for result in report.results:
        console.print(f"  [{HEALTH_LABELS[result.status]}] {result.name:<18} {escape(result.message)}")
        if result.remediation and result.status is not HealthStatus.OK:
            console.print(f"         [muted]{result.remediation}[/muted]")
    style = "error" if report.has_errors else "warning" if report.has_warnings else "success"
    console.print(f"\nHealth check: [{style}]{report.outcome}[/{style}]")


class StatusDisplay:
    """Progress output for a running loop."""

    def __init__(self, console: Console | None = None, verbose: bool = False):
        self.console = console or get_console()
        self.verbose = verbose

    def show_loop_start(self, max_loops: int | None) -> None:
        limit = f"max {max_loops} loops" if max_loops else "continuous"
        self.console.print(f"\n[bold]Starting Korero loop ({limit})[/bold]")

    def show_iteration(self, loop_number: int, calls_remaining: int) -> None:
        self.console.print(f"\n[bold]Loop {loop_number}[/bold] [muted]({calls_remaining} calls left this hour)[/muted]")

    def show_record(self, record: LoopRecord, state: CircuitState, elapsed: float) -> None:
        color = STATE_COLORS.get(state, "white")
        self.console.print(
            f"  files changed: {record.files_changed} | errors: {'yes' if record.has_errors else 'no'}"
            f" | exit signal: {'yes' if record.exit_signal else 'no'}"
            f" | circuit: [{color}]{state.value}[/{color}] | {format_duration(elapsed)}"
        )
        if self.verbose:
            self.console.print(
                f"  [muted]status={record.status} work={record.work_type.value} "
                f"indicators={record.completion_indicators} parsed_by={record.parsed_by}[/muted]"
            )
            if record.recommendation:
                self.console.print(f"  [muted]{escape(record.recommendation)}[/muted]")

    def show_warning(self, message: str) -> None:
        self.console.print(f"[warning]{message}[/warning]")

    def show_countdown(self, seconds: float) -> None:
        self.console.print(f"[info]Rate limit reached; waiting {format_duration(seconds)} for reset[/info]")

    def show_completion(self, success: bool, message: str) -> None:
        """Show completion or failure message."""
        if success:
            self.console.print(f"[success]✓ {message}[/success]")
        else:
            self.console.print(f"[error]✗ {message}[/error]")
