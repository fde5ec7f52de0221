"""Command line interface for Korero.

Exit codes for ``korero run``: 0 completed, 1 configuration error,
2 halted by the circuit breaker, 3 stopped by the rate limit,
4 failed health check, 130 user interrupt.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click
import orjson
from dotenv import load_dotenv
from rich.markup import escape
from rich.table import Table

from korero import __version__
from korero.autonomous.health_check import build_default_checks
from korero.autonomous.loop import EXIT_CODES, LoopController, RunState
from korero.autonomous.rate_limiter import RateLimiter
from korero.autonomous.session_manager import ResetReason, SessionManager
from korero.autonomous.status import (
    circuit_breaker_for,
    collect_status,
    render_circuit_status,
    render_health_report,
    render_status,
)
from korero.config import CONFIG_OPTIONS, LoopConfig, describe_config, load_config
from korero.logging_setup import setup_logging
from korero.ui import get_console
from korero.utils.exceptions import ConfigError

logger = logging.getLogger(__name__)

console = get_console()


def _load(ctx: click.Context) -> LoopConfig:
    try:
        return load_config(ctx.obj["cwd"])
    except ConfigError as e:
        console.print(f"[error]Configuration Error: {escape(str(e))}[/error]")
        raise click.exceptions.Exit(1) from e


def _setup_logging(config: LoopConfig, verbose: bool = False) -> None:
    log_file = config.log_dir / "korero.log" if config.korero_dir.is_dir() else None
    setup_logging(
        "DEBUG" if verbose else "INFO",
        log_file=log_file,
        console_level="INFO" if verbose else "WARNING",
    )


def _dump_json(data: object) -> str:
    return orjson.dumps(data, option=orjson.OPT_INDENT_2).decode()


@click.group()
@click.option(
    "--cwd",
    "-c",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Project directory (defaults to the current directory)",
)
@click.version_option(__version__, prog_name="korero")
@click.pass_context
def cli(ctx: click.Context, cwd: Path | None):
    """Korero - run a coding agent in a loop until the work is done.

    Examples:
        korero run                  # Loop until complete or halted
        korero run --max-loops 5    # Stop after five iterations
        korero run --dry-run        # Preview without calling the agent
        korero status --json        # Machine-readable status
    """
    load_dotenv()
    ctx.ensure_object(dict)
    ctx.obj["cwd"] = cwd


@cli.command()
@click.option("--max-loops", type=click.IntRange(min=1), help="Stop after this many iterations")
@click.option("--dry-run", is_flag=True, help="Show what would run; call nothing")
@click.option(
    "--wait/--no-wait",
    default=True,
    help="Wait for the hourly rate limit to reset instead of exiting",
)
@click.option("--verbose", "-v", is_flag=True, help="Detailed progress output")
@click.pass_context
def run(ctx: click.Context, max_loops: int | None, dry_run: bool, wait: bool, verbose: bool):
    """Start or resume the autonomous loop."""
    config = _load(ctx)
    if verbose:
        config.verbose_progress = True
    _setup_logging(config, verbose)

    problems = config.validate()
    if problems:
        for problem in problems:
            console.print(f"[error]{problem}[/error]")
        ctx.exit(1)

    controller = LoopController(config, wait_for_reset=wait)

    if dry_run:
        report, summary = asyncio.run(controller.dry_run())
        table = Table(title="Korero dry run", show_header=False)
        table.add_column(style="bold")
        table.add_column()
        for key, value in summary.items():
            table.add_row(key.replace("_", " ").capitalize(), str(value))
        console.print(table)
        render_health_report(report)
        ctx.exit(1 if report.has_errors else 0)

    try:
        result = asyncio.run(controller.run(max_loops))
    except KeyboardInterrupt:
        controller.runner.kill()
        controller.sessions.reset(ResetReason.MANUAL_INTERRUPT)
        console.print("\n[warning]Interrupted[/warning]")
        ctx.exit(EXIT_CODES[RunState.EXITED_USER])
    else:
        ctx.exit(result.exit_code)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
def status(ctx: click.Context, as_json: bool):
    """Show loop, session, rate limit and circuit breaker status."""
    config = _load(ctx)
    report = collect_status(config)
    if as_json:
        click.echo(_dump_json(report))
    else:
        render_status(report)


@cli.command("reset-circuit")
@click.pass_context
def reset_circuit(ctx: click.Context):
    """Reset the circuit breaker to CLOSED."""
    config = _load(ctx)
    _setup_logging(config)
    breaker = circuit_breaker_for(config)
    breaker.reset("Manual reset via CLI")
    console.print("[success]Circuit breaker reset to CLOSED[/success]")


@cli.command("circuit-status")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
def circuit_status(ctx: click.Context, as_json: bool):
    """Show circuit breaker state and counters."""
    config = _load(ctx)
    breaker = circuit_breaker_for(config)
    if as_json:
        click.echo(_dump_json({**breaker.status(), "history": breaker.get_history()}))
    else:
        render_circuit_status(breaker)


@cli.command("reset-session")
@click.pass_context
def reset_session(ctx: click.Context):
    """Discard the agent session so the next loop starts fresh."""
    config = _load(ctx)
    _setup_logging(config)
    SessionManager(config.session_file, config.session_history_file, config.session_expiry_hours).reset(
        ResetReason.MANUAL_RESET
    )
    console.print("[success]Session reset[/success]")


@cli.command()
@click.option("--help-keys", is_flag=True, help="Describe every configuration key")
@click.pass_context
def config(ctx: click.Context, help_keys: bool):
    """Show the effective configuration and where each value came from."""
    if help_keys:
        table = Table(title=".korerorc keys")
        table.add_column("Key", style="bold")
        table.add_column("Default")
        table.add_column("Description")
        for option in sorted(CONFIG_OPTIONS, key=lambda o: o.key):
            aliases = f" (alias {', '.join(option.aliases)})" if option.aliases else ""
            table.add_row(option.key, option.default or '""', option.description + aliases)
        console.print(table)
        return

    loaded = _load(ctx)
    table = Table(title=f"Configuration for {loaded.project_dir}")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_column("Source")
    for row in describe_config(loaded):
        style = "muted" if row["source"] == "default" else "info"
        table.add_row(row["key"], row["value"], f"[{style}]{row['source']}[/{style}]")
    console.print(table)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
@click.pass_context
def health(ctx: click.Context, as_json: bool):
    """Run the pre-loop health checks."""
    config = _load(ctx)
    limiter = RateLimiter(config.max_calls_per_hour, config.call_count_file)
    report = asyncio.run(build_default_checks(config, limiter).run_all())
    if as_json:
        click.echo(_dump_json(report.to_dict()))
    else:
        render_health_report(report)
    ctx.exit(1 if report.has_errors else 0)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
