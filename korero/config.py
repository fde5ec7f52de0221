"""Configuration for the Korero loop.

Settings come from three layers, lowest precedence first: built-in
defaults, the project's ``.korerorc`` file (flat ``KEY=value``), and
environment variables of the same name.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import dotenv_values

from korero.utils.exceptions import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = ".korerorc"
KORERO_DIR_NAME = ".korero"

TOOL_PRESETS: dict[str, str] = {
    "@conservative": "Write,Read,Edit",
    "@standard": "Write,Read,Edit,Bash(git *),Bash(npm *),Bash(pytest)",
    "@permissive": "Write,Read,Edit,Bash(*)",
}


@dataclass(frozen=True)
class ConfigOption:
    """A documented configuration key."""

    key: str
    attr: str
    default: str
    description: str
    kind: type = str
    aliases: tuple[str, ...] = ()


CONFIG_OPTIONS: tuple[ConfigOption, ...] = (
    ConfigOption("MAX_LOOPS", "max_loops", "continuous", "Max loops: number or continuous"),
    ConfigOption("MAX_CALLS_PER_HOUR", "max_calls_per_hour", "100", "API call rate limit per hour", int),
    ConfigOption("CLAUDE_TIMEOUT_MINUTES", "timeout_minutes", "15", "Agent execution timeout (min)", int),
    ConfigOption("CB_NO_PROGRESS_THRESHOLD", "no_progress_threshold", "3", "No-progress loops before halt", int),
    ConfigOption("CB_SAME_ERROR_THRESHOLD", "same_error_threshold", "5", "Same-error loops before halt", int),
    ConfigOption("CB_OUTPUT_DECLINE_THRESHOLD", "output_decline_threshold", "70", "Output decline % before warning", int),
    ConfigOption(
        "CB_PERMISSION_DENIAL_THRESHOLD", "permission_denial_threshold", "2", "Permission denials before halt", int
    ),
    ConfigOption("CLAUDE_OUTPUT_FORMAT", "output_format", "json", "Agent CLI output: json or text"),
    ConfigOption(
        "SESSION_CONTINUITY", "session_continuity", "true", "Session continuity: true/false", bool,
        aliases=("CLAUDE_USE_CONTINUE",),
    ),
    ConfigOption(
        "SESSION_EXPIRY_HOURS", "session_expiry_hours", "24", "Session expiry (hours)", int,
        aliases=("CLAUDE_SESSION_EXPIRY_HOURS",),
    ),
    ConfigOption(
        "ALLOWED_TOOLS", "allowed_tools", "", "Permitted tool patterns or @preset",
        aliases=("CLAUDE_ALLOWED_TOOLS",),
    ),
    ConfigOption("CLAUDE_CODE_CMD", "agent_command", "claude", "Agent CLI executable"),
    ConfigOption("COMPLETION_THRESHOLD", "completion_threshold", "2", "Completion indicators needed to exit", int),
    ConfigOption(
        "MAX_CONSECUTIVE_DONE_SIGNALS", "max_consecutive_done_signals", "2", "Consecutive done signals to exit", int
    ),
    ConfigOption("TEST_LOOP_RATIO", "test_loop_ratio", "0.8", "Test-only loop ratio that ends the run", float),
    ConfigOption("TEST_LOOP_WINDOW", "test_loop_window", "5", "Loops considered for the test-only ratio", int),
    ConfigOption("VERBOSE_PROGRESS", "verbose_progress", "false", "Detailed progress updates", bool),
)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _coerce(option: ConfigOption, raw: str, source: str) -> Any:
    raw = raw.strip()
    if option.kind is bool:
        return _parse_bool(raw)
    if option.kind in (int, float):
        try:
            return option.kind(raw)
        except ValueError as e:
            raise ConfigError(
                f"{option.key} must be a number, got {raw!r}",
                config_key=option.key,
                config_file=source,
                cause=e,
            ) from e
    return raw


@dataclass
class LoopConfig:
    """Configuration for the autonomous loop."""

    project_dir: Path = field(default_factory=Path.cwd)

    # Rate limiting
    max_calls_per_hour: int = 100

    # Agent invocation
    agent_command: str = "claude"
    timeout_minutes: int = 15
    output_format: str = "json"
    allowed_tools: str = ""
    max_loops: str = "continuous"

    # Circuit breaker thresholds
    no_progress_threshold: int = 3
    same_error_threshold: int = 5
    output_decline_threshold: int = 70
    permission_denial_threshold: int = 2

    # Exit detection
    completion_threshold: int = 2
    max_consecutive_done_signals: int = 2
    test_loop_ratio: float = 0.8
    test_loop_window: int = 5

    # Session
    session_continuity: bool = True
    session_expiry_hours: int = 24

    verbose_progress: bool = False

    # Where each value came from: "default", ".korerorc" or "env"
    sources: dict[str, str] = field(default_factory=dict)

    @property
    def korero_dir(self) -> Path:
        return self.project_dir / KORERO_DIR_NAME

    @property
    def config_file(self) -> Path:
        return self.project_dir / CONFIG_FILE_NAME

    @property
    def log_dir(self) -> Path:
        return self.korero_dir / "logs"

    @property
    def prompt_file(self) -> Path:
        return self.korero_dir / "PROMPT.md"

    @property
    def fix_plan_file(self) -> Path:
        return self.korero_dir / "fix_plan.md"

    @property
    def agent_file(self) -> Path:
        return self.korero_dir / "AGENT.md"

    @property
    def status_file(self) -> Path:
        return self.korero_dir / "status.json"

    @property
    def call_count_file(self) -> Path:
        return self.korero_dir / ".call_count"

    @property
    def circuit_state_file(self) -> Path:
        return self.korero_dir / ".circuit_breaker_state"

    @property
    def circuit_history_file(self) -> Path:
        return self.korero_dir / ".circuit_breaker_history"

    @property
    def session_file(self) -> Path:
        return self.korero_dir / ".claude_session_id"

    @property
    def session_history_file(self) -> Path:
        return self.korero_dir / ".session_history"

    @property
    def response_analysis_file(self) -> Path:
        return self.korero_dir / ".response_analysis"

    @property
    def duration_history_file(self) -> Path:
        return self.korero_dir / ".duration_history"

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60.0

    @property
    def max_loop_count(self) -> int | None:
        """Numeric loop limit, or None for continuous mode."""
        if self.max_loops.strip().lower() in ("", "continuous"):
            return None
        try:
            return max(1, int(self.max_loops))
        except ValueError:
            logger.warning(f"Invalid MAX_LOOPS value {self.max_loops!r}, running continuously")
            return None

    @property
    def expanded_tools(self) -> list[str]:
        return expand_allowed_tools(self.allowed_tools)

    def validate(self) -> list[str]:
        """Return a list of human-readable problems with the configuration."""
        errors = []
        if self.max_calls_per_hour <= 0:
            errors.append("MAX_CALLS_PER_HOUR must be positive")
        if self.timeout_minutes <= 0:
            errors.append("CLAUDE_TIMEOUT_MINUTES must be positive")
        if self.output_format not in ("json", "text"):
            errors.append(f"CLAUDE_OUTPUT_FORMAT must be 'json' or 'text', got {self.output_format!r}")
        for attr in ("no_progress_threshold", "same_error_threshold", "permission_denial_threshold"):
            if getattr(self, attr) < 1:
                errors.append(f"{attr} must be at least 1")
        if not 0.0 < self.test_loop_ratio <= 1.0:
            errors.append("TEST_LOOP_RATIO must be in (0, 1]")
        return errors


def expand_allowed_tools(value: str) -> list[str]:
    """Expand an ALLOWED_TOOLS value, resolving ``@preset`` references.

    Accepts a pure preset (``@standard``), a preset mixed with custom
    entries (``@standard,Bash(docker *)``) or a plain list. Duplicates are
    removed, keeping the first occurrence.
    """
    tools: list[str] = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        if part.startswith("@"):
            preset = TOOL_PRESETS.get(part)
            if preset is None:
                logger.warning(f"Unknown tool preset '{part}' ignored")
                continue
            candidates = preset.split(",")
        else:
            candidates = [part]
        for tool in candidates:
            if tool not in tools:
                tools.append(tool)
    return tools


def read_config_file(path: Path) -> dict[str, str]:
    """Read a flat KEY=value file. A missing file yields an empty mapping."""
    if not path.is_file():
        return {}
    values = dotenv_values(path)
    return {k: v for k, v in values.items() if v is not None}


def load_config(
    project_dir: Path | None = None,
    environ: dict[str, str] | None = None,
) -> LoopConfig:
    """Build a LoopConfig from defaults, ``.korerorc`` and the environment.

    Raises:
        ConfigError: if a numeric option holds a non-numeric value.
    """
    project_dir = (project_dir or Path.cwd()).resolve()
    environ = os.environ if environ is None else environ
    config_path = project_dir / CONFIG_FILE_NAME
    file_values = read_config_file(config_path)

    kwargs: dict[str, Any] = {}
    sources: dict[str, str] = {}
    for option in CONFIG_OPTIONS:
        names = (option.key, *option.aliases)
        raw, source = option.default, "default"
        for name in names:
            if name in file_values:
                raw, source = file_values[name], CONFIG_FILE_NAME
                break
        for name in names:
            if name in environ:
                raw, source = environ[name], "env"
                break
        kwargs[option.attr] = _coerce(option, raw, str(config_path) if source == CONFIG_FILE_NAME else source)
        sources[option.key] = source

    config = LoopConfig(project_dir=project_dir, sources=sources, **kwargs)
    logger.debug(f"Loaded configuration from {config_path if file_values else 'defaults'}")
    return config


def describe_config(config: LoopConfig) -> list[dict[str, str]]:
    """List every option with its current value, default and source."""
    rows = []
    for option in sorted(CONFIG_OPTIONS, key=lambda o: o.key):
        value = getattr(config, option.attr)
        if isinstance(value, bool):
            value = "true" if value else "false"
        rows.append({
            "key": option.key,
            "value": str(value),
            "default": option.default,
            "source": config.sources.get(option.key, "default"),
            "description": option.description,
        })
    return rows
