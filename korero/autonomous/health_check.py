"""Pre-flight health checks for the autonomous loop.

Run before every iteration. Any ERROR result aborts the iteration before
the agent is invoked; WARN results are reported but do not block.

Example:
    system = build_default_checks(config, rate_limiter)
    report = await system.run_all()
    if report.has_errors:
        ...
"""

from __future__ import annotations

import asyncio
import logging
import re
import shlex
import shutil
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from korero.autonomous.rate_limiter import RateLimiter
from korero.autonomous.session_manager import SessionManager, SessionReason
from korero.config import TOOL_PRESETS, LoopConfig

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("git",)
BASIC_FILE_TOOLS = ("Write", "Read", "Edit")

TRUSTED_MARKER = "# korero: trusted"
SAFE_CONFIG_VALUES = frozenset({"true", "false", "coding", "idea", "continuous"})
SECRET_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("OpenAI API Key", re.compile(r"sk-[A-Za-z0-9]{20,}")),
    ("GitHub Token", re.compile(r"gh[pousr]_[A-Za-z0-9]{36,}")),
    ("AWS Access Key", re.compile(r"AKIA[0-9A-Z]{16}")),
    ("Bearer Token", re.compile(r"Bearer [A-Za-z0-9._-]{20,}")),
)
_LONG_ENCODED = re.compile(r"^[A-Za-z0-9+/=_-]{40,}$")


class HealthStatus(str, Enum):
    """Health check status."""

    OK = "OK"
    WARN = "WARN"
    ERROR = "ERROR"


@dataclass
class HealthCheckResult:
    """Result of a health check."""

    name: str
    status: HealthStatus
    message: str = ""
    remediation: str = ""
    latency_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "remediation": self.remediation,
            "latency_ms": round(self.latency_ms, 2),
        }


@dataclass
class HealthReport:
    """Results of one full pre-flight run."""

    results: list[HealthCheckResult] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(r.status is HealthStatus.ERROR for r in self.results)

    @property
    def has_warnings(self) -> bool:
        return any(r.status is HealthStatus.WARN for r in self.results)

    @property
    def errors(self) -> list[HealthCheckResult]:
        return [r for r in self.results if r.status is HealthStatus.ERROR]

    @property
    def outcome(self) -> str:
        if self.has_errors:
            return "FAILED"
        if self.has_warnings:
            return "PASSED with warnings"
        return "ALL CLEAR"

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "checks": [r.to_dict() for r in self.results],
        }


HealthCheckFn = Callable[[], Awaitable[HealthCheckResult]]


class HealthCheckSystem:
    """Ordered registry of named health checks.

    Example:
        health = HealthCheckSystem()

        @health.check("Dependencies")
        async def check_dependencies():
            return HealthCheckResult("Dependencies", HealthStatus.OK)

        report = await health.run_all()
    """

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._checks: dict[str, HealthCheckFn] = {}

    def check(self, name: str) -> Callable[[HealthCheckFn], HealthCheckFn]:
        """Decorator to register a health check.

        Args:
            name: Name of the health check

        Returns:
            Decorator function
        """
        def decorator(fn: HealthCheckFn) -> HealthCheckFn:
            self._checks[name] = fn
            return fn
        return decorator

    @property
    def names(self) -> list[str]:
        return list(self._checks)

    async def run_check(self, name: str) -> HealthCheckResult:
        """Run a single health check.

        A check that raises or times out is reported as ERROR.
        """
        if name not in self._checks:
            return HealthCheckResult(
                name=name,
                status=HealthStatus.ERROR,
                message=f"Health check '{name}' not registered",
            )

        start_time = time.time()
        try:
            result = await asyncio.wait_for(self._checks[name](), timeout=self.timeout)
        except asyncio.TimeoutError:
            result = HealthCheckResult(
                name=name,
                status=HealthStatus.ERROR,
                message=f"Health check timed out after {self.timeout}s",
            )
        except Exception as e:
            logger.exception(f"Health check '{name}' raised")
            result = HealthCheckResult(
                name=name,
                status=HealthStatus.ERROR,
                message=f"Health check failed: {type(e).__name__}: {e}",
            )
        result.latency_ms = (time.time() - start_time) * 1000
        return result

    async def run_all(self) -> HealthReport:
        """Run every registered check, in registration order."""
        report = HealthReport()
        for name in self._checks:
            result = await self.run_check(name)
            if result.status is HealthStatus.ERROR:
                logger.error(f"Health check {name}: {result.message}")
            elif result.status is HealthStatus.WARN:
                logger.warning(f"Health check {name}: {result.message}")
            report.results.append(result)
        return report


def check_config_syntax(text: str) -> list[str]:
    """Report unmatched quotes in ``KEY=value`` lines."""
    errors = []
    for line_num, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        value = stripped.split("=", 1)[1]
        if value.count('"') % 2:
            errors.append(f"Line {line_num}: unmatched double quote")
        if value.count("'") % 2:
            errors.append(f"Line {line_num}: unmatched single quote")
    return errors


def scan_config_secrets(text: str) -> list[str]:
    """Flag ``.korerorc`` values that look like credentials.

    Lines carrying ``# korero: trusted`` are skipped, as are presets,
    mode keywords and values shorter than 16 characters. At most one
    finding is reported per line.
    """
    findings = []
    for line_num, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or TRUSTED_MARKER in line or "=" not in line:
            continue
        value = line.split("=", 1)[1]
        value = value.removeprefix('"').removesuffix('"').removeprefix("'").removesuffix("'")
        if value.startswith("@") or value in SAFE_CONFIG_VALUES or len(value) < 16:
            continue

        for label, pattern in SECRET_PATTERNS:
            if pattern.search(value):
                findings.append(f"Line {line_num}: Possible {label} detected")
                break
        else:
            if not any(c in value for c in ", /") and _LONG_ENCODED.match(value):
                findings.append(f"Line {line_num}: Possible secret/token (long encoded string)")
    return findings


def check_tool_allowlist(value: str) -> HealthCheckResult:
    name = "Tool Permissions"
    value = value.strip()
    if not value:
        return HealthCheckResult(
            name, HealthStatus.WARN,
            "No ALLOWED_TOOLS configured (the agent will prompt for each tool)",
            'Set ALLOWED_TOOLS in .korerorc, e.g. ALLOWED_TOOLS="@standard"',
        )

    entries = [part.strip() for part in value.split(",") if part.strip()]
    unknown = [e for e in entries if e.startswith("@") and e not in TOOL_PRESETS]
    if unknown:
        return HealthCheckResult(
            name, HealthStatus.WARN,
            f"Unknown preset {', '.join(repr(u) for u in unknown)}",
            f"Available presets: {', '.join(TOOL_PRESETS)}",
        )

    expanded = ",".join(
        TOOL_PRESETS[e] if e.startswith("@") else e for e in entries
    )
    if not any(tool in expanded for tool in BASIC_FILE_TOOLS):
        return HealthCheckResult(
            name, HealthStatus.WARN,
            "ALLOWED_TOOLS missing basic file operations (Write, Read, Edit)",
        )

    presets = [e for e in entries if e.startswith("@")]
    if presets:
        return HealthCheckResult(name, HealthStatus.OK, f"Using preset: {', '.join(presets)}")
    return HealthCheckResult(name, HealthStatus.OK, "ALLOWED_TOOLS configured")


def build_default_checks(
    config: LoopConfig,
    rate_limiter: RateLimiter,
    session_manager: SessionManager | None = None,
) -> HealthCheckSystem:
    """Register the standard pre-flight checks for a project."""
    health = HealthCheckSystem()
    sessions = session_manager or SessionManager(
        config.session_file, config.session_history_file, config.session_expiry_hours
    )

    @health.check("Claude CLI")
    async def check_agent_cli() -> HealthCheckResult:
        try:
            executable = shlex.split(config.agent_command)[0]
        except (ValueError, IndexError):
            executable = config.agent_command
        found = shutil.which(executable)
        if found:
            return HealthCheckResult("Claude CLI", HealthStatus.OK, f"{executable} found at {found}")
        return HealthCheckResult(
            "Claude CLI", HealthStatus.ERROR,
            f"Agent CLI '{executable}' not found on PATH",
            "Install the Claude CLI (npm install -g @anthropic-ai/claude-code) or set CLAUDE_CODE_CMD",
        )

    @health.check("Dependencies")
    async def check_dependencies() -> HealthCheckResult:
        missing = [tool for tool in REQUIRED_TOOLS if shutil.which(tool) is None]
        if missing:
            return HealthCheckResult(
                "Dependencies", HealthStatus.ERROR,
                f"Missing dependencies: {' '.join(missing)}",
                "Install git (e.g. apt install git / brew install git)",
            )
        return HealthCheckResult("Dependencies", HealthStatus.OK, "All dependencies present")

    @health.check("Project Structure")
    async def check_project() -> HealthCheckResult:
        if not config.korero_dir.is_dir():
            return HealthCheckResult(
                "Project Structure", HealthStatus.ERROR,
                "No .korero directory found",
                "Create .korero/ with PROMPT.md and fix_plan.md in the project root",
            )
        missing = [p.name for p in (config.prompt_file, config.fix_plan_file) if not p.is_file()]
        if missing:
            return HealthCheckResult(
                "Project Structure", HealthStatus.WARN,
                f"Missing files in .korero/: {' '.join(missing)}",
            )
        return HealthCheckResult("Project Structure", HealthStatus.OK, "Project structure valid")

    @health.check("Session State")
    async def check_session() -> HealthCheckResult:
        diagnosis = sessions.diagnose()
        if diagnosis.reason in (SessionReason.SESSION_VALID, SessionReason.NO_SESSION_FILE):
            return HealthCheckResult("Session State", HealthStatus.OK, diagnosis.message)
        return HealthCheckResult(
            "Session State", HealthStatus.WARN, diagnosis.message,
            "Run 'korero reset-session' to clear it",
        )

    @health.check("Rate Limit")
    async def check_rate_limit() -> HealthCheckResult:
        status = rate_limiter.status()
        current, limit, remaining = status["current"], status["max"], status["remaining"]
        if remaining <= 0:
            minutes = status["seconds_until_reset"] // 60
            return HealthCheckResult(
                "Rate Limit", HealthStatus.ERROR,
                f"Rate limit exhausted ({current}/{limit})",
                f"Wait about {minutes}m for the hourly window to reset or raise MAX_CALLS_PER_HOUR",
            )
        if status["percentage"] >= 90:
            return HealthCheckResult(
                "Rate Limit", HealthStatus.WARN,
                f"Rate limit near capacity ({current}/{limit}, {remaining} remaining)",
            )
        return HealthCheckResult(
            "Rate Limit", HealthStatus.OK,
            f"Rate limit: {current}/{limit} used ({remaining} remaining)",
        )

    @health.check("Config Syntax")
    async def check_config() -> HealthCheckResult:
        if not config.config_file.is_file():
            return HealthCheckResult("Config Syntax", HealthStatus.WARN, "No .korerorc found (using defaults)")
        errors = check_config_syntax(config.config_file.read_text(encoding="utf-8", errors="replace"))
        if errors:
            return HealthCheckResult(
                "Config Syntax", HealthStatus.ERROR,
                f"Config syntax errors: {'; '.join(errors)}",
                "Fix the quoting in .korerorc",
            )
        return HealthCheckResult("Config Syntax", HealthStatus.OK, "Config syntax valid")

    @health.check("Config Secrets")
    async def check_secrets() -> HealthCheckResult:
        if not config.config_file.is_file():
            return HealthCheckResult("Config Secrets", HealthStatus.OK, "No .korerorc to scan")
        findings = scan_config_secrets(config.config_file.read_text(encoding="utf-8", errors="replace"))
        if findings:
            return HealthCheckResult(
                "Config Secrets", HealthStatus.WARN,
                f"Potential secrets in .korerorc: {'; '.join(findings)}",
                "Move secrets to environment variables, or append '# korero: trusted' to a line that is safe",
            )
        return HealthCheckResult("Config Secrets", HealthStatus.OK, "No secrets detected in .korerorc")

    @health.check("Tool Permissions")
    async def check_tools() -> HealthCheckResult:
        return check_tool_allowlist(config.allowed_tools)

    return health
