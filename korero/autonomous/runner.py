"""Agent subprocess invocation.

Exactly one invocation is in flight at a time. The prompt goes to the
agent's stdin; stdout and stderr are captured. The call is bounded by the
configured timeout: a process that exceeds it is killed and
:class:`InvocationTimeoutError` is raised. Cancelling the awaiting task
(user interrupt) also kills the process before the cancellation propagates.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import time
from dataclasses import dataclass
from pathlib import Path

from korero.config import LoopConfig
from korero.utils.exceptions import InvocationTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvocationResult:
    """Captured output of one agent run."""

    stdout: bytes
    stderr: bytes
    returncode: int
    elapsed: float

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


class AgentRunner:
    """Runs the agent CLI for a single iteration."""

    def __init__(self, config: LoopConfig):
        self.config = config
        self._process: asyncio.subprocess.Process | None = None

    def build_command(self, session_id: str | None = None) -> list[str]:
        """Argument list for the agent CLI.

        Args:
            session_id: Session to resume, if continuity is enabled.
        """
        cmd = [*shlex.split(self.config.agent_command), "--print"]
        cmd += ["--output-format", self.config.output_format]
        tools = self.config.expanded_tools
        if tools:
            cmd += ["--allowedTools", *tools]
        if session_id and self.config.session_continuity:
            cmd += ["--resume", session_id]
        return cmd

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def kill(self) -> None:
        """Kill the in-flight agent process, if any."""
        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        logger.warning(f"Killed agent process {proc.pid}")

    async def invoke(
        self,
        prompt: str,
        session_id: str | None = None,
        cwd: Path | None = None,
    ) -> InvocationResult:
        """Run the agent with ``prompt`` on stdin.

        Raises:
            InvocationTimeoutError: if the agent exceeded the timeout. The
                process has been killed by the time this is raised.
            FileNotFoundError: if the agent executable does not exist.
        """
        cmd = self.build_command(session_id)
        timeout = self.config.timeout_seconds
        logger.info(f"Executing agent: {' '.join(cmd[:6])}{' ...' if len(cmd) > 6 else ''}")

        start = time.monotonic()
        self._process = proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd or self.config.project_dir,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(input=prompt.encode("utf-8")),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            self.kill()
            await proc.wait()
            raise InvocationTimeoutError(
                f"Agent timed out after {self.config.timeout_minutes} minutes",
                command=cmd[0],
                timeout=timeout,
            ) from None
        except asyncio.CancelledError:
            self.kill()
            await asyncio.shield(proc.wait())
            raise
        finally:
            self._process = None

        elapsed = time.monotonic() - start
        returncode = proc.returncode if proc.returncode is not None else -1
        logger.info(f"Agent exited with code {returncode} after {elapsed:.1f}s")
        return InvocationResult(stdout=stdout, stderr=stderr, returncode=returncode, elapsed=elapsed)
