from typing import Any
from .base import KoreroError


class CircuitOpenError(KoreroError):
    """Circuit breaker is open; the loop must not invoke the agent."""

    def __init__(
        self,
        message: str = "Circuit breaker is open",
        reason: str | None = None,
        total_opens: int | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if reason:
            details["reason"] = reason
        if total_opens is not None:
            details["total_opens"] = total_opens
        super().__init__(
            message=message, code="CIRCUIT_OPEN", details=details, retryable=False, **kwargs
        )
        self.reason = reason
        self.total_opens = total_opens


class InvocationTimeoutError(KoreroError):
    """Agent subprocess exceeded its time bound and was killed."""

    def __init__(
        self,
        message: str,
        command: str | None = None,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if command:
            details["command"] = command
        if timeout is not None:
            details["timeout_seconds"] = timeout
        super().__init__(message=message, code="TIMEOUT", details=details, retryable=True, **kwargs)
        self.command = command
        self.timeout = timeout
