from typing import Any
from .base import KoreroError


class SessionError(KoreroError):
    """Session management errors."""

    def __init__(self, message: str, session_id: str | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {}) or {}
        if session_id:
            details["session_id"] = session_id

        kwargs.pop("code", None)

        super().__init__(
            message=message, code="SESSION_ERROR", details=details, retryable=False, **kwargs
        )
        self.session_id = session_id
