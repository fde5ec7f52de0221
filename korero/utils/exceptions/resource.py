from typing import Any
from .base import KoreroError


class RateLimitError(KoreroError):
    """Hourly call budget exhausted."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        limit: int | None = None,
        reset_after: float | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if limit is not None:
            details["limit"] = limit
        if reset_after is not None:
            details["reset_after_seconds"] = round(reset_after, 1)
        super().__init__(
            message=message, code="RATE_LIMIT_EXCEEDED", details=details, retryable=True, **kwargs
        )
        self.limit = limit
        self.reset_after = reset_after
