from .base import KoreroError
from .config import ConfigError
from .resource import RateLimitError
from .resilience import CircuitOpenError, InvocationTimeoutError
from .session import SessionError

__all__ = [
    "KoreroError",
    "ConfigError",
    "RateLimitError",
    "CircuitOpenError",
    "InvocationTimeoutError",
    "SessionError",
]
