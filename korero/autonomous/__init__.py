"""Autonomous loop components.

Each component owns one piece of persisted state under ``.korero/`` and is
usable on its own; :class:`~korero.autonomous.loop.LoopController` wires
them together.
"""

from korero.autonomous.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState, HaltCause
from korero.autonomous.exit_gate import ExitDecision, ExitGate, ExitGateConfig, GateAction
from korero.autonomous.loop import LoopController, LoopResult, RunState
from korero.autonomous.rate_limiter import RateLimiter
from korero.autonomous.response_analyzer import LoopRecord, ResponseAnalyzer
from korero.autonomous.session_manager import SessionManager, SessionReason

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "HaltCause",
    "ExitDecision",
    "ExitGate",
    "ExitGateConfig",
    "GateAction",
    "LoopController",
    "LoopResult",
    "RunState",
    "RateLimiter",
    "LoopRecord",
    "ResponseAnalyzer",
    "SessionManager",
    "SessionReason",
]
