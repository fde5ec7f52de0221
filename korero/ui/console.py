"""Shared rich console with Korero's markup styles."""

from __future__ import annotations

from rich.console import Console
from rich.theme import Theme

KORERO_THEME = Theme(
    {
        "success": "bold green",
        "error": "bold red",
        "warning": "yellow",
        "info": "cyan",
        "muted": "dim",
    }
)

_console: Console | None = None


def get_console() -> Console:
    """Process-wide console; created on first use."""
    global _console
    if _console is None:
        _console = Console(theme=KORERO_THEME)
    return _console
