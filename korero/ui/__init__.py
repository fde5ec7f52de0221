"""Console output for Korero."""

from korero.ui.console import get_console

__all__ = ["get_console"]
