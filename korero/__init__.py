"""Korero - autonomous loop controller for a code-generation agent."""

__version__ = "1.0.0"
