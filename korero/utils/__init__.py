"""Shared utilities for Korero."""
