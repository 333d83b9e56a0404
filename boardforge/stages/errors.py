"""Errors raised by stage handlers."""

from __future__ import annotations


class MissingOutputError(RuntimeError):
    """A tool exited cleanly but a declared output is not on disk."""
