"""Utility helpers for the signaling relay."""

from .debug import write_dot
from .logging import configure_logging

__all__ = ["configure_logging", "write_dot"]
