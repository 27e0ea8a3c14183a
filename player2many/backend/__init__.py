"""
Media backend contract and the Kurento implementation.
"""

from __future__ import annotations

from .base import (
    BackendError,
    BackendEvent,
    BackendEventKind,
    BackendTimeout,
    ICECandidate,
    MediaBackend,
)
from .kurento import KurentoBackend

__all__ = [
    "BackendError",
    "BackendEvent",
    "BackendEventKind",
    "BackendTimeout",
    "ICECandidate",
    "KurentoBackend",
    "MediaBackend",
]
