"""
WebRTC negotiation core: sessions, their registry, the shared publisher
and the per-connection signaling dispatcher.
"""

from __future__ import annotations

from .candidates import CandidateQueue
from .dispatcher import SignalingDispatcher
from .publisher import PublisherCoordinator, PublisherState
from .registry import SessionRegistry
from .session import SessionState, ViewerSession

__all__ = [
    "CandidateQueue",
    "PublisherCoordinator",
    "PublisherState",
    "SessionRegistry",
    "SessionState",
    "SignalingDispatcher",
    "ViewerSession",
]
