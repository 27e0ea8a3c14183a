"""
player2many signaling relay package.

The relay negotiates WebRTC peer connections between browser viewers and a
Kurento media server, fanning a single playback source out to every viewer.
Media never touches this process: it only coordinates offer/answer exchange
and ICE candidate transport while keeping per-viewer negotiation state
consistent.
"""

from __future__ import annotations

from .config import ServerConfig, load_config

__all__ = [
    "ServerConfig",
    "load_config",
]
