"""
Process-wide mapping from viewer connection identity to session.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterator, List, Optional

from ..backend.base import EndpointHandle, MediaBackend
from ..errors import DuplicateSession
from .session import ViewerSession

LOG = logging.getLogger(__name__)


class SessionRegistry:
    """
    Own every live :class:`ViewerSession`.

    All map mutations happen under one lock.  Removal closes the session
    (releasing its endpoint) before the lock is dropped, so an identity that
    reconnects never observes its previous session.
    """

    def __init__(self, backend: MediaBackend, *, session_timeout: Optional[float] = None) -> None:
        self._backend = backend
        self._session_timeout = session_timeout
        self._sessions: Dict[str, ViewerSession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._sessions

    def __iter__(self) -> Iterator[ViewerSession]:
        return iter(list(self._sessions.values()))

    def _build(self, connection_id: str) -> ViewerSession:
        return ViewerSession(connection_id, self._backend, timeout=self._session_timeout)

    async def create(self, connection_id: str) -> ViewerSession:
        """
        Register a fresh session, raising :class:`DuplicateSession` if one exists.
        """

        async with self._lock:
            if connection_id in self._sessions:
                raise DuplicateSession(f"session {connection_id} already exists")
            session = self._build(connection_id)
            self._sessions[connection_id] = session
        LOG.info("Session created: %s", connection_id)
        return session

    async def get_or_create(self, connection_id: str) -> ViewerSession:
        async with self._lock:
            session = self._sessions.get(connection_id)
            if session is not None:
                return session
            session = self._build(connection_id)
            self._sessions[connection_id] = session
        LOG.info("Session created: %s", connection_id)
        return session

    def get(self, connection_id: str) -> Optional[ViewerSession]:
        return self._sessions.get(connection_id)

    def find_by_endpoint(self, endpoint: EndpointHandle) -> Optional[ViewerSession]:
        for session in self._sessions.values():
            if session.remote_endpoint == endpoint:
                return session
        return None

    async def remove(self, connection_id: str, *, session: Optional[ViewerSession] = None) -> bool:
        """
        Close and forget the session registered under ``connection_id``.

        When ``session`` is given the entry is only removed if it still maps
        to that exact instance, so a stale failure path cannot tear down a
        newer session.
        """

        async with self._lock:
            current = self._sessions.get(connection_id)
            if current is None or (session is not None and current is not session):
                return False
            try:
                await current.close()
            finally:
                del self._sessions[connection_id]
        LOG.info("Session removed: %s", connection_id)
        return True

    async def clear(self) -> None:
        async with self._lock:
            sessions: List[ViewerSession] = list(self._sessions.values())
            self._sessions.clear()
            for session in sessions:
                try:
                    await session.close()
                except Exception:  # pragma: no cover - shutdown is best-effort
                    LOG.exception("Failed to close session %s during shutdown", session.id)


__all__ = ["SessionRegistry"]
