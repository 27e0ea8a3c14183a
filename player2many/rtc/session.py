"""
Per-viewer negotiation state.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Dict, FrozenSet, List, Optional, Set, TypeVar

from ..backend.base import BackendError, EndpointHandle, ICECandidate, MediaBackend, PipelineHandle
from ..errors import AlreadyNegotiating, CandidateApplyFailed, NegotiationFailed
from .candidates import CandidateQueue

LOG = logging.getLogger(__name__)

T = TypeVar("T")


class SessionState(str, Enum):
    NEW = "NEW"
    ENDPOINT_PENDING = "ENDPOINT_PENDING"
    ENDPOINT_READY = "ENDPOINT_READY"
    NEGOTIATED = "NEGOTIATED"
    CLOSED = "CLOSED"


_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.NEW: frozenset({SessionState.ENDPOINT_PENDING, SessionState.CLOSED}),
    SessionState.ENDPOINT_PENDING: frozenset({SessionState.ENDPOINT_READY, SessionState.CLOSED}),
    SessionState.ENDPOINT_READY: frozenset({SessionState.NEGOTIATED, SessionState.CLOSED}),
    SessionState.NEGOTIATED: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}

ENDPOINT_LIVE_STATES = frozenset({SessionState.ENDPOINT_READY, SessionState.NEGOTIATED})


class ViewerSession:
    """
    Negotiation lifecycle of one viewer connection.

    ``NEW -> ENDPOINT_PENDING -> ENDPOINT_READY -> NEGOTIATED``, with
    ``CLOSED`` reachable from anywhere.  Candidates that arrive before the
    remote endpoint exists are buffered and drained, in arrival order, the
    moment it becomes ready.  Every candidate application (drained or direct)
    goes through one FIFO lock so later candidates cannot overtake queued ones.
    """

    def __init__(
        self,
        session_id: str,
        backend: MediaBackend,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        self.id = session_id
        self.state = SessionState.NEW
        self.remote_endpoint: Optional[EndpointHandle] = None
        self.offer: Optional[str] = None
        self.answer: Optional[str] = None
        self._backend = backend
        self._timeout = timeout
        self._candidates = CandidateQueue()
        self._candidate_lock = asyncio.Lock()
        self._orphans: Set[asyncio.Task] = set()
        self.logger = LOG.getChild(session_id[:8])

    def __repr__(self) -> str:
        return f"ViewerSession(id={self.id!r}, state={self.state.value})"

    @property
    def pending_candidates(self) -> List[ICECandidate]:
        return list(self._candidates)

    @property
    def is_closed(self) -> bool:
        return self.state is SessionState.CLOSED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "state": self.state.value,
            "remoteEndpoint": self.remote_endpoint,
            "pendingCandidates": len(self._candidates),
        }

    # ------------------------------------------------------------------ helpers

    def _transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal session transition {self.state.value} -> {target.value}")
        self.logger.debug("%s -> %s", self.state.value, target.value)
        self.state = target

    async def _round_trip(self, call: Awaitable[T], operation: str) -> T:
        try:
            if self._timeout:
                return await asyncio.wait_for(call, timeout=self._timeout)
            return await call
        except asyncio.TimeoutError:
            raise NegotiationFailed(f"{operation} timed out for session {self.id}") from None
        except BackendError as exc:
            raise NegotiationFailed(f"{operation} failed for session {self.id}: {exc}") from exc

    async def _apply_candidate(self, endpoint: EndpointHandle, candidate: ICECandidate) -> None:
        try:
            if self._timeout:
                await asyncio.wait_for(
                    self._backend.add_candidate(endpoint, candidate), timeout=self._timeout
                )
            else:
                await self._backend.add_candidate(endpoint, candidate)
        except (BackendError, asyncio.TimeoutError) as exc:
            raise CandidateApplyFailed(f"{candidate.candidate!r}: {exc}") from exc

    async def _release(self, endpoint: EndpointHandle) -> None:
        try:
            await self._backend.release(endpoint)
        except BackendError as exc:
            self.logger.warning("Failed to release endpoint %s: %s", endpoint, exc)

    def _release_when_created(self, creation: asyncio.Future) -> None:
        """
        Release the endpoint ``creation`` eventually yields, if it yields one.

        Used when the caller stopped waiting (cancelled or timed out) while the
        backend was still creating the endpoint.
        """

        def _on_done(future: asyncio.Future) -> None:
            if future.cancelled() or future.exception() is not None:
                return
            task = asyncio.ensure_future(self._release(future.result()))
            self._orphans.add(task)
            task.add_done_callback(self._orphans.discard)

        creation.add_done_callback(_on_done)

    # ------------------------------------------------------------------ public API

    async def begin_negotiation(self, offer: str, pipeline: PipelineHandle) -> str:
        """
        Create the remote endpoint inside ``pipeline`` and answer ``offer``.

        Raises :class:`AlreadyNegotiating` unless the session is ``NEW`` and
        :class:`NegotiationFailed` (after closing the session) when any
        backend round-trip fails.
        """

        if self.state is not SessionState.NEW:
            raise AlreadyNegotiating(
                f"session {self.id} already in state {self.state.value}"
            )
        self.offer = offer
        self._transition(SessionState.ENDPOINT_PENDING)

        creation = asyncio.ensure_future(self._backend.create_remote_endpoint(pipeline))
        try:
            endpoint = await self._round_trip(asyncio.shield(creation), "createRemoteEndpoint")
        except asyncio.CancelledError:
            self._release_when_created(creation)
            raise
        except NegotiationFailed:
            self._release_when_created(creation)
            await self.close()
            raise

        if self.is_closed:
            await self._release(endpoint)
            raise NegotiationFailed(f"session {self.id} closed while its endpoint was created")

        async with self._candidate_lock:
            self.remote_endpoint = endpoint
            self._transition(SessionState.ENDPOINT_READY)
            drained = await self._candidates.drain_into(endpoint, self._apply_candidate)
        if drained:
            self.logger.debug("Applied %d queued candidates to %s", drained, endpoint)

        try:
            answer = await self._round_trip(
                self._backend.process_offer(endpoint, offer), "processOffer"
            )
        except NegotiationFailed:
            await self.close()
            raise

        if self.is_closed:
            raise NegotiationFailed(f"session {self.id} closed during negotiation")

        self.answer = answer
        self._transition(SessionState.NEGOTIATED)
        return answer

    async def gather_candidates(self) -> None:
        """
        Ask the backend to start discovering server-side candidates.

        Only valid once the answer exists, so discovered candidates can never
        reach the viewer ahead of it.  A failure closes the session.
        """

        endpoint = self.remote_endpoint
        if endpoint is None or self.state is not SessionState.NEGOTIATED:
            raise NegotiationFailed(
                f"session {self.id} cannot gather candidates in state {self.state.value}"
            )
        try:
            await self._round_trip(self._backend.gather_candidates(endpoint), "gatherCandidates")
        except NegotiationFailed:
            await self.close()
            raise

    async def add_candidate(self, candidate: ICECandidate) -> None:
        """
        Apply ``candidate`` to the remote endpoint, or queue it until one exists.
        """

        async with self._candidate_lock:
            if self.is_closed:
                self.logger.warning("Candidate arrived for closed session %s; ignoring", self.id)
                return
            endpoint = self.remote_endpoint
            if endpoint is None or self.state not in ENDPOINT_LIVE_STATES:
                self._candidates.enqueue(candidate)
                return
            try:
                await self._apply_candidate(endpoint, candidate)
            except CandidateApplyFailed as exc:
                self.logger.warning("Skipping candidate for %s: %s", endpoint, exc)

    async def close(self) -> None:
        """
        Release the remote endpoint and move to ``CLOSED``.  Idempotent.
        """

        if self.is_closed:
            return
        self._transition(SessionState.CLOSED)
        self._candidates.clear()
        endpoint, self.remote_endpoint = self.remote_endpoint, None
        if endpoint is not None:
            await self._release(endpoint)
        self.logger.info("Session %s closed", self.id)


__all__ = ["ENDPOINT_LIVE_STATES", "SessionState", "ViewerSession"]
