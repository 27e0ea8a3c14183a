"""
Per-connection translation of signaling messages into session operations.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from pydantic import ValidationError

from ..api import schemas
from ..backend.base import BackendError, ICECandidate, MediaBackend
from ..errors import (
    AlreadyNegotiating,
    DuplicateSession,
    NegotiationFailed,
    PipelineCreateFailed,
    SignalingError,
)
from ..utils.debug import write_dot
from .publisher import PublisherCoordinator
from .registry import SessionRegistry
from .session import ViewerSession

LOG = logging.getLogger(__name__)

SendCallable = Callable[[Dict[str, Any]], Awaitable[None]]

PIPELINE_DOT = "pipeline.dot"
SOURCE_DOT = "source_endpoint.dot"


class SignalingDispatcher:
    """
    Handle the signaling messages of one viewer connection.

    Every entry point is a boundary: taxonomy errors are logged, never
    raised, so a misbehaving viewer or a failing backend cannot take the
    transport loop down.
    """

    def __init__(
        self,
        connection_id: str,
        *,
        registry: SessionRegistry,
        publisher: PublisherCoordinator,
        backend: MediaBackend,
        send: SendCallable,
        source_uri: str,
        dot_dir: Path = Path("."),
    ) -> None:
        self.connection_id = connection_id
        self.registry = registry
        self.publisher = publisher
        self.backend = backend
        self._send = send
        self.source_uri = source_uri
        self.dot_dir = Path(dot_dir)
        self._tasks: Set[asyncio.Task] = set()
        self.logger = LOG.getChild(connection_id[:8])

    # ------------------------------------------------------------------ lifecycle

    async def open(self) -> None:
        try:
            await self.registry.create(self.connection_id)
        except DuplicateSession as exc:
            self.logger.warning("Skip adding session, already exists: %s", exc)

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._tasks.clear()
        await self.registry.remove(self.connection_id)

    # ------------------------------------------------------------------ routing

    def submit(self, raw: Any) -> asyncio.Task:
        """
        Run :meth:`dispatch` for ``raw`` as its own task.

        Tasks start in submission order, so per-connection candidate order is
        preserved even though an offer may still be awaiting the backend.
        """

        task = asyncio.create_task(self.dispatch(raw))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def dispatch(self, raw: Any) -> None:
        try:
            message = schemas.SignalingMessage.model_validate(raw)
        except ValidationError as exc:
            self.logger.warning("Ignoring malformed signaling message: %s", exc.errors())
            return

        kind = message.type
        try:
            if kind is schemas.MessageType.CLIENT_START_PUBLISH:
                await self.on_start_publish()
            elif kind is schemas.MessageType.CLIENT_SDP_OFFER:
                offer = schemas.SdpOfferModel.from_payload(message.payload)
                await self.on_offer(offer.sdp)
            elif kind is schemas.MessageType.CLIENT_ICE_CANDIDATE:
                candidate = schemas.IceCandidateModel.model_validate(message.payload or {})
                await self.on_ice_candidate(candidate.to_candidate())
            elif kind is schemas.MessageType.CLIENT_DEBUG_DOT:
                await self.on_debug_dump()
            else:
                self.logger.warning("Ignoring server-side message kind from viewer: %s", kind.value)
        except ValidationError as exc:
            self.logger.warning("Invalid %s payload: %s", kind.value, exc.errors())
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception("Unhandled error while processing %s", kind.value)

    async def _emit(self, kind: schemas.MessageType, payload: Any) -> None:
        await self._send({"type": kind.value, "payload": payload})

    async def _emit_error(self, exc: SignalingError) -> None:
        error = schemas.ErrorPayload(code=exc.code, message=str(exc))
        await self._emit(schemas.MessageType.SERVER_ERROR, error.model_dump())

    async def send_candidate(self, candidate: ICECandidate) -> None:
        await self._emit(schemas.MessageType.SERVER_ICE_CANDIDATE, candidate.to_dict())

    # ------------------------------------------------------------------ entry points

    async def on_start_publish(self) -> None:
        try:
            await self.publisher.ensure_publishing(self.source_uri)
        except PipelineCreateFailed as exc:
            self.logger.error("Start publish failed: %s", exc)

    async def on_offer(self, offer: str) -> Optional[str]:
        """
        Negotiate the viewer's endpoint and emit the SDP answer.

        Returns the answer, or ``None`` when negotiation did not complete.
        """

        self.logger.debug("SDP offer from viewer:\n%s", offer)
        session = await self.registry.get_or_create(self.connection_id)
        try:
            pipeline = await self.publisher.settled_pipeline()
            answer = await session.begin_negotiation(offer, pipeline)
            await self.publisher.connect_viewer(session)
        except AlreadyNegotiating as exc:
            self.logger.warning("Ignoring repeated offer: %s", exc)
            await self._emit_error(exc)
            return None
        except SignalingError as exc:
            await self._fail_offer(session, exc)
            return None

        self.logger.debug("SDP answer to viewer:\n%s", answer)
        await self._emit(schemas.MessageType.SERVER_SDP_ANSWER, answer)

        try:
            await session.gather_candidates()
        except NegotiationFailed as exc:
            await self._fail_offer(session, exc)
            return None
        return answer

    async def _fail_offer(self, session: ViewerSession, exc: SignalingError) -> None:
        self.logger.error("Offer from %s failed: %s", self.connection_id, exc)
        await self.registry.remove(self.connection_id, session=session)
        await self._emit_error(exc)

    async def on_ice_candidate(self, candidate: ICECandidate) -> None:
        session = self.registry.get(self.connection_id)
        if session is None:
            self.logger.warning(
                "Skip adding candidate, session doesn't exist: %s", self.connection_id
            )
            return
        await session.add_candidate(candidate)

    async def on_debug_dump(self) -> None:
        state = self.publisher.state
        if state is None:
            self.logger.warning("Debug DOT requested but nothing is publishing")
            return
        await asyncio.gather(
            self._export_dot(PIPELINE_DOT, self.backend.get_pipeline_dot(state.pipeline)),
            self._export_dot(SOURCE_DOT, self.backend.get_element_dot(state.source_endpoint)),
        )

    async def _export_dot(self, name: str, fetch: Awaitable[str]) -> None:
        try:
            content = await fetch
            path = await write_dot(self.dot_dir, name, content)
        except (BackendError, OSError) as exc:
            self.logger.error("Failed to export %s: %s", name, exc)
            return
        self.logger.info("Saved DOT file: %s", path)


__all__ = ["SendCallable", "SignalingDispatcher"]
