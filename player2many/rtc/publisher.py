"""
Owner of the single shared pipeline and its playback source.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Optional

from ..backend.base import BackendError, EndpointHandle, MediaBackend, PipelineHandle
from ..errors import NegotiationFailed, PipelineCreateFailed, PublisherNotReady
from .session import ENDPOINT_LIVE_STATES, ViewerSession

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublisherState:
    """
    Immutable view of the live publishing objects.
    """

    pipeline: PipelineHandle
    source_endpoint: EndpointHandle
    source_uri: str

    def to_dict(self) -> dict:
        return {
            "pipeline": self.pipeline,
            "sourceEndpoint": self.source_endpoint,
            "sourceUri": self.source_uri,
        }


class PublisherCoordinator:
    """
    Serialise creation of the shared pipeline and wire viewers to it.

    ``pipeline`` and ``source_endpoint`` are published together as one
    :class:`PublisherState`, so callers see either both or neither.  Creation
    runs as a single shared task: concurrent callers await the in-flight
    attempt instead of starting a second pipeline, and a caller that is
    cancelled (its viewer disconnected) stops waiting without cancelling the
    creation the others depend on.
    """

    def __init__(
        self,
        backend: MediaBackend,
        *,
        retries: int = 0,
        retry_delay: float = 1.0,
        use_encoded_media: bool = False,
    ) -> None:
        self._backend = backend
        self._retries = max(0, int(retries))
        self._retry_delay = max(0.0, float(retry_delay))
        self._use_encoded_media = use_encoded_media
        self._state: Optional[PublisherState] = None
        self._creation: Optional[asyncio.Task] = None

    @property
    def state(self) -> Optional[PublisherState]:
        return self._state

    @property
    def is_publishing(self) -> bool:
        return self._state is not None

    @property
    def pipeline(self) -> Optional[PipelineHandle]:
        return self._state.pipeline if self._state else None

    @property
    def source_endpoint(self) -> Optional[EndpointHandle]:
        return self._state.source_endpoint if self._state else None

    def require_pipeline(self) -> PipelineHandle:
        state = self._state
        if state is None:
            raise PublisherNotReady("no active publish yet; ask the viewer to retry")
        return state.pipeline

    async def settled_pipeline(self) -> PipelineHandle:
        """
        Like :meth:`require_pipeline`, but first waits out any creation in flight.
        """

        await self._await_creation()
        return self.require_pipeline()

    async def _await_creation(self) -> None:
        creation = self._creation
        if creation is not None and not creation.done():
            with contextlib.suppress(PipelineCreateFailed):
                await asyncio.shield(creation)

    async def ensure_publishing(self, source_uri: str) -> PublisherState:
        """
        Create the pipeline and start playing ``source_uri`` unless already live.

        Transient failures are retried a bounded number of times; each failed
        attempt releases whatever it created.  Raises
        :class:`PipelineCreateFailed` once attempts are exhausted.
        """

        state = self._state
        if state is not None:
            if state.source_uri != source_uri:
                LOG.warning(
                    "Publish requested for %s while %s is already live; keeping the live source",
                    source_uri,
                    state.source_uri,
                )
            return state

        if self._creation is None or self._creation.done():
            self._creation = asyncio.create_task(
                self._publish(source_uri), name="publisher-create"
            )
            self._creation.add_done_callback(self._creation_done)
        return await asyncio.shield(self._creation)

    def _creation_done(self, task: asyncio.Task) -> None:
        if self._creation is task:
            self._creation = None
        if not task.cancelled():
            error = task.exception()
            if error is not None:
                LOG.debug("Publish attempt finished with %r", error)

    async def _publish(self, source_uri: str) -> PublisherState:
        attempts = self._retries + 1
        last_error: Optional[BackendError] = None
        for attempt in range(1, attempts + 1):
            try:
                state = await self._create(source_uri)
            except BackendError as exc:
                last_error = exc
                LOG.warning("Pipeline creation attempt %d/%d failed: %s", attempt, attempts, exc)
                if attempt < attempts and self._retry_delay:
                    await asyncio.sleep(self._retry_delay)
                continue
            self._state = state
            LOG.info(
                "Publishing %s (pipeline=%s, source=%s)",
                source_uri,
                state.pipeline,
                state.source_endpoint,
            )
            return state

        raise PipelineCreateFailed(
            f"could not start publishing {source_uri}: {last_error}"
        ) from last_error

    async def _create(self, source_uri: str) -> PublisherState:
        pipeline = await self._backend.create_pipeline()
        LOG.debug("Pipeline created: %s", pipeline)
        try:
            source = await self._backend.create_source_endpoint(
                pipeline, source_uri, use_encoded_media=self._use_encoded_media
            )
            LOG.debug("Source endpoint created: %s", source)
            await self._backend.play(source)
        except (BackendError, asyncio.CancelledError):
            await self._release_quietly(pipeline)
            raise
        return PublisherState(pipeline=pipeline, source_endpoint=source, source_uri=source_uri)

    async def _release_quietly(self, handle: str) -> None:
        try:
            await self._backend.release(handle)
        except BackendError as exc:
            LOG.warning("Failed to release %s: %s", handle, exc)

    async def connect_viewer(self, session: ViewerSession) -> None:
        """
        Feed the shared source into ``session``'s remote endpoint.
        """

        state = self._state
        if state is None:
            raise PublisherNotReady("no active publish yet; ask the viewer to retry")
        endpoint = session.remote_endpoint
        if endpoint is None or session.state not in ENDPOINT_LIVE_STATES:
            raise NegotiationFailed(
                f"session {session.id} has no ready endpoint (state {session.state.value})"
            )
        try:
            await self._backend.connect_endpoints(state.source_endpoint, endpoint)
        except BackendError as exc:
            raise NegotiationFailed(
                f"connecting source to session {session.id} failed: {exc}"
            ) from exc
        LOG.info("Viewer %s connected to source %s", session.id, state.source_endpoint)

    async def stop(self) -> None:
        await self._await_creation()
        state, self._state = self._state, None
        if state is not None:
            await self._release_quietly(state.pipeline)
            LOG.info("Publishing stopped (pipeline=%s)", state.pipeline)


__all__ = ["PublisherCoordinator", "PublisherState"]
