"""
Abstract contract of the media-processing backend.

The signaling core never talks to a media server directly: it drives a
:class:`MediaBackend`, whose coroutines each map to one asynchronous
round-trip, and listens to the backend event stream for candidates the
server discovers and for endpoint errors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

LOG = logging.getLogger(__name__)

# Opaque object identifiers handed out by the backend.
PipelineHandle = str
EndpointHandle = str


@dataclass(frozen=True)
class ICECandidate:
    """Serialisable ICE candidate container."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ICECandidate":
        mline = payload.get("sdpMLineIndex", payload.get("sdp_mline_index"))
        return cls(
            candidate=str(payload.get("candidate") or ""),
            sdp_mid=payload.get("sdpMid", payload.get("sdp_mid")),
            sdp_mline_index=int(mline) if mline is not None else None,
        )

    def to_dict(self) -> dict:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }


class BackendError(RuntimeError):
    """Raised when a backend round-trip fails."""

    def __init__(self, message: str, *, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class BackendTimeout(BackendError):
    """Raised when a backend round-trip does not resolve within its deadline."""


class BackendEventKind(str, Enum):
    CANDIDATE_DISCOVERED = "candidate-discovered"
    ENDPOINT_ERROR = "endpoint-error"


@dataclass(frozen=True)
class BackendEvent:
    kind: BackendEventKind
    endpoint: EndpointHandle
    candidate: Optional[ICECandidate] = None
    detail: Optional[str] = None


EventCallback = Callable[[BackendEvent], None]


class MediaBackend:
    """
    Base class for media backends.

    Subclasses implement the round-trips; the event plumbing lives here so
    every backend delivers events the same way.
    """

    def __init__(self) -> None:
        self._observer_counter = 0
        self._observers: Dict[int, EventCallback] = {}

    # ------------------------------------------------------------------ lifecycle

    async def connect(self) -> None:
        """
        Open the backend connection and verify it answers.
        """

    async def close(self) -> None:
        """
        Close the backend connection.
        """

    # ------------------------------------------------------------------ round-trips

    async def create_pipeline(self) -> PipelineHandle:
        raise NotImplementedError

    async def create_source_endpoint(
        self, pipeline: PipelineHandle, uri: str, *, use_encoded_media: bool = False
    ) -> EndpointHandle:
        raise NotImplementedError

    async def play(self, source: EndpointHandle) -> None:
        raise NotImplementedError

    async def create_remote_endpoint(self, pipeline: PipelineHandle) -> EndpointHandle:
        raise NotImplementedError

    async def process_offer(self, endpoint: EndpointHandle, offer_sdp: str) -> str:
        raise NotImplementedError

    async def gather_candidates(self, endpoint: EndpointHandle) -> None:
        raise NotImplementedError

    async def add_candidate(self, endpoint: EndpointHandle, candidate: ICECandidate) -> None:
        raise NotImplementedError

    async def connect_endpoints(self, source: EndpointHandle, sink: EndpointHandle) -> None:
        raise NotImplementedError

    async def release(self, handle: str) -> None:
        raise NotImplementedError

    async def get_pipeline_dot(self, pipeline: PipelineHandle) -> str:
        raise NotImplementedError

    async def get_element_dot(self, element: EndpointHandle) -> str:
        raise NotImplementedError

    # ------------------------------------------------------------------ events

    def subscribe(self, callback: EventCallback) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._observer_counter += 1
        token = self._observer_counter
        self._observers[token] = callback
        return token

    def unsubscribe(self, token: int) -> None:
        self._observers.pop(token, None)

    def _notify(self, event: BackendEvent) -> None:
        for token, callback in list(self._observers.items()):
            try:
                callback(event)
            except Exception:  # pragma: no cover - observer failures must not kill the reader
                LOG.exception("Backend observer %s failed.", token)

    def _emit_candidate(self, endpoint: EndpointHandle, payload: Dict[str, Any]) -> None:
        self._notify(
            BackendEvent(
                kind=BackendEventKind.CANDIDATE_DISCOVERED,
                endpoint=endpoint,
                candidate=ICECandidate.from_dict(payload),
            )
        )

    def _emit_error(self, endpoint: EndpointHandle, detail: str) -> None:
        self._notify(
            BackendEvent(kind=BackendEventKind.ENDPOINT_ERROR, endpoint=endpoint, detail=detail)
        )


__all__ = [
    "BackendError",
    "BackendEvent",
    "BackendEventKind",
    "BackendTimeout",
    "EndpointHandle",
    "EventCallback",
    "ICECandidate",
    "MediaBackend",
    "PipelineHandle",
]
