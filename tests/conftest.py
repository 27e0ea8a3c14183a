from __future__ import annotations

import asyncio
import itertools
from typing import Any, Dict, List, Optional, Tuple

import pytest

from player2many.backend.base import BackendError, ICECandidate, MediaBackend


class FakeBackend(MediaBackend):
    """
    In-memory media backend recording every round-trip.

    ``fail_next(op)`` makes the next ``op`` call raise :class:`BackendError`;
    ``hold(op)`` returns an event every ``op`` call waits on before resolving.
    """

    def __init__(self) -> None:
        super().__init__()
        self.calls: List[Tuple[Any, ...]] = []
        self.applied: List[Tuple[str, ICECandidate]] = []
        self.released: List[str] = []
        self.connected: List[Tuple[str, str]] = []
        self.failing_candidates: set[str] = set()
        self.discovered_on_gather: List[Dict[str, Any]] = []
        self._failures: Dict[str, int] = {}
        self._gates: Dict[str, asyncio.Event] = {}
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------ controls

    def fail_next(self, op: str, times: int = 1) -> None:
        self._failures[op] = self._failures.get(op, 0) + times

    def hold(self, op: str) -> asyncio.Event:
        gate = asyncio.Event()
        self._gates[op] = gate
        return gate

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)

    async def _enter(self, op: str, *args: Any) -> None:
        self.calls.append((op, *args))
        gate = self._gates.get(op)
        if gate is not None:
            await gate.wait()
        remaining = self._failures.get(op, 0)
        if remaining:
            self._failures[op] = remaining - 1
            raise BackendError(f"{op} failed")

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    # ------------------------------------------------------------------ contract

    async def create_pipeline(self) -> str:
        await self._enter("create_pipeline")
        return self._next_id("pipeline")

    async def create_source_endpoint(
        self, pipeline: str, uri: str, *, use_encoded_media: bool = False
    ) -> str:
        await self._enter("create_source_endpoint", pipeline, uri)
        return self._next_id("player")

    async def play(self, source: str) -> None:
        await self._enter("play", source)

    async def create_remote_endpoint(self, pipeline: str) -> str:
        await self._enter("create_remote_endpoint", pipeline)
        return self._next_id("webrtc")

    async def process_offer(self, endpoint: str, offer_sdp: str) -> str:
        await self._enter("process_offer", endpoint, offer_sdp)
        return f"answer-to:{offer_sdp}"

    async def gather_candidates(self, endpoint: str) -> None:
        await self._enter("gather_candidates", endpoint)
        for payload in self.discovered_on_gather:
            self._emit_candidate(endpoint, payload)

    async def add_candidate(self, endpoint: str, candidate: ICECandidate) -> None:
        await self._enter("add_candidate", endpoint, candidate)
        if candidate.candidate in self.failing_candidates:
            raise BackendError(f"rejected {candidate.candidate}")
        self.applied.append((endpoint, candidate))

    async def connect_endpoints(self, source: str, sink: str) -> None:
        await self._enter("connect_endpoints", source, sink)
        self.connected.append((source, sink))

    async def release(self, handle: str) -> None:
        await self._enter("release", handle)
        self.released.append(handle)

    async def get_pipeline_dot(self, pipeline: str) -> str:
        await self._enter("get_pipeline_dot", pipeline)
        return f"digraph {pipeline.replace('-', '_')} {{}}"

    async def get_element_dot(self, element: str) -> str:
        await self._enter("get_element_dot", element)
        return f"digraph {element.replace('-', '_')} {{}}"

    # ------------------------------------------------------------------ events

    def emit_candidate(self, endpoint: str, candidate: str) -> None:
        self._emit_candidate(endpoint, {"candidate": candidate, "sdpMid": "0", "sdpMLineIndex": 0})

    def emit_error(self, endpoint: str, detail: str) -> None:
        self._emit_error(endpoint, detail)


class Outbox:
    """Collect messages a dispatcher emits to its viewer."""

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []

    async def send(self, payload: Dict[str, Any]) -> None:
        self.messages.append(payload)

    def of_type(self, kind: str) -> List[Dict[str, Any]]:
        return [message for message in self.messages if message.get("type") == kind]


def candidate(value: str, mid: Optional[str] = "0", index: Optional[int] = 0) -> ICECandidate:
    return ICECandidate(candidate=value, sdp_mid=mid, sdp_mline_index=index)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()
