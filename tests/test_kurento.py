"""Tests covering the Kurento JSON-RPC client against an in-memory media server."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional, Set

import pytest
import websockets

from player2many.backend.base import (
    BackendError,
    BackendEvent,
    BackendEventKind,
    BackendTimeout,
    ICECandidate,
)
from player2many.backend.kurento import KurentoBackend

URL = "ws://kms.test:8888/kurento"


class FakeMediaServer:
    """
    Minimal stand-in for a Kurento WebSocket peer.

    Replies to every request unless its method (or invoked operation) is in
    ``silent``; ``errors`` maps a method/operation to a JSON-RPC error object.
    """

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.silent: Set[str] = set()
        self.errors: Dict[str, Dict[str, Any]] = {}
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._objects = 0

    def _reply(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        method = message["method"]
        params = message.get("params") or {}
        key = params.get("operation", method) if method == "invoke" else method
        if key in self.silent:
            return None
        if key in self.errors:
            return {"jsonrpc": "2.0", "id": message["id"], "error": self.errors[key]}

        if method == "create":
            self._objects += 1
            value: Any = f"{params['type']}-{self._objects}"
        elif key == "processOffer":
            value = f"answer-to:{params['operationParams']['offer']}"
        elif method == "ping":
            value = "pong"
        else:
            value = None
        return {"jsonrpc": "2.0", "id": message["id"], "result": {"value": value, "sessionId": "sess-1"}}

    async def send(self, raw: str) -> None:
        message = json.loads(raw)
        self.sent.append(message)
        reply = self._reply(message)
        if reply is not None:
            await self._inbox.put(json.dumps(reply))

    async def recv(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise websockets.ConnectionClosed(None, None)
        return item

    async def close(self) -> None:
        self.closed = True
        await self._inbox.put(None)

    def push(self, message: Dict[str, Any]) -> None:
        self._inbox.put_nowait(json.dumps(message))

    def drop(self) -> None:
        self._inbox.put_nowait(None)

    def methods(self) -> List[str]:
        return [message["method"] for message in self.sent]


async def _connected(server: FakeMediaServer, *, rpc_timeout: float = 5.0) -> KurentoBackend:
    async def connector(_url: str) -> FakeMediaServer:
        return server

    backend = KurentoBackend(URL, rpc_timeout=rpc_timeout, connector=connector)
    await backend.connect()
    return backend


def test_connect_pings_and_echoes_session_id() -> None:
    async def scenario():
        server = FakeMediaServer()
        backend = await _connected(server)
        pipeline = await backend.create_pipeline()
        await backend.close()
        return server, backend, pipeline

    server, backend, pipeline = asyncio.run(scenario())

    ping, create = server.sent
    assert ping["method"] == "ping"
    assert ping["params"] == {"interval": 240000}
    assert "sessionId" not in ping["params"]
    assert create["params"]["sessionId"] == "sess-1"
    assert create["params"]["type"] == "MediaPipeline"
    assert pipeline == "MediaPipeline-1"
    assert backend.session_id == "sess-1"
    assert server.closed is True


def test_connect_failure_is_a_backend_error() -> None:
    async def connector(_url: str):
        raise OSError("connection refused")

    backend = KurentoBackend(URL, connector=connector)
    with pytest.raises(BackendError):
        asyncio.run(backend.connect())
    assert backend.connected is False


def test_remote_endpoint_subscribes_to_candidates_and_errors() -> None:
    async def scenario():
        server = FakeMediaServer()
        backend = await _connected(server)
        endpoint = await backend.create_remote_endpoint("MediaPipeline-0")
        await backend.close()
        return server, endpoint

    server, endpoint = asyncio.run(scenario())

    assert server.methods() == ["ping", "create", "subscribe", "subscribe"]
    create = server.sent[1]["params"]
    assert create["type"] == "WebRtcEndpoint"
    assert create["constructorParams"] == {"mediaPipeline": "MediaPipeline-0"}
    assert [message["params"]["type"] for message in server.sent[2:]] == ["IceCandidateFound", "Error"]
    assert all(message["params"]["object"] == endpoint for message in server.sent[2:])


def test_failed_subscription_releases_endpoint() -> None:
    async def scenario():
        server = FakeMediaServer()
        server.errors["subscribe"] = {"code": 40101, "message": "subscribe rejected"}
        backend = await _connected(server)
        with pytest.raises(BackendError):
            await backend.create_remote_endpoint("MediaPipeline-0")
        await backend.close()
        return server

    server = asyncio.run(scenario())
    assert server.methods()[-1] == "release"


def test_negotiation_round_trips() -> None:
    async def scenario():
        server = FakeMediaServer()
        backend = await _connected(server)
        answer = await backend.process_offer("WebRtcEndpoint-1", "offer-1")
        await backend.add_candidate(
            "WebRtcEndpoint-1", ICECandidate("candidate:1 1 UDP 1 10.0.0.1 5000 typ host", "0", 0)
        )
        await backend.gather_candidates("WebRtcEndpoint-1")
        await backend.connect_endpoints("PlayerEndpoint-1", "WebRtcEndpoint-1")
        await backend.close()
        return server, answer

    server, answer = asyncio.run(scenario())

    assert answer == "answer-to:offer-1"
    invokes = [message["params"] for message in server.sent if message["method"] == "invoke"]
    assert [params["operation"] for params in invokes] == [
        "processOffer",
        "addIceCandidate",
        "gatherCandidates",
        "connect",
    ]
    assert invokes[1]["operationParams"]["candidate"] == {
        "__module__": "kurento",
        "__type__": "IceCandidate",
        "candidate": "candidate:1 1 UDP 1 10.0.0.1 5000 typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }
    assert invokes[3]["object"] == "PlayerEndpoint-1"
    assert invokes[3]["operationParams"] == {"sink": "WebRtcEndpoint-1"}


def test_error_response_raises_backend_error() -> None:
    async def scenario() -> BackendError:
        server = FakeMediaServer()
        server.errors["play"] = {"code": 40001, "message": "Invalid URI"}
        backend = await _connected(server)
        try:
            with pytest.raises(BackendError) as excinfo:
                await backend.play("PlayerEndpoint-1")
        finally:
            await backend.close()
        return excinfo.value

    error = asyncio.run(scenario())
    assert error.code == 40001
    assert "Invalid URI" in str(error)


def test_silent_server_times_out() -> None:
    async def scenario() -> None:
        server = FakeMediaServer()
        server.silent.add("processOffer")
        backend = await _connected(server, rpc_timeout=0.1)
        try:
            with pytest.raises(BackendTimeout):
                await backend.process_offer("WebRtcEndpoint-1", "offer-1")
        finally:
            await backend.close()

    asyncio.run(scenario())


def test_lost_connection_fails_pending_requests() -> None:
    async def scenario() -> None:
        server = FakeMediaServer()
        server.silent.add("processOffer")
        backend = await _connected(server)
        request = asyncio.create_task(backend.process_offer("WebRtcEndpoint-1", "offer-1"))
        while not server.sent or server.sent[-1]["method"] != "invoke":
            await asyncio.sleep(0)
        server.drop()
        with pytest.raises(BackendError) as excinfo:
            await request
        assert not isinstance(excinfo.value, BackendTimeout)
        assert backend.connected is False
        await backend.close()

    asyncio.run(scenario())


def test_events_reach_subscribers() -> None:
    events: List[BackendEvent] = []

    async def scenario() -> None:
        server = FakeMediaServer()
        backend = await _connected(server)
        backend.subscribe(events.append)
        server.push(
            {
                "jsonrpc": "2.0",
                "method": "onEvent",
                "params": {
                    "value": {
                        "data": {
                            "source": "WebRtcEndpoint-1",
                            "type": "IceCandidateFound",
                            "candidate": {
                                "__module__": "kurento",
                                "__type__": "IceCandidate",
                                "candidate": "candidate:2 1 UDP 2 10.0.0.2 5002 typ host",
                                "sdpMid": "0",
                                "sdpMLineIndex": 0,
                            },
                        },
                        "object": "WebRtcEndpoint-1",
                        "type": "IceCandidateFound",
                    }
                },
            }
        )
        server.push(
            {
                "jsonrpc": "2.0",
                "method": "onEvent",
                "params": {
                    "value": {
                        "data": {"source": "PlayerEndpoint-1", "type": "Error", "description": "EOS"},
                        "object": "PlayerEndpoint-1",
                        "type": "Error",
                    }
                },
            }
        )
        while len(events) < 2:
            await asyncio.sleep(0)
        await backend.close()

    asyncio.run(scenario())

    candidate_event, error_event = events
    assert candidate_event.kind is BackendEventKind.CANDIDATE_DISCOVERED
    assert candidate_event.endpoint == "WebRtcEndpoint-1"
    assert candidate_event.candidate == ICECandidate(
        "candidate:2 1 UDP 2 10.0.0.2 5002 typ host", "0", 0
    )
    assert error_event.kind is BackendEventKind.ENDPOINT_ERROR
    assert error_event.endpoint == "PlayerEndpoint-1"
    assert error_event.detail == "EOS"
