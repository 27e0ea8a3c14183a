"""
Kurento Media Server backend.

Kurento exposes its object model through JSON-RPC 2.0 over a single
WebSocket: ``create`` instantiates media objects, ``invoke`` runs an
operation on one, ``subscribe`` registers for its events (pushed back as
``onEvent`` notifications) and ``release`` destroys it.  The server hands
out a ``sessionId`` on the first response which is echoed on every
subsequent request.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from typing import Any, Callable, Dict, Optional

import websockets

from .base import (
    BackendError,
    BackendTimeout,
    EndpointHandle,
    ICECandidate,
    MediaBackend,
    PipelineHandle,
)

LOG = logging.getLogger(__name__)

KEEPALIVE_INTERVAL_MS = 240_000
REMOTE_ENDPOINT_EVENTS = ("IceCandidateFound", "Error")
SOURCE_ENDPOINT_EVENTS = ("Error",)


class KurentoBackend(MediaBackend):
    """
    :class:`MediaBackend` speaking the Kurento JSON-RPC protocol.

    Parameters
    ----------
    url:
        WebSocket URL of the media server, e.g. ``ws://127.0.0.1:8888/kurento``.
    rpc_timeout:
        Upper bound, in seconds, for every request round-trip.
    connector:
        Coroutine factory returning an open WebSocket connection.  Defaults to
        :func:`websockets.connect`; tests substitute an in-memory peer.
    """

    def __init__(
        self,
        url: str,
        *,
        rpc_timeout: float = 10.0,
        connector: Optional[Callable[..., Any]] = None,
    ) -> None:
        super().__init__()
        self.url = url
        self.rpc_timeout = max(0.1, float(rpc_timeout))
        self._connector = connector or websockets.connect
        self._ws: Any = None
        self._reader_task: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._session_id: Optional[str] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._reader_task is not None and not self._reader_task.done()

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    # ------------------------------------------------------------------ lifecycle

    async def connect(self) -> None:
        if self.connected:
            return
        self._closing = False
        try:
            self._ws = await asyncio.wait_for(self._connector(self.url), timeout=self.rpc_timeout)
        except asyncio.TimeoutError:
            raise BackendTimeout(f"Timed out connecting to {self.url}") from None
        except (OSError, websockets.WebSocketException) as exc:
            raise BackendError(f"Cannot connect to {self.url}: {exc}") from exc

        self._reader_task = asyncio.create_task(self._reader_loop(), name="kurento-reader")
        try:
            await self._call("ping", {"interval": KEEPALIVE_INTERVAL_MS})
        except BackendError:
            await self.close()
            raise
        LOG.info("Kurento client connected to %s", self.url)

    async def close(self) -> None:
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None
        self._fail_pending(BackendError("Kurento connection closed"))

    # ------------------------------------------------------------------ JSON-RPC

    async def _call(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if self._ws is None:
            raise BackendError("Kurento client is not connected")

        request_id = next(self._ids)
        payload = dict(params)
        if self._session_id is not None:
            payload["sessionId"] = self._session_id
        message = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": payload}

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending[request_id] = future
        try:
            try:
                await self._ws.send(json.dumps(message))
            except (OSError, websockets.WebSocketException) as exc:
                raise BackendError(f"Failed to send {method}: {exc}") from exc
            try:
                result = await asyncio.wait_for(future, timeout=self.rpc_timeout)
            except asyncio.TimeoutError:
                raise BackendTimeout(
                    f"Kurento {method} timed out after {self.rpc_timeout:.1f}s"
                ) from None
        finally:
            self._pending.pop(request_id, None)

        session_id = result.get("sessionId")
        if session_id:
            self._session_id = str(session_id)
        return result

    async def _create(self, type_name: str, constructor_params: Dict[str, Any]) -> str:
        result = await self._call(
            "create",
            {"type": type_name, "constructorParams": constructor_params, "properties": {}},
        )
        return str(result["value"])

    async def _invoke(
        self, handle: str, operation: str, params: Optional[Dict[str, Any]] = None
    ) -> Any:
        result = await self._call(
            "invoke",
            {"object": handle, "operation": operation, "operationParams": params or {}},
        )
        return result.get("value")

    async def _subscribe(self, handle: str, event_type: str) -> str:
        result = await self._call("subscribe", {"type": event_type, "object": handle})
        return str(result.get("value"))

    async def _reader_loop(self) -> None:
        try:
            while True:
                raw = await self._ws.recv()
                try:
                    message = json.loads(raw)
                except (TypeError, ValueError):
                    LOG.warning("Ignoring malformed Kurento frame: %r", raw)
                    continue
                if isinstance(message, dict):
                    self._handle_message(message)
        except asyncio.CancelledError:
            raise
        except websockets.ConnectionClosed as exc:
            if not self._closing:
                LOG.error("Kurento connection lost: %s", exc)
        except Exception:  # pragma: no cover - safety net
            LOG.exception("Kurento reader crashed")
        finally:
            self._fail_pending(BackendError("Kurento connection lost"))

    def _handle_message(self, message: Dict[str, Any]) -> None:
        if message.get("method") == "onEvent":
            self._handle_event(message.get("params") or {})
            return

        request_id = message.get("id")
        future = self._pending.get(request_id) if isinstance(request_id, int) else None
        if future is None or future.done():
            LOG.debug("Dropping Kurento response without pending request: %s", message)
            return

        error = message.get("error")
        if error:
            detail = error.get("message") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            future.set_exception(BackendError(str(detail), code=code))
            return
        result = message.get("result")
        future.set_result(result if isinstance(result, dict) else {"value": result})

    def _handle_event(self, params: Dict[str, Any]) -> None:
        value = params.get("value") or {}
        data = value.get("data") or {}
        event_type = data.get("type") or value.get("type")
        source = str(data.get("source") or value.get("object") or "")
        if not source:
            return

        if event_type == "IceCandidateFound":
            candidate = data.get("candidate")
            if isinstance(candidate, dict):
                self._emit_candidate(source, candidate)
            return
        if event_type == "Error":
            detail = data.get("description") or data.get("errorCode") or "unknown error"
            self._emit_error(source, str(detail))
            return
        LOG.debug("Unhandled Kurento event %s from %s", event_type, source)

    def _fail_pending(self, exc: BackendError) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(exc)

    # ------------------------------------------------------------------ round-trips

    async def create_pipeline(self) -> PipelineHandle:
        return await self._create("MediaPipeline", {})

    async def create_source_endpoint(
        self, pipeline: PipelineHandle, uri: str, *, use_encoded_media: bool = False
    ) -> EndpointHandle:
        handle = await self._create(
            "PlayerEndpoint",
            {"mediaPipeline": pipeline, "uri": uri, "useEncodedMedia": bool(use_encoded_media)},
        )
        for event_type in SOURCE_ENDPOINT_EVENTS:
            await self._subscribe(handle, event_type)
        return handle

    async def play(self, source: EndpointHandle) -> None:
        await self._invoke(source, "play")

    async def create_remote_endpoint(self, pipeline: PipelineHandle) -> EndpointHandle:
        handle = await self._create("WebRtcEndpoint", {"mediaPipeline": pipeline})
        try:
            for event_type in REMOTE_ENDPOINT_EVENTS:
                await self._subscribe(handle, event_type)
        except BackendError:
            with contextlib.suppress(BackendError):
                await self.release(handle)
            raise
        return handle

    async def process_offer(self, endpoint: EndpointHandle, offer_sdp: str) -> str:
        answer = await self._invoke(endpoint, "processOffer", {"offer": offer_sdp})
        if not isinstance(answer, str) or not answer:
            raise BackendError("processOffer returned no SDP answer")
        return answer

    async def gather_candidates(self, endpoint: EndpointHandle) -> None:
        await self._invoke(endpoint, "gatherCandidates")

    async def add_candidate(self, endpoint: EndpointHandle, candidate: ICECandidate) -> None:
        complex_type = {"__module__": "kurento", "__type__": "IceCandidate"}
        complex_type.update(candidate.to_dict())
        await self._invoke(endpoint, "addIceCandidate", {"candidate": complex_type})

    async def connect_endpoints(self, source: EndpointHandle, sink: EndpointHandle) -> None:
        await self._invoke(source, "connect", {"sink": sink})

    async def release(self, handle: str) -> None:
        await self._call("release", {"object": handle})

    async def get_pipeline_dot(self, pipeline: PipelineHandle) -> str:
        return str(await self._invoke(pipeline, "getGstreamerDot") or "")

    async def get_element_dot(self, element: EndpointHandle) -> str:
        return str(await self._invoke(element, "getElementGstreamerDot") or "")


__all__ = ["KurentoBackend"]
