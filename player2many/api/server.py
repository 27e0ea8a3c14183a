"""
FastAPI surface of the signaling relay.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional, Set

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.staticfiles import StaticFiles

from ..backend.base import BackendEvent, BackendEventKind, MediaBackend
from ..backend.kurento import KurentoBackend
from ..config import ServerConfig
from ..rtc.dispatcher import SignalingDispatcher
from ..rtc.publisher import PublisherCoordinator
from ..rtc.registry import SessionRegistry
from . import schemas

LOG = logging.getLogger(__name__)


class SignalingConnection:
    """Track one viewer WebSocket and orchestrate its send/receive loops."""

    def __init__(self, hub: "SignalingHub", websocket: WebSocket, *, queue_size: int) -> None:
        self.hub = hub
        self.websocket = websocket
        self.connection_id = uuid.uuid4().hex
        self.send_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.last_pong = time.monotonic()
        self._stop_event = asyncio.Event()
        self._closing = False
        self.logger = LOG.getChild(f"ws.{self.connection_id[:8]}")
        self.dispatcher = hub.build_dispatcher(self.connection_id, self.send)

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Failed to accept WebSocket connection")
            return

        await self.hub.register(self)
        try:
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
                task_group.create_task(self._keepalive_loop())
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Signaling connection crashed")
        finally:
            await self.hub.unregister(self)
            await self.close(code=1000)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    async def send(self, payload: Dict[str, Any]) -> None:
        if self.is_stopped:
            return
        await self.send_queue.put(dict(payload))

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    message = await self.websocket.receive_json()
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except ValueError:
                    self.logger.warning("Ignoring non-JSON frame")
                    continue
                except Exception:  # pragma: no cover - safety net
                    self.logger.exception("Failed to receive message")
                    break

                if not isinstance(message, dict):
                    self.logger.warning("Ignoring non-object frame: %r", message)
                    continue

                msg_type = str(message.get("type") or "").lower()
                if msg_type == "pong":
                    self.last_pong = time.monotonic()
                    continue
                if msg_type == "ping":
                    await self.send({"type": "pong", "ts": time.time()})
                    continue

                self.dispatcher.submit(message)
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    outbound = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self.websocket.send_json(outbound)
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except RuntimeError as exc:
                    message = str(exc)
                    if "close message has been sent" in message:
                        self.logger.debug("Send after close ignored: %s", message)
                    else:
                        self.logger.exception("Failed to send message", exc_info=exc)
                    break
                except Exception:  # pragma: no cover - defensive
                    self.logger.exception("Failed to send message")
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()

    async def _keepalive_loop(self) -> None:
        interval = self.hub.ping_interval
        if interval <= 0:
            return
        try:
            while not self.is_stopped:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                if self.is_stopped:
                    break
                await self.send({"type": "ping", "ts": time.time()})
                if (time.monotonic() - self.last_pong) > interval + self.hub.ping_timeout:
                    self.logger.warning("Ping timeout; closing signaling connection")
                    await self.close(code=1011, reason="ping timeout")
                    break
        finally:
            self._stop_event.set()


class SignalingHub:
    """
    Own the registry, the publisher and the backend event subscription.

    One hub exists per application; each WebSocket gets its own
    :class:`SignalingConnection` and :class:`SignalingDispatcher` that share
    the hub's state by reference.
    """

    def __init__(self, config: ServerConfig, backend: MediaBackend) -> None:
        self.config = config
        self.backend = backend
        self.registry = SessionRegistry(backend, session_timeout=config.kurento.rpc_timeout)
        self.publisher = PublisherCoordinator(
            backend,
            retries=config.publish.retries,
            retry_delay=config.publish.retry_delay,
            use_encoded_media=config.publish.use_encoded_media,
        )
        self.ping_interval = max(0.0, float(config.https.ws_ping_interval))
        self.ping_timeout = max(0.0, float(config.https.ws_ping_timeout))
        self.queue_size = max(1, int(config.https.queue_size))
        self._connections: Dict[str, SignalingConnection] = {}
        self._lock = asyncio.Lock()
        self._subscription: Optional[int] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def start(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = self.backend.subscribe(self._handle_backend_event)

    async def stop(self) -> None:
        if self._subscription is not None:
            self.backend.unsubscribe(self._subscription)
            self._subscription = None

        async with self._lock:
            connections = list(self._connections.values())
        for connection in connections:
            await connection.close(code=1001, reason="server shutdown")

        for task in list(self._tasks):
            task.cancel()
        await self.registry.clear()
        await self.publisher.stop()

    def build_dispatcher(
        self, connection_id: str, send: Callable[[Dict[str, Any]], Any]
    ) -> SignalingDispatcher:
        return SignalingDispatcher(
            connection_id,
            registry=self.registry,
            publisher=self.publisher,
            backend=self.backend,
            send=send,
            source_uri=self.config.publish.source_uri,
            dot_dir=self.config.debug.dot_dir,
        )

    async def run(self, websocket: WebSocket) -> None:
        connection = SignalingConnection(self, websocket, queue_size=self.queue_size)
        await connection.run()

    async def register(self, connection: SignalingConnection) -> None:
        async with self._lock:
            self._connections[connection.connection_id] = connection
        await connection.dispatcher.open()
        LOG.info("Signaling client connected: %s", connection.connection_id)

    async def unregister(self, connection: SignalingConnection) -> None:
        async with self._lock:
            self._connections.pop(connection.connection_id, None)
        await connection.dispatcher.close()
        LOG.info("Signaling client disconnected: %s", connection.connection_id)

    # ------------------------------------------------------------------ backend events

    def _schedule(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _handle_backend_event(self, event: BackendEvent) -> None:
        session = self.registry.find_by_endpoint(event.endpoint)
        if session is None:
            if event.kind is BackendEventKind.ENDPOINT_ERROR:
                LOG.error("Backend error on %s: %s", event.endpoint, event.detail)
            else:
                LOG.debug("Dropping %s for unknown endpoint %s", event.kind.value, event.endpoint)
            return

        if event.kind is BackendEventKind.CANDIDATE_DISCOVERED and event.candidate is not None:
            connection = self._connections.get(session.id)
            if connection is None:
                LOG.debug("No connection for session %s; dropping candidate", session.id)
                return
            self._schedule(connection.dispatcher.send_candidate(event.candidate))
            return

        if event.kind is BackendEventKind.ENDPOINT_ERROR:
            LOG.error("Endpoint %s of session %s failed: %s", event.endpoint, session.id, event.detail)
            self._schedule(self.registry.remove(session.id, session=session))


def create_app(
    config: Optional[ServerConfig] = None,
    *,
    backend: Optional[MediaBackend] = None,
) -> FastAPI:
    server_config = config or ServerConfig()
    media_backend = backend or KurentoBackend(
        server_config.kurento.url, rpc_timeout=server_config.kurento.rpc_timeout
    )
    hub = SignalingHub(server_config, media_backend)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        LOG.info("Signaling hub starting")
        await hub.start()
        try:
            yield
        finally:
            LOG.info("Signaling hub shutting down")
            try:
                await hub.stop()
            finally:
                await media_backend.close()

    app = FastAPI(title="player2many signaling relay", lifespan=lifespan)
    app.state.hub = hub

    @app.websocket(server_config.https.ws_path)
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await hub.run(websocket)

    @app.get("/healthz", response_model=schemas.HealthModel)
    async def healthz() -> schemas.HealthModel:
        return schemas.HealthModel(
            publishing=hub.publisher.is_publishing,
            sessions=len(hub.registry),
        )

    @app.get("/api/state")
    async def get_state() -> dict:
        publisher_state = hub.publisher.state
        return {
            "publisher": publisher_state.to_dict() if publisher_state else None,
            "sessions": [session.to_dict() for session in hub.registry],
            "connections": hub.connection_count,
        }

    static_dir = server_config.https.static_dir
    if static_dir is not None:
        app.mount(
            "/",
            StaticFiles(directory=str(static_dir), html=True, check_dir=False),
            name="static",
        )

    return app
