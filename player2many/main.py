"""
Signaling relay process entrypoint.

Resolves configuration, initialises logging, verifies the media server is
reachable and then serves the FastAPI application with uvicorn.  The
connectivity check is the one fatal failure: without the media server no
viewer can ever be served.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from .backend.base import BackendError
from .backend.kurento import KurentoBackend
from .config import ConfigError, ServerConfig, load_config
from .api.server import create_app
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)

EXIT_BACKEND_UNAVAILABLE = 1
EXIT_BAD_CONFIG = 2


async def serve(config: ServerConfig) -> None:
    """
    Connect to the media server and run the signaling server until signalled.
    """

    import uvicorn

    backend = KurentoBackend(config.kurento.url, rpc_timeout=config.kurento.rpc_timeout)
    LOG.info("Connect with Kurento Media Server: %s", config.kurento.url)
    try:
        await backend.connect()
    except BackendError as exc:
        LOG.error("Exit: Kurento Media Server not reachable at %s (%s)", config.kurento.url, exc)
        raise SystemExit(EXIT_BACKEND_UNAVAILABLE) from exc

    app = create_app(config, backend=backend)

    ssl_options = {}
    if config.https.tls_enabled:
        ssl_options = {
            "ssl_certfile": str(config.https.cert),
            "ssl_keyfile": str(config.https.cert_key),
        }
    else:
        LOG.warning("TLS certificate not found; serving plain HTTP (browsers require HTTPS for WebRTC)")

    server_config = uvicorn.Config(
        app=app,
        host=config.https.host,
        port=config.https.port,
        log_config=None,
        log_level=config.log_level.lower(),
        reload=False,
        **ssl_options,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down server...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    scheme = "https" if ssl_options else "http"
    LOG.info(
        "Web server is listening on %s://%s:%s (signaling path %s)",
        scheme,
        config.https.host,
        config.https.port,
        config.https.ws_path,
    )
    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="player2many WebRTC signaling relay")
    parser.add_argument("--config", default=None, help="path to a YAML configuration file")
    parser.add_argument("--host", default=None, help="bind host for the signaling server")
    parser.add_argument("--port", type=int, default=None, help="bind port for the signaling server")
    parser.add_argument("--log-level", default=None, help="logging level (DEBUG, INFO, ...)")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ServerConfig:
    config = load_config(args.config)
    if args.host:
        config.https.host = args.host
    if args.port:
        config.https.port = args.port
    if args.log_level:
        config.log_level = str(args.log_level).upper()
    return config


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    try:
        config = build_config(args)
    except ConfigError as exc:
        configure_logging()
        LOG.error("Invalid configuration: %s", exc)
        sys.exit(EXIT_BAD_CONFIG)

    configure_logging(config.log_level)

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        LOG.info("Signaling relay interrupted by user.")


if __name__ == "__main__":
    run()
