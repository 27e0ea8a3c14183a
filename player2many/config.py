"""
Static, process-wide configuration.

Values are read once at startup from a YAML document.  Every section is
optional; missing keys fall back to the defaults of the reference deployment
(a local Kurento Media Server and the OpenVidu sample clip as the source).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

LOG = logging.getLogger(__name__)

DEFAULT_SOURCE_URI = "http://files.openvidu.io/video/format/fiware-ppp.webm"
CONFIG_DIR = Path(__file__).resolve().parent / "configs"
DEFAULT_CONFIG_PATH = CONFIG_DIR / "default.yaml"


class ConfigError(ValueError):
    """Raised when the configuration document holds invalid values."""


def _section(payload: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = payload.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"section '{name}' must be a mapping")
    return value


def _as_float(section: str, key: str, value: Any, *, minimum: float = 0.0) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{section}.{key} must be a number, got {value!r}") from None
    if numeric < minimum:
        raise ConfigError(f"{section}.{key} must be >= {minimum}, got {numeric}")
    return numeric


def _as_int(section: str, key: str, value: Any, *, minimum: int = 0) -> int:
    try:
        numeric = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{section}.{key} must be an integer, got {value!r}") from None
    if numeric < minimum:
        raise ConfigError(f"{section}.{key} must be >= {minimum}, got {numeric}")
    return numeric


def _as_path(value: Any, base_dir: Optional[Path] = None) -> Optional[Path]:
    if value is None or value == "":
        return None
    path = Path(str(value)).expanduser()
    if base_dir is not None and not path.is_absolute():
        path = base_dir / path
    return path


@dataclass
class HttpsConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    cert: Optional[Path] = None
    cert_key: Optional[Path] = None
    ws_path: str = "/server"
    ws_ping_interval: float = 25.0
    ws_ping_timeout: float = 5.0
    static_dir: Optional[Path] = None
    queue_size: int = 256

    @property
    def tls_enabled(self) -> bool:
        return bool(
            self.cert is not None
            and self.cert_key is not None
            and self.cert.is_file()
            and self.cert_key.is_file()
        )

    @classmethod
    def from_dict(
        cls, payload: Dict[str, Any], base_dir: Optional[Path] = None
    ) -> "HttpsConfig":
        defaults = cls()
        ws_path = str(payload.get("ws_path", defaults.ws_path) or defaults.ws_path)
        if not ws_path.startswith("/"):
            ws_path = "/" + ws_path
        return cls(
            host=str(payload.get("host", defaults.host)),
            port=_as_int("https", "port", payload.get("port", defaults.port), minimum=1),
            cert=_as_path(payload.get("cert"), base_dir),
            cert_key=_as_path(payload.get("cert_key"), base_dir),
            ws_path=ws_path,
            ws_ping_interval=_as_float(
                "https", "ws_ping_interval", payload.get("ws_ping_interval", defaults.ws_ping_interval)
            ),
            ws_ping_timeout=_as_float(
                "https", "ws_ping_timeout", payload.get("ws_ping_timeout", defaults.ws_ping_timeout)
            ),
            static_dir=_as_path(payload.get("static_dir"), base_dir),
            queue_size=_as_int(
                "https", "queue_size", payload.get("queue_size", defaults.queue_size), minimum=1
            ),
        )


@dataclass
class KurentoConfig:
    ip: str = "127.0.0.1"
    port: int = 8888
    ws_path: str = "/kurento"
    rpc_timeout: float = 10.0

    @property
    def url(self) -> str:
        return f"ws://{self.ip}:{self.port}{self.ws_path}"

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "KurentoConfig":
        defaults = cls()
        return cls(
            ip=str(payload.get("ip", defaults.ip)),
            port=_as_int("kurento", "port", payload.get("port", defaults.port), minimum=1),
            ws_path=str(payload.get("ws_path", defaults.ws_path)),
            rpc_timeout=_as_float(
                "kurento", "rpc_timeout", payload.get("rpc_timeout", defaults.rpc_timeout)
            ),
        )


@dataclass
class PublishConfig:
    source_uri: str = DEFAULT_SOURCE_URI
    use_encoded_media: bool = False
    retries: int = 2
    retry_delay: float = 1.0

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PublishConfig":
        defaults = cls()
        source_uri = str(payload.get("source_uri") or defaults.source_uri).strip()
        return cls(
            source_uri=source_uri,
            use_encoded_media=bool(payload.get("use_encoded_media", defaults.use_encoded_media)),
            retries=_as_int("publish", "retries", payload.get("retries", defaults.retries)),
            retry_delay=_as_float(
                "publish", "retry_delay", payload.get("retry_delay", defaults.retry_delay)
            ),
        )


@dataclass
class DebugConfig:
    dot_dir: Path = field(default_factory=lambda: Path("."))

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DebugConfig":
        return cls(dot_dir=_as_path(payload.get("dot_dir")) or Path("."))


@dataclass
class ServerConfig:
    """
    Top level configuration handed to the hub, the backend and the entrypoint.
    """

    https: HttpsConfig = field(default_factory=HttpsConfig)
    kurento: KurentoConfig = field(default_factory=KurentoConfig)
    publish: PublishConfig = field(default_factory=PublishConfig)
    debug: DebugConfig = field(default_factory=DebugConfig)
    log_level: str = "INFO"

    @classmethod
    def from_dict(
        cls, payload: Optional[Dict[str, Any]], *, base_dir: Optional[Path] = None
    ) -> "ServerConfig":
        """
        Build the configuration from a parsed document.

        Relative TLS and static paths are resolved against ``base_dir`` (the
        directory of the YAML file) when given, else against the working
        directory.
        """

        payload = payload or {}
        if not isinstance(payload, dict):
            raise ConfigError("configuration root must be a mapping")
        logging_section = _section(payload, "logging")
        return cls(
            https=HttpsConfig.from_dict(_section(payload, "https"), base_dir),
            kurento=KurentoConfig.from_dict(_section(payload, "kurento")),
            publish=PublishConfig.from_dict(_section(payload, "publish")),
            debug=DebugConfig.from_dict(_section(payload, "debug")),
            log_level=str(logging_section.get("level") or "INFO").upper(),
        )


def load_config(path: Optional[Union[str, Path]] = None) -> ServerConfig:
    """
    Read ``path`` (or the bundled default document) into a :class:`ServerConfig`.
    """

    target = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    try:
        with target.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        if path is not None:
            raise ConfigError(f"configuration file not found: {target}") from None
        LOG.info("No configuration file at %s; using defaults", target)
        return ServerConfig.from_dict({})
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {target}: {exc}") from exc
    return ServerConfig.from_dict(payload, base_dir=target.resolve().parent)


__all__ = [
    "ConfigError",
    "DebugConfig",
    "HttpsConfig",
    "KurentoConfig",
    "PublishConfig",
    "ServerConfig",
    "load_config",
]
