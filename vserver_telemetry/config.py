"""Environment based configuration for the collector."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import voluptuous as vol

from .errors import ConfigError
from .models import Credentials
from .pool import DEFAULT_IDLE_TTL, DEFAULT_SWEEP_INTERVAL
from .service import DEFAULT_STATS_TIMEOUT
from .transport import DEFAULT_CONNECT_TIMEOUT

DEFAULT_INTERVAL = 30
MIN_INTERVAL = 5

_port = vol.All(vol.Coerce(int), vol.Range(min=1, max=65535))
_seconds = vol.All(vol.Coerce(float), vol.Range(min=0, min_included=False))

SERVER_SCHEMA = vol.Schema(
    {
        vol.Optional("name"): str,
        vol.Required("host"): str,
        vol.Required("username"): str,
        vol.Optional("port", default=22): _port,
        vol.Optional("key"): str,
        vol.Optional("private_key"): str,
        vol.Optional("passphrase"): str,
    },
    extra=vol.REMOVE_EXTRA,
)

ENV_SCHEMA = vol.Schema(
    {
        vol.Optional("SERVERS_JSON", default="[]"): str,
        vol.Optional("INTERVAL", default=DEFAULT_INTERVAL): vol.All(vol.Coerce(int), vol.Clamp(min=MIN_INTERVAL)),
        vol.Optional("SSH_BACKEND", default="paramiko"): vol.In(["paramiko", "asyncssh"]),
        vol.Optional("POOL_IDLE_TTL", default=DEFAULT_IDLE_TTL): _seconds,
        vol.Optional("POOL_SWEEP_INTERVAL", default=DEFAULT_SWEEP_INTERVAL): _seconds,
        vol.Optional("CONNECT_TIMEOUT", default=DEFAULT_CONNECT_TIMEOUT): _seconds,
        vol.Optional("STATS_TIMEOUT", default=DEFAULT_STATS_TIMEOUT): _seconds,
        vol.Optional("MQTT_HOST"): str,
        vol.Optional("MQTT_PORT", default=1883): _port,
        vol.Optional("MQTT_USER"): str,
        vol.Optional("MQTT_PASS"): str,
    },
    extra=vol.REMOVE_EXTRA,
)


@dataclass(frozen=True)
class ServerConfig:
    name: str
    credentials: Credentials


@dataclass(frozen=True)
class Settings:
    servers: List[ServerConfig] = field(default_factory=list)
    interval: int = DEFAULT_INTERVAL
    ssh_backend: str = "paramiko"
    idle_ttl: float = DEFAULT_IDLE_TTL
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    stats_timeout: float = DEFAULT_STATS_TIMEOUT
    mqtt_host: Optional[str] = None
    mqtt_port: int = 1883
    mqtt_user: Optional[str] = None
    mqtt_pass: Optional[str] = field(default=None, repr=False)


def resolve_private_key_path(key: Optional[str], base_dir: Optional[Path] = None) -> Optional[Path]:
    """Return an absolute path for an SSH private key.

    Keys may be given as absolute paths, paths relative to *base_dir* (the
    working directory by default) or with a leading ``~``. Empty values pass
    through as ``None``.
    """

    if not key:
        return None

    path = Path(key).expanduser()
    if not path.is_absolute():
        path = (base_dir or Path.cwd()) / path
    return path


def parse_server(raw: Mapping[str, Any], base_dir: Optional[Path] = None) -> ServerConfig:
    """Validate one server entry and load its key material."""
    try:
        server = SERVER_SCHEMA(raw)
    except vol.Invalid as err:
        raise ConfigError(f"Invalid server entry: {err}") from err

    material = server.get("private_key")
    if not material:
        key_path = resolve_private_key_path(server.get("key"), base_dir)
        if key_path is None:
            raise ConfigError(f"Server {server['host']} needs 'key' or 'private_key'")
        try:
            material = key_path.read_text(encoding="utf-8")
        except OSError as err:
            raise ConfigError(f"Cannot read private key {key_path}: {err}") from err

    credentials = Credentials(
        host=server["host"],
        port=server["port"],
        username=server["username"],
        private_key=material,
        passphrase=server.get("passphrase") or None,
    )
    name = server.get("name") or server["host"].replace(".", "_")
    return ServerConfig(name=name, credentials=credentials)


def load_settings(environ: Optional[Mapping[str, str]] = None, base_dir: Optional[Path] = None) -> Settings:
    """Build :class:`Settings` from environment variables."""
    env: Dict[str, Any] = {k: v for k, v in (os.environ if environ is None else environ).items() if v != ""}
    try:
        data = ENV_SCHEMA(env)
    except vol.Invalid as err:
        raise ConfigError(f"Invalid environment: {err}") from err

    try:
        raw_servers = json.loads(data["SERVERS_JSON"])
    except ValueError as err:
        raise ConfigError(f"SERVERS_JSON is not valid JSON: {err}") from err
    if not isinstance(raw_servers, list):
        raise ConfigError("SERVERS_JSON must be a JSON list")

    return Settings(
        servers=[parse_server(raw, base_dir) for raw in raw_servers],
        interval=data["INTERVAL"],
        ssh_backend=data["SSH_BACKEND"],
        idle_ttl=data["POOL_IDLE_TTL"],
        sweep_interval=data["POOL_SWEEP_INTERVAL"],
        connect_timeout=data["CONNECT_TIMEOUT"],
        stats_timeout=data["STATS_TIMEOUT"],
        mqtt_host=data.get("MQTT_HOST"),
        mqtt_port=data["MQTT_PORT"],
        mqtt_user=data.get("MQTT_USER"),
        mqtt_pass=data.get("MQTT_PASS"),
    )
