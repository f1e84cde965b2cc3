"""Remote Linux telemetry over pooled SSH sessions."""
from __future__ import annotations

from .errors import (
    CommandTimeoutError,
    ConfigError,
    ProtocolError,
    SessionConnectError,
    TelemetryError,
)
from .models import Credentials, SessionKey, StatsResult
from .pool import ConnectionPool
from .service import StatsGatherer

__all__ = [
    "CommandTimeoutError",
    "ConfigError",
    "ConnectionPool",
    "Credentials",
    "ProtocolError",
    "SessionConnectError",
    "SessionKey",
    "StatsGatherer",
    "StatsResult",
    "TelemetryError",
]
