"""Exceptions raised by the VServer telemetry core."""
from __future__ import annotations


class TelemetryError(Exception):
    """Base class for all telemetry errors."""


class SessionConnectError(TelemetryError, ConnectionError):
    """Authentication or network failure while establishing a session."""


class CommandTimeoutError(TelemetryError, TimeoutError):
    """A remote command did not finish inside its execution window."""


class ProtocolError(TelemetryError):
    """The remote output is truncated or malformed."""


class ConfigError(TelemetryError, ValueError):
    """Invalid collector configuration."""
