"""Data model for the VServer telemetry core."""
from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Credentials:
    """Everything needed to open an SSH session to one host."""

    host: str
    username: str
    private_key: str = field(repr=False)
    port: int = 22
    passphrase: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class SessionKey:
    """Cache key of a pooled session.

    The key material only contributes a fingerprint so that two accounts on
    the same host with different keys never share a channel.
    """

    host: str
    port: int
    username: str
    fingerprint: str

    @classmethod
    def from_credentials(cls, credentials: Credentials) -> "SessionKey":
        digest = hashlib.sha256(credentials.private_key.encode("utf-8")).hexdigest()
        return cls(
            host=credentials.host,
            port=int(credentials.port),
            username=credentials.username,
            fingerprint=digest[:16],
        )

    def __str__(self) -> str:
        return f"{self.username}@{self.host}:{self.port}#{self.fingerprint[:8]}"


@dataclass(frozen=True)
class CpuTimes:
    total: int = 0
    work: int = 0


@dataclass(frozen=True)
class NetCounters:
    rx: int = 0
    tx: int = 0


@dataclass(frozen=True)
class ParsedSample:
    """Counters extracted from one raw sample.

    Memory and core count are only read in the first sample; the second
    sample leaves them at their defaults.
    """

    cpu_total: int = 0
    cpu_work: int = 0
    mem_total_kb: int = 0
    mem_available_kb: int = 0
    cores: int = 1
    rx_bytes: int = 0
    tx_bytes: int = 0


@dataclass(frozen=True)
class CpuStats:
    usage_percent: float
    cores: int


@dataclass(frozen=True)
class RamStats:
    used_gb: float
    total_gb: float
    percent: float


@dataclass(frozen=True)
class NetworkStats:
    rx_rate: str
    tx_rate: str
    rx_bytes_per_sec: int = 0
    tx_bytes_per_sec: int = 0


@dataclass(frozen=True)
class StatsResult:
    cpu: CpuStats
    ram: RamStats
    network: NetworkStats

    def as_dict(self) -> Dict[str, Any]:
        """Return the result as plain JSON-serialisable data."""
        return asdict(self)
