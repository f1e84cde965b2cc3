"""Entry point of the telemetry core: gather stats for one host."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .models import Credentials, StatsResult
from .parser import parse_sample
from .pool import ConnectionPool
from .sampling import sample
from .stats import compute

_LOGGER = logging.getLogger(__name__)

# Connect, the remote command and its one second sleep.
DEFAULT_STATS_TIMEOUT = 15.0


class StatsGatherer:
    """Gather :class:`StatsResult` values through a shared connection pool.

    The gatherer owns its pool unless one is passed in; either way
    :meth:`shutdown` closes every pooled session.
    """

    def __init__(self, pool: Optional[ConnectionPool] = None, timeout: float = DEFAULT_STATS_TIMEOUT) -> None:
        self._pool = pool if pool is not None else ConnectionPool()
        self._timeout = timeout

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    async def start(self) -> None:
        await self._pool.start()

    async def gather_stats(self, credentials: Credentials) -> StatsResult:
        """Sample *credentials*' host twice and compute its stats.

        Raises ``SessionConnectError``, ``CommandTimeoutError`` or
        ``ProtocolError``; a failed gather is never retried here.
        """
        raw_first, raw_second = await sample(self._pool, credentials, timeout=self._timeout)
        result = compute(parse_sample(raw_first, first=True), parse_sample(raw_second, first=False))
        _LOGGER.debug("Stats for %s: %s", credentials.host, result)
        return result

    def pool_stats(self) -> Dict[str, Any]:
        return self._pool.stats()

    async def shutdown(self) -> None:
        await self._pool.shutdown()
