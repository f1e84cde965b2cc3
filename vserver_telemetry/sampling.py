"""Two-snapshot sampling command and output splitting."""
from __future__ import annotations

import logging
from typing import Optional, Tuple

from .errors import ProtocolError
from .models import Credentials
from .pool import ConnectionPool

_LOGGER = logging.getLogger(__name__)

SENTINEL = "===SAMPLE_2==="
# Also the denominator of the network rates: the elapsed time between the
# two snapshots is assumed, never measured.
SAMPLE_INTERVAL = 1

# Counters are read twice inside one command so both snapshots come from the
# same connection with a single round trip.
REMOTE_COMMAND = "; ".join(
    [
        "export LC_ALL=C",
        "cat /proc/net/dev /proc/stat /proc/meminfo",
        "grep -c ^processor /proc/cpuinfo",
        f"sleep {SAMPLE_INTERVAL}",
        f"echo {SENTINEL}",
        "cat /proc/net/dev /proc/stat",
    ]
)


def split_samples(output: str) -> Tuple[str, str]:
    """Split combined command output into the two raw samples."""
    lines = output.splitlines()
    for index, line in enumerate(lines):
        if line.strip() == SENTINEL:
            return "\n".join(lines[:index]), "\n".join(lines[index + 1 :])
    _LOGGER.debug("Sample output without sentinel: %s", output[:200])
    raise ProtocolError("Remote output is missing the second sample")


async def sample(
    pool: ConnectionPool,
    credentials: Credentials,
    timeout: Optional[float] = None,
) -> Tuple[str, str]:
    """Run the sampling command for *credentials* and return both samples."""
    output = await pool.execute(credentials, REMOTE_COMMAND, timeout=timeout)
    return split_samples(output)
