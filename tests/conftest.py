"""Shared fixtures: raw /proc samples and an in-memory SSH transport."""

import asyncio
from typing import Callable, List, Optional, Union

import pytest

from vserver_telemetry.errors import SessionConnectError
from vserver_telemetry.models import Credentials
from vserver_telemetry.sampling import SENTINEL
from vserver_telemetry.transport import ChannelBrokenError

NET_DEV_HEADER = (
    "Inter-|   Receive                                                |  Transmit\n"
    " face |bytes    packets errs drop fifo frame compressed multicast"
    "|bytes    packets errs drop fifo colls carrier compressed\n"
)


def net_dev(rows: dict) -> str:
    """Render /proc/net/dev with ``{name: (rx_bytes, tx_bytes)}`` rows."""
    lines = [NET_DEV_HEADER.rstrip("\n")]
    for name, (rx, tx) in rows.items():
        lines.append(f"{name:>6}: {rx:>9} 100 0 0 0 0 0 0 {tx:>9} 90 0 0 0 0 0 0")
    return "\n".join(lines) + "\n"


def proc_stat(user: int, system: int, idle: int) -> str:
    return (
        f"cpu  {user} 0 {system} {idle} 0 0 0 0 0 0\n"
        f"cpu0 {user} 0 {system} {idle} 0 0 0 0 0 0\n"
        "intr 123456 0 0\n"
        "ctxt 98765\n"
        "btime 1700000000\n"
    )


MEMINFO = (
    "MemTotal:        8000000 kB\n"
    "MemFree:         1000000 kB\n"
    "MemAvailable:    2000000 kB\n"
    "Buffers:          100000 kB\n"
    "Cached:           700000 kB\n"
    "SwapTotal:             0 kB\n"
    "HugePages_Total:       0\n"
)

INTERFACES_1 = {"lo": (500000, 500000), "eth0": (1000000, 2000000), "wlan0": (30000, 40000)}
INTERFACES_2 = {"lo": (900000, 900000), "eth0": (1002048, 2000500), "wlan0": (31000, 41000)}

RAW_SAMPLE_1 = net_dev(INTERFACES_1) + proc_stat(100, 100, 800) + MEMINFO + "4\n"
RAW_SAMPLE_2 = net_dev(INTERFACES_2) + proc_stat(120, 100, 880)
COMBINED_OUTPUT = RAW_SAMPLE_1 + SENTINEL + "\n" + RAW_SAMPLE_2


class FakeHandle:
    """Stands in for one SSH connection; ``buffer`` is its output stream."""

    def __init__(self, ident: int, host: str) -> None:
        self.ident = ident
        self.host = host
        self.closed = False
        self.buffer = ""


class FakeTransport:
    """In-memory transport with a slow, chunked output channel."""

    def __init__(self) -> None:
        self.output: Union[str, Callable[[str, int], str]] = COMBINED_OUTPUT
        self.delay = 0.0
        self.chunks = 5
        self.connect_delay = 0.0
        self.close_delay = 0.0
        self.fail_hosts: set = set()
        self.break_runs = 0
        self.connect_attempts = 0
        self.handles: List[FakeHandle] = []
        self.closed: List[FakeHandle] = []
        self.commands: List[str] = []
        self.calls = 0
        self.running = 0
        self.max_running = 0
        self.in_use: List[FakeHandle] = []
        self.closed_while_running: List[FakeHandle] = []

    @property
    def connects(self) -> int:
        return len(self.handles)

    async def connect(self, credentials: Credentials) -> FakeHandle:
        self.connect_attempts += 1
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if credentials.host in self.fail_hosts:
            raise SessionConnectError(f"connection refused by {credentials.host}")
        handle = FakeHandle(len(self.handles) + 1, credentials.host)
        self.handles.append(handle)
        return handle

    async def run(self, handle: FakeHandle, command: str) -> str:
        if handle.closed:
            raise ChannelBrokenError("channel closed")
        self.commands.append(command)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        self.in_use.append(handle)
        try:
            if self.break_runs > 0:
                self.break_runs -= 1
                handle.closed = True
                raise ChannelBrokenError("EOF")
            self.calls += 1
            output = self.output(command, self.calls) if callable(self.output) else self.output
            handle.buffer = ""
            size = max(1, -(-len(output) // self.chunks))
            for start in range(0, len(output), size):
                handle.buffer += output[start : start + size]
                await asyncio.sleep(self.delay)
            return handle.buffer
        finally:
            self.running -= 1
            self.in_use.remove(handle)

    def is_alive(self, handle: FakeHandle) -> bool:
        return not handle.closed

    async def close(self, handle: FakeHandle) -> None:
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        if handle in self.in_use:
            self.closed_while_running.append(handle)
        handle.closed = True
        self.closed.append(handle)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_credentials(host: str = "10.0.0.5", key: str = "KEY-A", passphrase: Optional[str] = None) -> Credentials:
    return Credentials(host=host, username="root", private_key=key, port=22, passphrase=passphrase)


@pytest.fixture
def credentials() -> Credentials:
    return make_credentials()
