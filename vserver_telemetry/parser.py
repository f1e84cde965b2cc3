"""Parsers for raw ``/proc`` samples.

Every parser degrades to a zero (or otherwise neutral) value when its field
is missing, so a partially readable sample still yields partial stats.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Tuple

from .models import CpuTimes, NetCounters, ParsedSample

_LOGGER = logging.getLogger(__name__)

PHYSICAL_INTERFACE_PREFIXES = ("eth", "ens", "enp", "eno", "wlan", "wlp")
LOOPBACK_INTERFACE = "lo"

# user nice system idle iowait irq softirq steal
_CPU_FIELDS = 8
_IDLE_INDEX = 3
_NET_TX_INDEX = 8


def _to_int(value: Any) -> int:
    """Return *value* as int or 0 when conversion fails."""

    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_cpu_aggregate(text: str) -> CpuTimes:
    """Return total and work jiffies from the aggregate ``cpu`` line."""
    for line in text.splitlines():
        if not line.startswith("cpu "):
            continue
        values = [_to_int(v) for v in line.split()[1 : _CPU_FIELDS + 1]]
        values += [0] * (_CPU_FIELDS - len(values))
        total = sum(values)
        return CpuTimes(total=total, work=total - values[_IDLE_INDEX])
    return CpuTimes()


def _memory_fields(text: str) -> Dict[str, int]:
    fields: Dict[str, int] = {}
    for line in text.splitlines():
        label, sep, rest = line.partition(":")
        if not sep or " " in label.strip():
            continue
        parts = rest.split()
        if parts and parts[-1] == "kB":
            fields[label.strip()] = _to_int(parts[0])
    return fields


def parse_memory_field(text: str, key: str) -> int:
    """Return the kB value following *key* (e.g. ``MemTotal:``), or 0."""
    return _memory_fields(text).get(key.rstrip(":"), 0)


def _interface_rows(text: str) -> List[Tuple[str, List[str]]]:
    rows: List[Tuple[str, List[str]]] = []
    for line in text.splitlines():
        # Both /proc/net/dev header lines contain "|".
        if "|" in line:
            continue
        name, sep, rest = line.partition(":")
        name = name.strip()
        fields = rest.split()
        if not sep or not name or " " in name or name == LOOPBACK_INTERFACE:
            continue
        if len(fields) <= _NET_TX_INDEX or not all(f.isdigit() for f in fields[: _NET_TX_INDEX + 1]):
            continue
        rows.append((name, fields))
    return rows


def select_primary_interface(text: str) -> NetCounters:
    """Return RX/TX byte counters of the most likely uplink interface."""
    rows = _interface_rows(text)
    if not rows:
        return NetCounters()
    name, fields = next(
        (row for row in rows if row[0].startswith(PHYSICAL_INTERFACE_PREFIXES)),
        rows[0],
    )
    _LOGGER.debug("Using interface %s for network counters", name)
    return NetCounters(rx=_to_int(fields[0]), tx=_to_int(fields[_NET_TX_INDEX]))


def parse_core_count(text: str) -> int:
    """Return the number of processors, 1 when unknown.

    The sampling command prints ``grep -c`` output as the last line of the
    first sample; raw ``processor`` entries are counted as a fallback.
    """
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if lines and lines[-1].isdigit():
        return int(lines[-1]) or 1
    return sum(1 for line in lines if line.startswith("processor")) or 1


def parse_sample(text: str, first: bool = True) -> ParsedSample:
    """Build a :class:`ParsedSample` from one raw sample.

    Memory and core count are only taken from the first sample.
    """
    cpu = parse_cpu_aggregate(text)
    net = select_primary_interface(text)
    if not first:
        return ParsedSample(
            cpu_total=cpu.total,
            cpu_work=cpu.work,
            rx_bytes=net.rx,
            tx_bytes=net.tx,
        )

    mem = _memory_fields(text)
    mem_available = mem.get("MemAvailable")
    if mem_available is None:
        # Kernels before 3.14 have no MemAvailable.
        mem_available = mem.get("MemFree", 0) + mem.get("Buffers", 0) + mem.get("Cached", 0)
    return ParsedSample(
        cpu_total=cpu.total,
        cpu_work=cpu.work,
        mem_total_kb=mem.get("MemTotal", 0),
        mem_available_kb=mem_available,
        cores=parse_core_count(text),
        rx_bytes=net.rx,
        tx_bytes=net.tx,
    )
