"""Turn two parsed samples into CPU, RAM and network stats."""
from __future__ import annotations

from .models import CpuStats, NetworkStats, ParsedSample, RamStats, StatsResult
from .sampling import SAMPLE_INTERVAL

_KIB = 1024


def format_rate(bytes_per_sec: float) -> str:
    """Render a byte rate with a human readable unit."""
    if bytes_per_sec < _KIB:
        return f"{int(bytes_per_sec)} B/s"
    if bytes_per_sec < _KIB ** 2:
        return f"{bytes_per_sec / _KIB:.1f} KB/s"
    if bytes_per_sec < _KIB ** 3:
        return f"{bytes_per_sec / _KIB ** 2:.1f} MB/s"
    return f"{bytes_per_sec / _KIB ** 3:.2f} GB/s"


def cpu_usage(first: ParsedSample, second: ParsedSample) -> float:
    """Return CPU usage in percent between two samples."""
    if not first.cpu_total or not second.cpu_total:
        return 0.0
    total_delta = max(0, second.cpu_total - first.cpu_total)
    work_delta = max(0, second.cpu_work - first.cpu_work)
    if total_delta <= 0:
        return 0.0
    return round(min(100.0, work_delta / total_delta * 100), 1)


def ram_usage(sample: ParsedSample) -> RamStats:
    total_kb = sample.mem_total_kb
    used_kb = max(0, total_kb - sample.mem_available_kb)
    percent = round(used_kb / total_kb * 100, 1) if total_kb > 0 else 0.0
    return RamStats(
        used_gb=round(used_kb / _KIB ** 2, 2),
        total_gb=round(total_kb / _KIB ** 2, 2),
        percent=percent,
    )


def network_rates(first: ParsedSample, second: ParsedSample) -> NetworkStats:
    # Counters can go backwards on wrap-around or an interface reset.
    rx = max(0, second.rx_bytes - first.rx_bytes) // SAMPLE_INTERVAL
    tx = max(0, second.tx_bytes - first.tx_bytes) // SAMPLE_INTERVAL
    return NetworkStats(
        rx_rate=format_rate(rx),
        tx_rate=format_rate(tx),
        rx_bytes_per_sec=rx,
        tx_bytes_per_sec=tx,
    )


def compute(first: ParsedSample, second: ParsedSample) -> StatsResult:
    """Combine two samples taken one sampling interval apart."""
    return StatsResult(
        cpu=CpuStats(usage_percent=cpu_usage(first, second), cores=first.cores),
        ram=ram_usage(first),
        network=network_rates(first, second),
    )
