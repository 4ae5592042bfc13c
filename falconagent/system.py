"""Kernel, memory, load average and uptime readings from /proc."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from falconagent.model import MetricValue, gauge_value

log = logging.getLogger(__name__)

MEMINFO_PATH = "/proc/meminfo"
LOADAVG_PATH = "/proc/loadavg"
FILE_MAX_PATH = "/proc/sys/fs/file-max"
PID_MAX_PATH = "/proc/sys/kernel/pid_max"
FILE_NR_PATH = "/proc/sys/fs/file-nr"
UPTIME_PATH = "/proc/uptime"
CPUINFO_PATH = "/proc/cpuinfo"

_MEMINFO_KEYS = {
    "Buffers": "buffers",
    "Cached": "cached",
    "MemTotal": "mem_total",
    "MemFree": "mem_free",
    "SwapTotal": "swap_total",
    "SwapFree": "swap_free",
}


def _read(path: str) -> str:
    with open(path, encoding="utf-8") as handle:
        return handle.read()


@dataclass(frozen=True)
class MemInfo:
    """Memory figures in bytes."""

    buffers: int = 0
    cached: int = 0
    mem_total: int = 0
    mem_free: int = 0
    swap_total: int = 0
    swap_used: int = 0
    swap_free: int = 0


def parse_meminfo(text: str) -> MemInfo:
    """Parse /proc/meminfo contents; kB values are converted to bytes."""
    values: dict[str, int] = {}
    for line in text.splitlines():
        key, sep, rest = line.partition(":")
        if not sep:
            continue
        name = _MEMINFO_KEYS.get(key.strip())
        if name is None:
            continue
        parts = rest.split()
        if not parts:
            raise ValueError(f"no value for {key.strip()} in meminfo")
        values[name] = int(parts[0]) * 1024
    swap_total = values.get("swap_total", 0)
    swap_free = values.get("swap_free", 0)
    return MemInfo(swap_used=swap_total - swap_free, **values)


def read_meminfo() -> MemInfo:
    """Read and parse /proc/meminfo."""
    return parse_meminfo(_read(MEMINFO_PATH))


def mem_metrics() -> list[MetricValue]:
    """Memory and swap totals, usage and percentages."""
    try:
        m = read_meminfo()
    except (OSError, ValueError) as exc:
        log.error("%s", exc)
        return []
    mem_free = m.mem_free + m.buffers + m.cached
    mem_used = m.mem_total - mem_free
    pmem_free = pmem_used = 0.0
    if m.mem_total != 0:
        pmem_free = mem_free * 100.0 / m.mem_total
        pmem_used = mem_used * 100.0 / m.mem_total
    pswap_free = pswap_used = 0.0
    if m.swap_total != 0:
        pswap_free = m.swap_free * 100.0 / m.swap_total
        pswap_used = m.swap_used * 100.0 / m.swap_total
    return [
        gauge_value("mem.memtotal", m.mem_total),
        gauge_value("mem.memused", mem_used),
        gauge_value("mem.memfree", mem_free),
        gauge_value("mem.swaptotal", m.swap_total),
        gauge_value("mem.swapused", m.swap_used),
        gauge_value("mem.swapfree", m.swap_free),
        gauge_value("mem.memfree.percent", pmem_free),
        gauge_value("mem.memused.percent", pmem_used),
        gauge_value("mem.swapfree.percent", pswap_free),
        gauge_value("mem.swapused.percent", pswap_used),
    ]


@dataclass(frozen=True)
class LoadAvg:
    avg1min: float
    avg5min: float
    avg15min: float


def parse_loadavg(text: str) -> LoadAvg:
    """Parse /proc/loadavg contents."""
    parts = text.split()
    if len(parts) < 3:
        raise ValueError("loadavg needs at least three fields")
    return LoadAvg(float(parts[0]), float(parts[1]), float(parts[2]))


def read_loadavg() -> LoadAvg:
    """Read and parse /proc/loadavg."""
    return parse_loadavg(_read(LOADAVG_PATH))


def load_avg_metrics() -> list[MetricValue]:
    """The 1, 5 and 15 minute load averages."""
    try:
        load = read_loadavg()
    except (OSError, ValueError) as exc:
        log.error("%s", exc)
        return []
    return [
        gauge_value("load.1min", load.avg1min),
        gauge_value("load.5min", load.avg5min),
        gauge_value("load.15min", load.avg15min),
    ]


def _first_int(path: str) -> int:
    parts = _read(path).split()
    if not parts:
        raise ValueError(f"{path} is empty")
    return int(parts[0])


def kernel_max_files() -> int:
    """System-wide limit on open files."""
    return _first_int(FILE_MAX_PATH)


def kernel_max_proc() -> int:
    """Largest process id the kernel hands out."""
    return _first_int(PID_MAX_PATH)


def kernel_allocate_files() -> int:
    """Number of file handles currently allocated."""
    return _first_int(FILE_NR_PATH)


def kernel_metrics() -> list[MetricValue]:
    """File and process limits; stops at the first value that cannot be read."""
    result: list[MetricValue] = []
    try:
        max_files = kernel_max_files()
        result.append(gauge_value("kernel.maxfiles", max_files))
        result.append(gauge_value("kernel.maxproc", kernel_max_proc()))
        allocated = kernel_allocate_files()
    except (OSError, ValueError) as exc:
        log.error("%s", exc)
        return result
    result.append(gauge_value("kernel.files.allocated", allocated))
    result.append(gauge_value("kernel.files.left", max_files - allocated))
    return result


def parse_uptime(text: str) -> tuple[int, int, int]:
    """Split the uptime in /proc/uptime into days, hours and minutes."""
    parts = text.split()
    if not parts:
        raise ValueError("uptime is empty")
    secs = int(float(parts[0]))
    days, rest = divmod(secs, 86400)
    hours, rest = divmod(rest, 3600)
    return days, hours, rest // 60


def system_uptime() -> tuple[int, int, int]:
    """Days, hours and minutes since boot."""
    return parse_uptime(_read(UPTIME_PATH))


def cpu_mhz() -> list[str]:
    """The "cpu MHz" value of every processor in /proc/cpuinfo."""
    result = []
    for line in _read(CPUINFO_PATH).splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip() == "cpu MHz":
            result.append(value.strip())
    return result