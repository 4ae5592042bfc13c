"""Read-only information endpoints: CPU, disks, memory, kernel and system."""

from __future__ import annotations

import os
import subprocess
import time
from typing import Any, Callable

from falconagent import cpustat
from falconagent.config import hostname
from falconagent.dfstat import DeviceUsage, build_device_usage, list_mount_points
from falconagent.diskstats import io_stats_for_page
from falconagent.system import (
    LoadAvg,
    MemInfo,
    cpu_mhz,
    kernel_max_files,
    kernel_max_proc,
    read_loadavg,
    read_meminfo,
    system_uptime,
)

_UNITS = ("B", "K", "M", "G", "T", "P")
_CPU_ORDER = ("idle", "busy", "user", "nice", "system", "iowait", "irq", "softirq", "steal", "guest")
_MB = 1024 * 1024


class InfoError(Exception):
    """The requested information is not available yet."""


INFO_ERRORS = (InfoError, OSError, ValueError, subprocess.CalledProcessError)


def readable_size(value: float) -> str:
    """Format a byte count with one decimal and a B, K, M, G, T or P suffix."""
    limit = 1024.0
    divisor = 1.0
    for unit in _UNITS:
        if value < limit:
            return f"{value / divisor:.1f}{unit}"
        limit *= 1024
        divisor *= 1024
    return "TooLarge"


def _cpu_usage() -> dict[str, float]:
    history = cpustat.HISTORY
    if not history.prepared():
        raise InfoError("not prepared")
    return history.usage()


def cpu_usage_page() -> list[list[str]]:
    """CPU percentages as one row of formatted strings."""
    usage = _cpu_usage()
    return [[f"{usage[name]:.1f}%" for name in _CPU_ORDER]]


def cpu_usage_proc() -> dict[str, float]:
    """CPU percentages by state."""
    usage = _cpu_usage()
    return {name: usage[name] for name in _CPU_ORDER}


def _df_row(du: DeviceUsage) -> list[str]:
    return [
        du.fs_spec,
        readable_size(du.blocks_all),
        readable_size(du.blocks_used),
        readable_size(du.blocks_free),
        f"{du.blocks_used_percent:.1f}%",
        du.fs_file,
        readable_size(du.inodes_all),
        readable_size(du.inodes_used),
        readable_size(du.inodes_free),
        f"{du.inodes_used_percent:.1f}%",
        du.fs_vfstype,
    ]


def df_page() -> list[list[str]]:
    """One row per mount point that can be measured."""
    rows = []
    for fs_spec, fs_file, fs_vfstype in list_mount_points():
        try:
            du = build_device_usage(fs_spec, fs_file, fs_vfstype)
        except OSError:
            continue
        rows.append(_df_row(du))
    return rows


def diskio_page() -> list[list[str]]:
    """Disk I/O statistics rows, as iostat shows them."""
    return io_stats_for_page()


def _memory_usage(mem: MemInfo) -> tuple[int, int, int]:
    free = mem.mem_free + mem.buffers + mem.cached
    return mem.mem_total, mem.mem_total - free, free


def _memory_page_row(mem: MemInfo) -> list[int]:
    return [value // _MB for value in _memory_usage(mem)]


def memory_page() -> list[int]:
    """Total, used and free memory in MiB."""
    return _memory_page_row(read_meminfo())


def memory_proc() -> dict[str, int]:
    """Total, used and free memory in bytes."""
    total, used, free = _memory_usage(read_meminfo())
    return {"total": total, "free": free, "used": used}


def _uptime_text(days: int, hours: int, mins: int) -> str:
    return f"{days} days {hours} hours {mins} minutes"


def uptime_page() -> str:
    """Uptime as readable text."""
    return _uptime_text(*system_uptime())


def uptime_proc() -> dict[str, int]:
    """Uptime split into days, hours and minutes."""
    days, hours, mins = system_uptime()
    return {"days": days, "hours": hours, "mins": mins}


def _loadavg_rows(load: LoadAvg, cpu_num: int) -> list[list[float | int]]:
    return [
        [avg, int(avg * 100.0 / cpu_num)]
        for avg in (load.avg1min, load.avg5min, load.avg15min)
    ]


def loadavg_page(cpu_num: int | None = None) -> list[list[float | int]]:
    """Load averages, each with its percentage of the CPU count."""
    if cpu_num is None:
        cpu_num = os.cpu_count() or 1
    if cpu_num <= 0:
        raise ValueError("cpu count must be positive")
    return _loadavg_rows(read_loadavg(), cpu_num)


def _loadavg_dict(load: LoadAvg) -> dict[str, float]:
    return {"Avg1min": load.avg1min, "Avg5min": load.avg5min, "Avg15min": load.avg15min}


def loadavg_proc() -> dict[str, float]:
    """The three load averages."""
    return _loadavg_dict(read_loadavg())


def kernel_version() -> str:
    """The running kernel release, from "uname -r"."""
    result = subprocess.run(
        ["uname", "-r"], stdout=subprocess.PIPE, stderr=subprocess.DEVNULL, text=True, check=True
    )
    return result.stdout.strip()


def _cpu_num() -> int:
    return os.cpu_count() or 1


def _system_date() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S")


def info_routes() -> dict[str, Callable[[], Any]]:
    """Map each information path to the function that produces its data."""
    return {
        "/proc/cpu/num": _cpu_num,
        "/proc/cpu/mhz": cpu_mhz,
        "/page/cpu/usage": cpu_usage_page,
        "/proc/cpu/usage": cpu_usage_proc,
        "/page/df": df_page,
        "/page/diskio": diskio_page,
        "/proc/kernel/hostname": hostname,
        "/proc/kernel/maxproc": kernel_max_proc,
        "/proc/kernel/maxfiles": kernel_max_files,
        "/proc/kernel/version": kernel_version,
        "/page/memory": memory_page,
        "/proc/memory": memory_proc,
        "/system/date": _system_date,
        "/page/system/uptime": uptime_page,
        "/proc/system/uptime": uptime_proc,
        "/page/system/loadavg": loadavg_page,
        "/proc/system/loadavg": loadavg_proc,
    }