"""Disk I/O statistics from /proc/diskstats, with iostat-style rates."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

from falconagent.model import MetricValue, counter_value, gauge_value

log = logging.getLogger(__name__)

DISKSTATS_PATH = "/proc/diskstats"

_COUNTER_FIELDS = (
    "read_requests",
    "read_merged",
    "read_sectors",
    "msec_read",
    "write_requests",
    "write_merged",
    "write_sectors",
    "msec_write",
    "ios_in_progress",
    "msec_total",
    "msec_weighted_total",
)


@dataclass(frozen=True)
class DiskStats:
    """One line of /proc/diskstats; ts is the sampling time in seconds."""

    major: int
    minor: int
    device: str
    read_requests: int = 0
    read_merged: int = 0
    read_sectors: int = 0
    msec_read: int = 0
    write_requests: int = 0
    write_merged: int = 0
    write_sectors: int = 0
    msec_write: int = 0
    ios_in_progress: int = 0
    msec_total: int = 0
    msec_weighted_total: int = 0
    ts: float = 0.0


def parse_diskstats(text: str, ts: float) -> list[DiskStats]:
    """Parse /proc/diskstats contents; lines with too few fields are skipped."""
    result = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 3 + len(_COUNTER_FIELDS):
            continue
        counters = dict(zip(_COUNTER_FIELDS, (int(v) for v in parts[3:])))
        result.append(
            DiskStats(major=int(parts[0]), minor=int(parts[1]), device=parts[2], ts=ts, **counters)
        )
    return result


def read_diskstats(path: str = DISKSTATS_PATH) -> list[DiskStats]:
    """Read and parse a diskstats file, stamped with the current time."""
    with open(path, encoding="utf-8") as handle:
        text = handle.read()
    return parse_diskstats(text, time.time())


def should_handle_device(device: str) -> bool:
    """Tell whether a device is a whole disk worth reporting."""
    normal = len(device) == 3 and device.startswith(("sd", "vd"))
    aws = len(device) >= 4 and device.startswith("xvd")
    flash = len(device) >= 4 and device.startswith(("fio", "nvme"))
    return normal or aws or flash


@dataclass(frozen=True)
class _Rates:
    rio: int
    wio: int
    rsec: int
    wsec: int
    use: int
    avgrq_sz: float
    await_: float
    svctm: float


class DiskHistory:
    """The two latest samples of every device."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._samples: dict[str, tuple[DiskStats, DiskStats | None]] = {}

    def push(self, stats: list[DiskStats]) -> None:
        """Record a new sample for each device, keeping the previous one."""
        with self._lock:
            for ds in stats:
                previous = self._samples.get(ds.device)
                self._samples[ds.device] = (ds, previous[0] if previous else None)

    def delta(self, device: str, field: str) -> int:
        """Change of a counter between the two latest samples; "ts" is in ms."""
        if field != "ts" and field not in _COUNTER_FIELDS:
            raise ValueError(f"unknown disk field {field!r}")
        with self._lock:
            pair = self._samples.get(device)
        if pair is None or pair[1] is None:
            return 0
        newest, previous = pair
        if field == "ts":
            return int((newest.ts - previous.ts) * 1000)
        return getattr(newest, field) - getattr(previous, field)

    def _devices(self) -> list[str]:
        with self._lock:
            return [device for device in self._samples if should_handle_device(device)]

    def _rates(self, device: str) -> _Rates:
        rio = self.delta(device, "read_requests")
        wio = self.delta(device, "write_requests")
        rsec = self.delta(device, "read_sectors")
        wsec = self.delta(device, "write_sectors")
        ruse = self.delta(device, "msec_read")
        wuse = self.delta(device, "msec_write")
        use = self.delta(device, "msec_total")
        n_io = rio + wio
        avgrq_sz = await_ = svctm = 0.0
        if n_io != 0:
            avgrq_sz = (rsec + wsec) / n_io
            await_ = (ruse + wuse) / n_io
            svctm = use / n_io
        return _Rates(rio, wio, rsec, wsec, use, avgrq_sz, await_, svctm)

    def io_stats_metrics(self) -> list[MetricValue]:
        """Per-device throughput, queue and utilisation gauges."""
        result = []
        for device in self._devices():
            tags = "device=" + device
            r = self._rates(device)
            duration = self.delta(device, "ts")
            if duration:
                util = min(r.use * 100.0 / duration, 100.0)
            else:
                util = 100.0 if r.use > 0 else 0.0
            avgqu_sz = self.delta(device, "msec_weighted_total") / 1000.0
            result.extend(
                [
                    gauge_value("disk.io.read_bytes", r.rsec * 512.0, tags),
                    gauge_value("disk.io.write_bytes", r.wsec * 512.0, tags),
                    gauge_value("disk.io.avgrq_sz", r.avgrq_sz, tags),
                    gauge_value("disk.io.avgqu-sz", avgqu_sz, tags),
                    gauge_value("disk.io.await", r.await_, tags),
                    gauge_value("disk.io.svctm", r.svctm, tags),
                    gauge_value("disk.io.util", util, tags),
                ]
            )
        return result

    def io_stats_for_page(self) -> list[list[str]]:
        """Per-device rows formatted like iostat -x."""
        rows = []
        for device in self._devices():
            r = self._rates(device)
            rows.append(
                [
                    device,
                    str(self.delta(device, "read_merged")),
                    str(self.delta(device, "write_merged")),
                    str(r.rio),
                    str(r.wio),
                    f"{r.rsec / 2.0:.2f}",
                    f"{r.wsec / 2.0:.2f}",
                    f"{r.avgrq_sz:.2f}",
                    f"{self.delta(device, 'msec_weighted_total') / 1000.0:.2f}",
                    f"{r.await_:.2f}",
                    f"{r.svctm:.2f}",
                    f"{r.use / 10.0:.2f}%",
                ]
            )
        return rows


HISTORY = DiskHistory()


def update_disk_stats() -> None:
    """Read /proc/diskstats and record it; raise OSError or ValueError on failure."""
    HISTORY.push(read_diskstats())


def disk_io_metrics() -> list[MetricValue]:
    """Raw per-device I/O counters read straight from /proc/diskstats."""
    try:
        stats = read_diskstats()
    except (OSError, ValueError) as exc:
        log.error("%s", exc)
        return []
    result = []
    for ds in stats:
        if not should_handle_device(ds.device):
            continue
        tag = "device=" + ds.device
        result.extend(
            counter_value(f"disk.io.{name}", getattr(ds, name), tag) for name in _COUNTER_FIELDS
        )
    return result


def io_stats_metrics() -> list[MetricValue]:
    """Rates computed from the recorded disk history."""
    return HISTORY.io_stats_metrics()


def io_stats_for_page() -> list[list[str]]:
    """iostat-style rows from the recorded disk history."""
    return HISTORY.io_stats_for_page()