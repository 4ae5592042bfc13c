"""CPU usage from /proc/stat, computed over the two latest samples."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, fields

from falconagent.model import MetricValue, counter_value, gauge_value

PROC_STAT_PATH = "/proc/stat"
HISTORY_COUNT = 2

_CPU_FIELDS = ("user", "nice", "system", "idle", "iowait", "irq", "softirq", "steal", "guest")


@dataclass(frozen=True)
class CpuTimes:
    """Cumulative CPU time counters of the aggregate "cpu" line."""

    user: int = 0
    nice: int = 0
    system: int = 0
    idle: int = 0
    iowait: int = 0
    irq: int = 0
    softirq: int = 0
    steal: int = 0
    guest: int = 0
    total: int = 0


@dataclass(frozen=True)
class ProcStat:
    """One sample of /proc/stat."""

    cpu: CpuTimes
    ctxt: int = 0


def parse_proc_stat(text: str) -> ProcStat:
    """Parse the contents of /proc/stat; raise ValueError if it has no cpu line."""
    cpu: CpuTimes | None = None
    ctxt = 0
    for line in text.splitlines():
        parts = line.split()
        if not parts:
            continue
        if parts[0] == "cpu":
            values = [int(v) for v in parts[1 : 1 + len(_CPU_FIELDS)]]
            counters = dict(zip(_CPU_FIELDS, values))
            cpu = CpuTimes(**counters, total=sum(values))
        elif parts[0] == "ctxt" and len(parts) > 1:
            ctxt = int(parts[1])
    if cpu is None:
        raise ValueError("no cpu line in proc stat")
    return ProcStat(cpu=cpu, ctxt=ctxt)


def read_proc_stat(path: str = PROC_STAT_PATH) -> ProcStat:
    """Read and parse a /proc/stat file."""
    with open(path, encoding="utf-8") as handle:
        return parse_proc_stat(handle.read())


class CpuHistory:
    """The latest CPU samples, newest first."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._samples: deque[ProcStat] = deque(maxlen=HISTORY_COUNT)

    def push(self, stat: ProcStat) -> None:
        """Add a new sample, dropping the oldest."""
        with self._lock:
            self._samples.appendleft(stat)

    def prepared(self) -> bool:
        """Tell whether two samples are available."""
        with self._lock:
            return len(self._samples) >= HISTORY_COUNT

    def _percent(self, field: str) -> float:
        if field not in _CPU_FIELDS:
            raise ValueError(f"unknown cpu field {field!r}")
        if len(self._samples) < HISTORY_COUNT:
            return 0.0
        newest, previous = self._samples[0].cpu, self._samples[1].cpu
        dt = newest.total - previous.total
        if dt == 0:
            return 0.0
        return (getattr(newest, field) - getattr(previous, field)) * (100.0 / dt)

    def percent(self, field: str) -> float:
        """Share of CPU time spent in a state between the two latest samples."""
        with self._lock:
            return self._percent(field)

    def switches(self) -> int:
        """Context switches counted in the newest sample."""
        with self._lock:
            return self._samples[0].ctxt if self._samples else 0

    def usage(self) -> dict[str, float]:
        """All CPU percentages, plus busy as 100 minus idle."""
        with self._lock:
            result = {name: self._percent(name) for name in _CPU_FIELDS}
        result["busy"] = 100.0 - result["idle"]
        return result


HISTORY = CpuHistory()


def update_cpu_stat() -> None:
    """Read /proc/stat and record it; raise OSError or ValueError on failure."""
    HISTORY.push(read_proc_stat())


def cpu_metrics() -> list[MetricValue]:
    """CPU gauges and the context switch counter, once two samples exist."""
    history = HISTORY
    if not history.prepared():
        return []
    usage = history.usage()
    return [
        gauge_value("cpu.idle", usage["idle"]),
        gauge_value("cpu.busy", usage["busy"]),
        gauge_value("cpu.user", usage["user"]),
        gauge_value("cpu.nice", usage["nice"]),
        gauge_value("cpu.system", usage["system"]),
        gauge_value("cpu.iowait", usage["iowait"]),
        gauge_value("cpu.irq", usage["irq"]),
        gauge_value("cpu.softirq", usage["softirq"]),
        gauge_value("cpu.steal", usage["steal"]),
        gauge_value("cpu.guest", usage["guest"]),
        counter_value("cpu.switches", history.switches()),
    ]


__all__ = [f.name for f in fields(CpuTimes)] and [
    "CpuTimes",
    "ProcStat",
    "CpuHistory",
    "HISTORY",
    "parse_proc_stat",
    "read_proc_stat",
    "update_cpu_stat",
    "cpu_metrics",
]