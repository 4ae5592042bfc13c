"""Counts of running processes that match reported name or command line patterns."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from falconagent.config import PROC_NUM
from falconagent.model import MetricValue, gauge_value
from falconagent.state import STATE

log = logging.getLogger(__name__)

PROC_ROOT = "/proc"

NAME_KEY = 1
CMDLINE_KEY = 2


@dataclass(frozen=True)
class Proc:
    """A running process."""

    pid: int
    name: str
    cmdline: str


def _status_name(text: str) -> str:
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if sep and key == "Name":
            return value.strip()
    return ""


def all_procs() -> list[Proc]:
    """List running processes by pid; processes that vanish while read are skipped."""
    result = []
    for entry in Path(PROC_ROOT).iterdir():
        if not entry.name.isdigit():
            continue
        try:
            status = (entry / "status").read_text(encoding="utf-8", errors="replace")
            raw = (entry / "cmdline").read_bytes()
        except OSError:
            continue
        cmdline = raw.replace(b"\x00", b" ").decode("utf-8", errors="replace").strip()
        result.append(Proc(pid=int(entry.name), name=_status_name(status), cmdline=cmdline))
    result.sort(key=lambda proc: proc.pid)
    return result


def matches(proc: Proc, spec: dict[int, str]) -> bool:
    """Tell whether a process has the wanted name and contains the wanted command line."""
    for key, value in spec.items():
        if key == NAME_KEY and value != proc.name:
            return False
        if key == CMDLINE_KEY and value not in proc.cmdline:
            return False
    return True


def proc_metrics() -> list[MetricValue]:
    """Number of processes matching each reported specification."""
    report = dict(STATE.report_procs)
    if not report:
        return []
    try:
        procs = all_procs()
    except OSError as exc:
        log.error("%s", exc)
        return []
    return [
        gauge_value(PROC_NUM, sum(1 for proc in procs if matches(proc, spec)), tags)
        for tags, spec in report.items()
    ]