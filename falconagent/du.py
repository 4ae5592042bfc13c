"""Directory sizes measured with "du -bs"."""

from __future__ import annotations

import logging
import subprocess
from concurrent.futures import ThreadPoolExecutor

from falconagent.config import DU_BS
from falconagent.model import MetricValue, gauge_value
from falconagent.state import STATE

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class _DuError(Exception):
    pass


def _du_size(path: str, timeout: float) -> int:
    try:
        proc = subprocess.Popen(
            ["du", "-bs", path], stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True
        )
    except OSError as exc:
        raise _DuError(f"du -bs {path} failed: {exc}") from exc
    try:
        out, err = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.communicate()
        raise _DuError(f"exec cmd : du -bs {path} timeout") from None
    if err:
        raise _DuError(err)
    if proc.returncode != 0:
        raise _DuError(f"du -bs {path} failed: exit status {proc.returncode}")
    fields = out.split()
    if len(fields) < 2:
        raise _DuError(f"du -bs {path} failed: return fields < 2")
    if not fields[0].isascii() or not fields[0].isdigit():
        raise _DuError(f"cannot parse du -bs {path} output")
    return int(fields[0])


def _measure(path: str, timeout: float) -> MetricValue:
    try:
        size = _du_size(path, timeout)
    except _DuError as exc:
        log.error("%s", exc)
        return gauge_value(DU_BS, -1, "path=" + path)
    return gauge_value(DU_BS, size, "path=" + path)


def du_metrics(timeout: float = DEFAULT_TIMEOUT) -> list[MetricValue]:
    """Size in bytes of every reported path, or -1 where it cannot be measured."""
    paths = list(STATE.du_paths)
    if not paths:
        return []
    with ThreadPoolExecutor(max_workers=len(paths)) as pool:
        return list(pool.map(lambda path: _measure(path, timeout), paths))