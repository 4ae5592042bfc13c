"""Collector groups, the collection loops and the self check."""

from __future__ import annotations

import dataclasses
import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping

from falconagent.config import COLLECT_INTERVAL, config, hostname
from falconagent.cpustat import cpu_metrics, read_proc_stat, update_cpu_stat
from falconagent.dfstat import device_metrics, device_metrics_check
from falconagent.diskstats import (
    disk_io_metrics,
    io_stats_metrics,
    read_diskstats,
    update_disk_stats,
)
from falconagent.du import du_metrics
from falconagent.model import MetricValue, agent_metrics
from falconagent.network import (
    core_net_metrics,
    net_metrics,
    netstat_metrics,
    socket_stat_summary_metrics,
    udp_metrics,
)
from falconagent.portstat import listening_ports, port_metrics
from falconagent.procs import all_procs, proc_metrics
from falconagent.rpc import send_to_transfer
from falconagent.system import kernel_metrics, load_avg_metrics, mem_metrics
from falconagent.urlstat import url_metrics

log = logging.getLogger(__name__)

MetricFunc = Callable[[], "list[MetricValue] | None"]


@dataclass(frozen=True)
class CollectorGroup:
    """Metric functions that are collected and sent together every interval seconds."""

    fns: tuple[MetricFunc, ...]
    interval: float


def build_mappers(interval: float) -> list[CollectorGroup]:
    """The collector groups, each sent every interval seconds."""
    return [
        CollectorGroup(
            fns=(
                agent_metrics,
                cpu_metrics,
                net_metrics,
                kernel_metrics,
                load_avg_metrics,
                mem_metrics,
                disk_io_metrics,
                io_stats_metrics,
                netstat_metrics,
                proc_metrics,
                udp_metrics,
            ),
            interval=interval,
        ),
        CollectorGroup(fns=(device_metrics,), interval=interval),
        CollectorGroup(fns=(port_metrics, socket_stat_summary_metrics), interval=interval),
        CollectorGroup(fns=(du_metrics,), interval=interval),
        CollectorGroup(fns=(url_metrics,), interval=interval),
    ]


def _succeeds(fn: Callable[[], object]) -> bool:
    try:
        fn()
    except (OSError, ValueError, subprocess.CalledProcessError):
        return False
    return True


def _non_empty(fn: Callable[[], list]) -> bool:
    try:
        return len(fn()) > 0
    except (OSError, ValueError, subprocess.CalledProcessError):
        return False


def _du_available() -> None:
    subprocess.run(
        ["du", "--help"], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=True
    )


def check_collector() -> dict[str, bool]:
    """Tell, for every kind of collector, whether it works on this machine."""
    return {
        "kernel": len(kernel_metrics()) > 0,
        "df.bytes": device_metrics_check(),
        "net.if": len(core_net_metrics([])) > 0,
        "loadavg": len(load_avg_metrics() or []) > 0,
        "cpustat": _succeeds(read_proc_stat),
        "disk.io": _succeeds(read_diskstats),
        "memory": len(mem_metrics() or []) > 0,
        "netstat": len(netstat_metrics()) > 0,
        "ss -s": len(socket_stat_summary_metrics()) > 0,
        "ss -tln": _non_empty(lambda: listening_ports("tcp")),
        "ps aux": _non_empty(all_procs),
        "du -bs": _succeeds(_du_available),
    }


def collect_once(
    fns: Iterable[MetricFunc],
    step: float,
    hostname: str,
    ignore: Mapping[str, bool],
) -> list[MetricValue]:
    """Call every function, drop ignored metrics and stamp the rest."""
    now = int(time.time())
    result = []
    for fn in fns:
        items = fn()
        if not items:
            continue
        for mv in items:
            if ignore.get(mv.metric, False):
                continue
            result.append(dataclasses.replace(mv, step=step, endpoint=hostname, timestamp=now))
    return result


def run_collect_loop(group: CollectorGroup, stop: threading.Event) -> None:
    """Collect a group every interval and send it to the transfer until stop is set."""
    if group.interval <= 0:
        raise ValueError("collect interval must be positive")
    while not stop.wait(group.interval):
        try:
            host = hostname()
        except OSError:
            continue
        metrics = collect_once(group.fns, group.interval, host, config().ignore_metrics)
        if metrics:
            send_to_transfer(metrics)


def init_data_history(stop: threading.Event) -> None:
    """Sample CPU and disk counters every second until stop is set."""
    while True:
        for update in (update_cpu_stat, update_disk_stats):
            try:
                update()
            except (OSError, ValueError) as exc:
                log.debug("sampling failed: %s", exc)
        if stop.wait(COLLECT_INTERVAL):
            return


def start_collectors(stop: threading.Event) -> list[threading.Thread]:
    """Start one collection thread per group when the transfer is configured."""
    transfer = config().transfer
    if not transfer.enabled or not transfer.addrs:
        return []
    threads = []
    for index, group in enumerate(build_mappers(transfer.interval)):
        thread = threading.Thread(
            target=run_collect_loop, args=(group, stop), name=f"collector-{index}", daemon=True
        )
        thread.start()
        threads.append(thread)
    return threads