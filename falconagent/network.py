"""Network interface, TCP extension, UDP and socket summary metrics."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Iterable

from falconagent.config import config
from falconagent.model import MetricValue, counter_value, gauge_value

log = logging.getLogger(__name__)

NET_DEV_PATH = "/proc/net/dev"
NETSTAT_PATH = "/proc/net/netstat"
SNMP_PATH = "/proc/net/snmp"
SYS_CLASS_NET = "/sys/class/net"

USES = frozenset(
    {
        "PruneCalled",
        "LockDroppedIcmps",
        "ArpFilter",
        "TW",
        "DelayedACKLocked",
        "ListenOverflows",
        "ListenDrops",
        "TCPPrequeueDropped",
        "TCPTSReorder",
        "TCPDSACKUndo",
        "TCPLoss",
        "TCPLostRetransmit",
        "TCPLossFailures",
        "TCPFastRetrans",
        "TCPTimeouts",
        "TCPSchedulerFailed",
        "TCPAbortOnMemory",
        "TCPAbortOnTimeout",
        "TCPAbortFailed",
        "TCPMemoryPressures",
        "TCPSpuriousRTOs",
        "TCPBacklogDrop",
        "TCPMinTTLDrop",
    }
)

_DEV_FIELDS = (
    "in_bytes",
    "in_packages",
    "in_errors",
    "in_dropped",
    "in_fifo_errs",
    "in_frame_errs",
    "in_compressed",
    "in_multicast",
    "out_bytes",
    "out_packages",
    "out_errors",
    "out_dropped",
    "out_fifo_errs",
    "out_collisions",
    "out_carrier_errs",
    "out_compressed",
)


@dataclass
class NetIf:
    """Counters of one network interface."""

    iface: str
    in_bytes: int = 0
    in_packages: int = 0
    in_errors: int = 0
    in_dropped: int = 0
    in_fifo_errs: int = 0
    in_frame_errs: int = 0
    in_compressed: int = 0
    in_multicast: int = 0
    out_bytes: int = 0
    out_packages: int = 0
    out_errors: int = 0
    out_dropped: int = 0
    out_fifo_errs: int = 0
    out_collisions: int = 0
    out_carrier_errs: int = 0
    out_compressed: int = 0
    total_bytes: int = 0
    total_packages: int = 0
    total_errors: int = 0
    total_dropped: int = 0
    speed_bits: int = 0
    in_percent: float = 0.0
    out_percent: float = 0.0


def parse_net_dev(text: str, iface_prefix: Iterable[str]) -> list[NetIf]:
    """Parse /proc/net/dev; keep interfaces matching a prefix, or all if none given."""
    prefixes = tuple(iface_prefix)
    result = []
    for line in text.splitlines()[2:]:
        name, sep, rest = line.partition(":")
        if not sep:
            continue
        iface = name.strip()
        if prefixes and not iface.startswith(prefixes):
            continue
        parts = rest.split()
        if len(parts) < len(_DEV_FIELDS):
            continue
        netif = NetIf(iface=iface, **dict(zip(_DEV_FIELDS, (int(v) for v in parts))))
        netif.total_bytes = netif.in_bytes + netif.out_bytes
        netif.total_packages = netif.in_packages + netif.out_packages
        netif.total_errors = netif.in_errors + netif.out_errors
        netif.total_dropped = netif.in_dropped + netif.out_dropped
        result.append(netif)
    return result


def _speed_mbits(iface: str) -> int:
    try:
        with open(os.path.join(SYS_CLASS_NET, iface, "speed"), encoding="utf-8") as handle:
            return int(handle.read().strip())
    except (OSError, ValueError):
        return 0


def net_ifs(iface_prefix: Iterable[str]) -> list[NetIf]:
    """Read interface counters and link speeds."""
    with open(NET_DEV_PATH, encoding="utf-8") as handle:
        netifs = parse_net_dev(handle.read(), iface_prefix)
    for netif in netifs:
        speed = _speed_mbits(netif.iface)
        if speed > 0:
            netif.speed_bits = speed * 1000000
            netif.in_percent = netif.in_bytes * 8 * 100.0 / netif.speed_bits
            netif.out_percent = netif.out_bytes * 8 * 100.0 / netif.speed_bits
    return netifs


def core_net_metrics(iface_prefix: Iterable[str]) -> list[MetricValue]:
    """Twenty-six counters per matching interface."""
    try:
        netifs = net_ifs(iface_prefix)
    except (OSError, ValueError) as exc:
        log.error("%s", exc)
        return []
    result = []
    for n in netifs:
        tag = "iface=" + n.iface
        result.extend(
            [
                counter_value("net.if.in.bytes", n.in_bytes, tag),
                counter_value("net.if.in.packets", n.in_packages, tag),
                counter_value("net.if.in.errors", n.in_errors, tag),
                counter_value("net.if.in.dropped", n.in_dropped, tag),
                counter_value("net.if.in.fifo.errs", n.in_fifo_errs, tag),
                counter_value("net.if.in.frame.errs", n.in_frame_errs, tag),
                counter_value("net.if.in.compressed", n.in_compressed, tag),
                counter_value("net.if.in.multicast", n.in_multicast, tag),
                counter_value("net.if.out.bytes", n.out_bytes, tag),
                counter_value("net.if.out.packets", n.out_packages, tag),
                counter_value("net.if.out.errors", n.out_errors, tag),
                counter_value("net.if.out.dropped", n.out_dropped, tag),
                counter_value("net.if.out.fifo.errs", n.out_fifo_errs, tag),
                counter_value("net.if.out.collisions", n.out_collisions, tag),
                counter_value("net.if.out.carrier.errs", n.out_carrier_errs, tag),
                counter_value("net.if.out.compressed", n.out_compressed, tag),
                counter_value("net.if.total.bytes", n.total_bytes, tag),
                counter_value("net.if.total.packets", n.total_packages, tag),
                counter_value("net.if.total.errors", n.total_errors, tag),
                counter_value("net.if.total.dropped", n.total_dropped, tag),
                gauge_value("net.if.speed.bits", n.speed_bits, tag),
                counter_value("net.if.in.percent", n.in_percent, tag),
                counter_value("net.if.out.percent", n.out_percent, tag),
                counter_value("net.if.in.bits", n.in_bytes * 8, tag),
                counter_value("net.if.out.bits", n.out_bytes * 8, tag),
                counter_value("net.if.total.bits", n.total_bytes * 8, tag),
            ]
        )
    return result


def net_metrics() -> list[MetricValue]:
    """Interface counters for the configured interface prefixes."""
    return core_net_metrics(config().collector.iface_prefix)


def _to_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def parse_keyed_table(text: str, section: str) -> dict[str, int]:
    """Parse one section of /proc/net/netstat or /proc/net/snmp.

    The section is a header line of names followed by a line of values.
    """
    lines = iter(text.splitlines())
    for line in lines:
        title, sep, rest = line.partition(":")
        if not sep or title.strip() != section:
            continue
        names = rest.split()
        values_line = next(lines, "")
        _, _, values_rest = values_line.partition(":")
        values = values_rest.split()
        return {name: _to_int(value) for name, value in zip(names, values)}
    return {}


def _read_table(path: str, section: str) -> dict[str, int]:
    with open(path, encoding="utf-8") as handle:
        return parse_keyed_table(handle.read(), section)


def netstat_metrics() -> list[MetricValue]:
    """Selected TcpExt counters."""
    try:
        tcp_ext = _read_table(NETSTAT_PATH, "TcpExt")
    except OSError as exc:
        log.error("%s", exc)
        return []
    return [counter_value("TcpExt." + key, val) for key, val in tcp_ext.items() if key in USES]


def udp_metrics() -> list[MetricValue]:
    """All UDP counters from /proc/net/snmp."""
    try:
        udp = _read_table(SNMP_PATH, "Udp")
    except OSError as exc:
        log.error("read snmp fail %s", exc)
        return []
    return [counter_value("snmp.Udp." + key, val) for key, val in udp.items()]


def parse_ss_summary(text: str) -> dict[str, int]:
    """Parse the TCP line of "ss -s" output."""
    result: dict[str, int] = {}
    for line in text.splitlines()[1:]:
        if not line.startswith("TCP"):
            continue
        left, right = line.find("("), line.find(")")
        if left < 0 or right < 0:
            continue
        for item in line[left + 1 : right].split(", "):
            parts = item.split()
            if len(parts) < 2:
                continue
            if parts[0] == "timewait":
                current, _, slab = parts[1].partition("/")
                result["timewait"] = _to_int(current)
                result["slabinfo.timewait"] = _to_int(slab)
                continue
            result[parts[0]] = _to_int(parts[1])
        return result
    return result


def _socket_stat_summary() -> dict[str, int]:
    out = subprocess.run(
        ["ss", "-s"], stdout=subprocess.PIPE, stderr=subprocess.DEVNULL, text=True, check=True
    ).stdout
    return parse_ss_summary(out)


def socket_stat_summary_metrics() -> list[MetricValue]:
    """TCP socket state counts from "ss -s"."""
    try:
        summary = _socket_stat_summary()
    except (OSError, subprocess.CalledProcessError) as exc:
        log.error("%s", exc)
        return []
    return [gauge_value("ss." + key, value) for key, value in summary.items()]