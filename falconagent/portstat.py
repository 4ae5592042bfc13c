"""Listening state of the TCP and UDP ports the heartbeat server asked about."""

from __future__ import annotations

import logging
import subprocess

from falconagent.config import NET_PORT_LISTEN
from falconagent.model import MetricValue, gauge_value
from falconagent.state import STATE

log = logging.getLogger(__name__)

_SS_ARGS = {
    "tcp": ["ss", "-t", "-l", "-n"],
    "udp": ["ss", "-u", "-a", "-n"],
}


def parse_ss_listen(output: str) -> list[int]:
    """Return the local ports found in "ss" socket listing output, in order, once each."""
    ports: list[int] = []
    seen: set[int] = set()
    for line in output.splitlines()[1:]:
        fields = line.split()
        if len(fields) < 4:
            continue
        _, sep, port_text = fields[3].rpartition(":")
        if not sep:
            continue
        try:
            port = int(port_text)
        except ValueError:
            continue
        if port not in seen:
            seen.add(port)
            ports.append(port)
    return ports


def listening_ports(proto: str) -> list[int]:
    """Ports bound locally for "tcp" or "udp".

    Raises ValueError for another protocol, and OSError or
    CalledProcessError if "ss" cannot be run.
    """
    try:
        args = _SS_ARGS[proto]
    except KeyError:
        raise ValueError(f"unknown protocol {proto!r}") from None
    result = subprocess.run(
        args, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL, text=True, check=True
    )
    return parse_ss_listen(result.stdout)


def port_metrics() -> list[MetricValue]:
    """One gauge per reported port: 1 if something listens on it, else 0."""
    ports = list(STATE.report_ports)
    if not ports:
        return []
    try:
        listening = set(listening_ports("tcp")) | set(listening_ports("udp"))
    except (OSError, subprocess.CalledProcessError) as exc:
        log.error("%s", exc)
        return []
    return [
        gauge_value(NET_PORT_LISTEN, 1 if port in listening else 0, f"port={port}")
        for port in ports
    ]