"""Run-time state shared by the agent's tasks."""

from __future__ import annotations

import logging
import os
import socket
import subprocess
from dataclasses import dataclass, field

from falconagent.config import config

log = logging.getLogger(__name__)


@dataclass
class AgentState:
    """What the agent learned at start-up and from the heartbeat server."""

    root: str = ""
    local_ip: str = ""
    report_urls: dict[str, str] = field(default_factory=dict)
    report_ports: list[int] = field(default_factory=list)
    du_paths: list[str] = field(default_factory=list)
    # tags => {1: name, 2: cmdline}
    report_procs: dict[str, dict[int, str]] = field(default_factory=dict)
    trustable_ips: list[str] = field(default_factory=list)

    def set_trustable_ips(self, ip_str: str) -> None:
        """Replace the trusted addresses with a comma separated list."""
        self.trustable_ips = ip_str.split(",")

    def is_trustable(self, remote_addr: str) -> bool:
        """Tell whether a remote "host:port" address may use admin endpoints."""
        ip = remote_addr
        idx = remote_addr.rfind(":")
        if idx > 0:
            ip = remote_addr[:idx]
        if ip == "127.0.0.1":
            return True
        return ip in self.trustable_ips


STATE = AgentState()


def _split_host_port(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    return host.strip("[]"), int(port)


def init_root_dir() -> str:
    """Record the working directory as the agent's root."""
    STATE.root = os.getcwd()
    return STATE.root


def init_local_ip() -> str:
    """Learn the local address used to reach the heartbeat server."""
    heartbeat = config().heartbeat
    if not heartbeat.enabled:
        log.info("heartbeat is not enabled, can't get local ip")
        return STATE.local_ip
    try:
        with socket.create_connection(_split_host_port(heartbeat.addr), timeout=10) as conn:
            STATE.local_ip = conn.getsockname()[0]
    except (OSError, ValueError):
        log.warning("get local addr failed !")
    return STATE.local_ip


def agent_ip() -> str:
    """Return the configured IP, else the learned local address."""
    return config().ip or STATE.local_ip


def get_curr_plugin_version() -> str:
    """Return the HEAD commit of the plugin directory, or why there is none."""
    plugin = config().plugin
    if not plugin.enabled:
        return "plugin not enabled"
    if not os.path.exists(plugin.dir):
        return "plugin dir not existent"
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=plugin.dir,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            check=False,
        )
    except OSError as exc:
        return f"Error:{exc}"
    if result.returncode != 0:
        return f"Error:exit status {result.returncode}"
    return result.stdout.strip()