"""Periodic exchanges with the heartbeat server."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from falconagent.config import (
    DU_BS,
    NET_PORT_LISTEN,
    PROC_NUM,
    URL_CHECK_HEALTH,
    VERSION,
    config,
    hostname,
)
from falconagent.plugins import PluginManager, list_plugins
from falconagent.procs import CMDLINE_KEY, NAME_KEY
from falconagent.rpc import RpcError
from falconagent.state import STATE, agent_ip, get_curr_plugin_version

log = logging.getLogger(__name__)

_INT_RE = re.compile(r"[+-]?[0-9]+")
_CALL_ERRORS = (RpcError, OSError, ValueError)


@dataclass
class BuiltinTargets:
    """What the heartbeat server asks the agent to watch."""

    urls: dict[str, str] = field(default_factory=dict)
    ports: list[int] = field(default_factory=list)
    paths: list[str] = field(default_factory=list)
    procs: dict[str, dict[int, str]] = field(default_factory=dict)


def _is_int(text: str) -> bool:
    return _INT_RE.fullmatch(text) is not None


def parse_builtin_metrics(metrics: Iterable[Mapping[str, Any]]) -> BuiltinTargets:
    """Turn the builtin metric list of the heartbeat server into watch targets."""
    targets = BuiltinTargets()
    for item in metrics:
        name = item.get("Metric", "")
        tags = item.get("Tags", "") or ""

        if name == URL_CHECK_HEALTH:
            parts = tags.split(",")
            if len(parts) != 2:
                continue
            url = parts[0].split("=")
            stime = parts[1].split("=")
            if len(url) != 2 or len(stime) != 2:
                continue
            if _is_int(stime[1]):
                targets.urls[url[1]] = stime[1]
            else:
                log.error("metric ParseInt timeout failed: %r", stime[1])
            continue

        if name == NET_PORT_LISTEN:
            parts = tags.split("=")
            if len(parts) != 2:
                continue
            if _is_int(parts[1]):
                targets.ports.append(int(parts[1]))
            else:
                log.error("metrics ParseInt failed: %r", parts[1])
            continue

        if name == DU_BS:
            parts = tags.split("=")
            if len(parts) != 2:
                continue
            targets.paths.append(parts[1].strip())
            continue

        if name == PROC_NUM:
            spec: dict[int, str] = {}
            for part in tags.split(","):
                if part.startswith("name="):
                    spec[NAME_KEY] = part[len("name=") :].strip()
                elif part.startswith("cmdline="):
                    spec[CMDLINE_KEY] = part[len("cmdline=") :].strip()
            targets.procs[tags] = spec
    return targets


def _apply_targets(targets: BuiltinTargets) -> None:
    STATE.report_urls = targets.urls
    STATE.report_ports = targets.ports
    STATE.report_procs = targets.procs
    STATE.du_paths = targets.paths


def sync_builtin_metrics(client: Any, interval: float, stop: threading.Event) -> None:
    """Fetch the builtin metric targets every interval until stop is set."""
    timestamp = -1
    checksum = "nil"
    while not stop.wait(interval):
        try:
            host = hostname()
        except OSError:
            continue
        try:
            resp = client.call(
                "Agent.BuiltinMetrics", {"Hostname": host, "Checksum": checksum}
            )
        except _CALL_ERRORS as exc:
            log.error("ERROR: %s", exc)
            continue
        resp = resp or {}
        resp_ts = resp.get("Timestamp", 0)
        resp_checksum = resp.get("Checksum", "")
        if resp_ts <= timestamp or resp_checksum == checksum:
            continue
        timestamp, checksum = resp_ts, resp_checksum
        _apply_targets(parse_builtin_metrics(resp.get("Metrics") or []))


def sync_trustable_ips(client: Any, interval: float, stop: threading.Event) -> None:
    """Fetch the trusted address list every interval until stop is set."""
    while not stop.wait(interval):
        try:
            ips = client.call("Agent.TrustableIps", {})
        except _CALL_ERRORS as exc:
            log.error("ERROR: call Agent.TrustableIps fail %s", exc)
            continue
        STATE.set_trustable_ips(ips or "")


def sync_mine_plugins(
    client: Any, interval: float, manager: PluginManager, stop: threading.Event
) -> None:
    """Fetch this host's plugin directories and update the running plugins."""
    timestamp = -1
    while not stop.wait(interval):
        try:
            host = hostname()
        except OSError:
            continue
        try:
            resp = client.call("Agent.MinePlugins", {"Hostname": host})
        except _CALL_ERRORS as exc:
            log.error("ERROR: %s", exc)
            continue
        resp = resp or {}
        resp_ts = resp.get("Timestamp", 0)
        if resp_ts <= timestamp:
            continue
        timestamp = resp_ts
        plugin_dirs = resp.get("Plugins") or []
        cfg = config()
        if cfg.debug:
            log.debug("%s", resp)
        if not plugin_dirs:
            manager.clear()
        desired = {}
        for directory in plugin_dirs:
            desired.update(list_plugins(cfg.plugin.dir, directory.strip("/")))
        manager.del_no_use(desired)
        manager.add_new(desired)


def report_agent_status(client: Any, interval: float, stop: threading.Event) -> None:
    """Report the agent's status now and then every interval until stop is set."""
    while True:
        try:
            host = hostname()
        except OSError as exc:
            host = f"error:{exc}"
        req = {
            "Hostname": host,
            "IP": agent_ip(),
            "AgentVersion": VERSION,
            "PluginVersion": get_curr_plugin_version(),
        }
        try:
            resp = client.call("Agent.ReportStatus", req) or {}
            if resp.get("Code", 0) != 0:
                log.error("call Agent.ReportStatus fail: Request: %s Response: %s", req, resp)
        except _CALL_ERRORS as exc:
            log.error("call Agent.ReportStatus fail: %s Request: %s", exc, req)
        if stop.wait(interval):
            return


def start_sync_tasks(
    client: Any, manager: PluginManager, stop: threading.Event
) -> list[threading.Thread]:
    """Start the heartbeat tasks the configuration enables."""
    cfg = config()
    heartbeat = cfg.heartbeat
    if client is None or not heartbeat.enabled or not heartbeat.addr:
        return []
    interval = heartbeat.interval
    tasks: list[tuple[Any, tuple]] = [(report_agent_status, (client, interval, stop))]
    if cfg.plugin.enabled:
        tasks.append((sync_mine_plugins, (client, interval, manager, stop)))
    tasks.append((sync_builtin_metrics, (client, interval, stop)))
    tasks.append((sync_trustable_ips, (client, interval, stop)))
    threads = []
    for target, args in tasks:
        thread = threading.Thread(target=target, args=args, name=target.__name__, daemon=True)
        thread.start()
        threads.append(thread)
    return threads