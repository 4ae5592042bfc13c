"""User plugins: discovery, periodic execution and the set of active plugins."""

from __future__ import annotations

import json
import logging
import os
import re
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from falconagent.config import config
from falconagent.model import MetricValue
from falconagent.rpc import send_to_transfer

log = logging.getLogger(__name__)

_CYCLE_RE = re.compile(r"[+-]?[0-9]+")


@dataclass(frozen=True)
class Plugin:
    """A plugin script: path relative to the plugin directory, mtime and run cycle."""

    file_path: str
    mtime: int
    cycle: int

    def to_dict(self) -> dict[str, Any]:
        return {"FilePath": self.file_path, "MTime": self.mtime, "Cycle": self.cycle}


def list_plugins(plugin_dir: str, relative_path: str) -> dict[str, Plugin]:
    """Find plugin files named "<cycle>_<name>" in one directory under plugin_dir."""
    if not relative_path:
        return {}
    directory = os.path.join(plugin_dir, relative_path)
    if not os.path.isdir(directory):
        return {}
    try:
        entries = list(os.scandir(directory))
    except OSError:
        log.error("can not list files under %s", directory)
        return {}
    result = {}
    for entry in entries:
        if entry.is_dir():
            continue
        parts = entry.name.split("_")
        if len(parts) < 2 or not _CYCLE_RE.fullmatch(parts[0]):
            continue
        fpath = os.path.normpath(os.path.join(relative_path, entry.name))
        result[fpath] = Plugin(
            file_path=fpath, mtime=int(entry.stat().st_mtime), cycle=int(parts[0])
        )
    return result


def _kill_group(proc: subprocess.Popen) -> OSError | None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except OSError as exc:
        return exc
    return None


def run_plugin(
    plugin: Plugin, send: Callable[[list[MetricValue]], Any] | None = None
) -> list[MetricValue]:
    """Run a plugin once and send the metrics it prints; return what was sent."""
    cfg = config()
    if send is None:
        send = send_to_transfer
    timeout = max(plugin.cycle * 1000 - 500, 0) / 1000.0
    fpath = os.path.join(cfg.plugin.dir, plugin.file_path)
    if not os.path.exists(fpath):
        log.error("no such plugin: %s", fpath)
        return []
    debug = cfg.debug
    if debug:
        log.debug("%s running...", fpath)
    try:
        proc = subprocess.Popen(
            [fpath], stdout=subprocess.PIPE, stderr=subprocess.PIPE, start_new_session=True
        )
    except OSError as exc:
        log.error("[ERROR] plugin start fail, error: %s", exc)
        return []
    if debug:
        log.debug("plugin started: %s", fpath)

    timed_out = False
    kill_error: OSError | None = None
    try:
        out, err = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        kill_error = _kill_group(proc)
        out, err = proc.communicate()

    if err:
        log_file = os.path.join(cfg.plugin.log_dir, plugin.file_path + ".stderr.log")
        try:
            os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
            with open(log_file, "w", encoding="utf-8") as handle:
                handle.write(err.decode("utf-8", errors="replace"))
        except OSError as exc:
            log.error("[ERROR] write log to %s fail, error: %s", log_file, exc)

    if timed_out:
        if kill_error is not None:
            log.error("[ERROR] kill process %s occur error: %s", fpath, kill_error)
        elif debug:
            log.info("[INFO] timeout and kill process %s successfully", fpath)
        return []

    if proc.returncode != 0:
        log.error("[ERROR] exec plugin %s fail. error: exit status %d", fpath, proc.returncode)
        return []

    if not out:
        if debug:
            log.debug("[DEBUG] stdout of %s is blank", fpath)
        return []

    try:
        data = json.loads(out)
        if data is None:
            data = []
        if not isinstance(data, list):
            raise ValueError("expected a JSON array")
        metrics = [MetricValue.from_dict(item) for item in data]
    except ValueError as exc:
        log.error(
            "[ERROR] json.Unmarshal stdout of %s fail. error:%s stdout: \n%s",
            fpath,
            exc,
            out.decode("utf-8", errors="replace"),
        )
        return []

    if metrics:
        send(metrics)
    return metrics


class PluginScheduler:
    """Runs one plugin every cycle seconds on a background thread."""

    def __init__(self, plugin: Plugin, runner: Callable[[Plugin], Any]) -> None:
        if plugin.cycle <= 0:
            raise ValueError(f"plugin {plugin.file_path}: cycle must be positive")
        self.plugin = plugin
        self._runner = runner
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        """Start the periodic runs."""
        if self._thread is not None:
            raise RuntimeError("scheduler already started")
        self._thread = threading.Thread(
            target=self._loop, name=f"plugin:{self.plugin.file_path}", daemon=True
        )
        self._thread.start()

    def _loop(self) -> None:
        cycle = self.plugin.cycle
        next_tick = time.monotonic() + cycle
        while not self._stop.wait(max(0.0, next_tick - time.monotonic())):
            try:
                self._runner(self.plugin)
            except Exception:
                log.exception("plugin %s failed", self.plugin.file_path)
            now = time.monotonic()
            next_tick += cycle
            while next_tick <= now:
                next_tick += cycle

    def stop(self) -> None:
        """Stop the periodic runs; a run in progress is allowed to finish."""
        self._stop.set()


class PluginManager:
    """The set of active plugins, each with its own scheduler."""

    def __init__(self, runner: Callable[[Plugin], Any] | None = None) -> None:
        self._runner = runner if runner is not None else run_plugin
        self._lock = threading.RLock()
        self._plugins: dict[str, Plugin] = {}
        self._schedulers: dict[str, PluginScheduler] = {}

    @property
    def plugins(self) -> dict[str, Plugin]:
        with self._lock:
            return dict(self._plugins)

    @property
    def schedulers(self) -> dict[str, PluginScheduler]:
        with self._lock:
            return dict(self._schedulers)

    def _delete(self, key: str) -> None:
        scheduler = self._schedulers.pop(key, None)
        if scheduler is not None:
            scheduler.stop()
        self._plugins.pop(key, None)

    def del_no_use(self, new_plugins: dict[str, Plugin]) -> None:
        """Stop plugins that are gone or whose file changed."""
        with self._lock:
            for key, current in list(self._plugins.items()):
                new = new_plugins.get(key)
                if new is None or new.mtime != current.mtime:
                    self._delete(key)

    def add_new(self, new_plugins: dict[str, Plugin]) -> None:
        """Start plugins that are not yet running in their current version."""
        with self._lock:
            for fpath, plugin in new_plugins.items():
                current = self._plugins.get(fpath)
                if current is not None and current.mtime == plugin.mtime:
                    continue
                self._delete(fpath)
                scheduler = PluginScheduler(plugin, self._runner)
                self._plugins[fpath] = plugin
                self._schedulers[fpath] = scheduler
                scheduler.start()

    def clear(self) -> None:
        """Stop and forget every plugin."""
        with self._lock:
            for key in list(self._plugins):
                self._delete(key)