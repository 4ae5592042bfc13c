"""Agent configuration, well-known metric names and logging setup."""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

VERSION = "5.1.2"
COLLECT_INTERVAL = 1.0
URL_CHECK_HEALTH = "url.check.health"
NET_PORT_LISTEN = "net.port.listen"
DU_BS = "du.bs"
PROC_NUM = "proc.num"

_LOG_FORMAT = "%(asctime)s %(filename)s:%(lineno)d %(message)s"
_LOG_LEVELS = {
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "warn": logging.WARNING,
}

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when the configuration cannot be read or is invalid."""


@dataclass
class PluginConfig:
    enabled: bool = False
    dir: str = ""
    git: str = ""
    log_dir: str = ""


@dataclass
class HeartbeatConfig:
    enabled: bool = False
    addr: str = ""
    interval: int = 0
    timeout: int = 0


@dataclass
class TransferConfig:
    enabled: bool = False
    addrs: list[str] = field(default_factory=list)
    interval: int = 0
    timeout: int = 0


@dataclass
class HttpConfig:
    enabled: bool = False
    listen: str = ""
    backdoor: bool = False


@dataclass
class CollectorConfig:
    iface_prefix: list[str] = field(default_factory=list)
    mount_point: list[str] = field(default_factory=list)


def _value(data: dict, key: str, kind: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if kind is int:
        valid = isinstance(value, int) and not isinstance(value, bool)
    else:
        valid = isinstance(value, kind)
    if not valid:
        raise ConfigError(f"{key}: expected {kind.__name__}, got {type(value).__name__}")
    return value


def _string_list(data: dict, key: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"{key}: expected a list of strings")
    return list(value)


def _mapping(data: dict, key: str, kind: type) -> dict:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict) or not all(
        isinstance(k, str) and isinstance(v, kind) for k, v in value.items()
    ):
        raise ConfigError(f"{key}: expected an object of {kind.__name__} values")
    return dict(value)


def _section(data: dict, key: str) -> dict:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key}: expected an object")
    return value


@dataclass
class GlobalConfig:
    debug: bool = False
    hostname: str = ""
    ip: str = ""
    plugin: PluginConfig = field(default_factory=PluginConfig)
    heartbeat: HeartbeatConfig = field(default_factory=HeartbeatConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    collector: CollectorConfig = field(default_factory=CollectorConfig)
    default_tags: dict[str, str] = field(default_factory=dict)
    ignore_metrics: dict[str, bool] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> GlobalConfig:
        """Build a configuration from its JSON object form."""
        if not isinstance(data, dict):
            raise ConfigError("configuration must be a JSON object")
        plugin = _section(data, "plugin")
        heartbeat = _section(data, "heartbeat")
        transfer = _section(data, "transfer")
        http = _section(data, "http")
        collector = _section(data, "collector")
        return cls(
            debug=_value(data, "debug", bool, False),
            hostname=_value(data, "hostname", str, ""),
            ip=_value(data, "ip", str, ""),
            plugin=PluginConfig(
                enabled=_value(plugin, "enabled", bool, False),
                dir=_value(plugin, "dir", str, ""),
                git=_value(plugin, "git", str, ""),
                log_dir=_value(plugin, "logs", str, ""),
            ),
            heartbeat=HeartbeatConfig(
                enabled=_value(heartbeat, "enabled", bool, False),
                addr=_value(heartbeat, "addr", str, ""),
                interval=_value(heartbeat, "interval", int, 0),
                timeout=_value(heartbeat, "timeout", int, 0),
            ),
            transfer=TransferConfig(
                enabled=_value(transfer, "enabled", bool, False),
                addrs=_string_list(transfer, "addrs"),
                interval=_value(transfer, "interval", int, 0),
                timeout=_value(transfer, "timeout", int, 0),
            ),
            http=HttpConfig(
                enabled=_value(http, "enabled", bool, False),
                listen=_value(http, "listen", str, ""),
                backdoor=_value(http, "backdoor", bool, False),
            ),
            collector=CollectorConfig(
                iface_prefix=_string_list(collector, "ifacePrefix"),
                mount_point=_string_list(collector, "mountPoint"),
            ),
            default_tags=_mapping(data, "default_tags", str),
            ignore_metrics=_mapping(data, "ignore", bool),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object form of this configuration."""
        return {
            "debug": self.debug,
            "hostname": self.hostname,
            "ip": self.ip,
            "plugin": {
                "enabled": self.plugin.enabled,
                "dir": self.plugin.dir,
                "git": self.plugin.git,
                "logs": self.plugin.log_dir,
            },
            "heartbeat": {
                "enabled": self.heartbeat.enabled,
                "addr": self.heartbeat.addr,
                "interval": self.heartbeat.interval,
                "timeout": self.heartbeat.timeout,
            },
            "transfer": {
                "enabled": self.transfer.enabled,
                "addrs": list(self.transfer.addrs),
                "interval": self.transfer.interval,
                "timeout": self.transfer.timeout,
            },
            "http": {
                "enabled": self.http.enabled,
                "listen": self.http.listen,
                "backdoor": self.http.backdoor,
            },
            "collector": {
                "ifacePrefix": list(self.collector.iface_prefix),
                "mountPoint": list(self.collector.mount_point),
            },
            "default_tags": dict(self.default_tags),
            "ignore": dict(self.ignore_metrics),
        }


_lock = threading.RLock()
_config = GlobalConfig()
_config_file = ""


def parse_config(path: str) -> GlobalConfig:
    """Read a JSON configuration file and make it the current configuration."""
    global _config, _config_file
    if not path:
        raise ConfigError("use -c to specify configuration file")
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise ConfigError(
            f"config file: {path} is not existent. "
            "maybe you need `mv cfg.example.json cfg.json`"
        )
    try:
        content = cfg_path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ConfigError(f"read config file: {path} fail: {exc}") from exc
    try:
        data = json.loads(content)
    except ValueError as exc:
        raise ConfigError(f"parse config file: {path} fail: {exc}") from exc
    cfg = GlobalConfig.from_dict(data)
    with _lock:
        _config = cfg
        _config_file = path
    log.info("read config file: %s successfully", path)
    return cfg


def config() -> GlobalConfig:
    """Return the current configuration."""
    with _lock:
        return _config


def set_config(cfg: GlobalConfig) -> None:
    """Replace the current configuration."""
    global _config
    with _lock:
        _config = cfg


def config_file() -> str:
    """Return the path of the last configuration file read."""
    with _lock:
        return _config_file


def hostname() -> str:
    """Return the endpoint name: from config, FALCON_ENDPOINT, or the system."""
    name = config().hostname
    if name:
        return name
    endpoint = os.environ.get("FALCON_ENDPOINT", "")
    if endpoint:
        return endpoint
    try:
        return socket.gethostname()
    except OSError as exc:
        log.error("ERROR: hostname lookup fail %s", exc)
        raise


def init_log(level: str) -> None:
    """Set up logging at one of the levels info, debug or warn."""
    try:
        numeric = _LOG_LEVELS[level]
    except KeyError:
        raise ConfigError(
            "log conf only allow [info, debug, warn], please check your configure"
        ) from None
    logging.basicConfig(format=_LOG_FORMAT)
    logging.getLogger().setLevel(numeric)