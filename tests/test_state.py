import os
import socket
import threading

import pytest

from falconagent.config import GlobalConfig, HeartbeatConfig, PluginConfig, config, set_config
from falconagent.state import (
    STATE,
    AgentState,
    agent_ip,
    get_curr_plugin_version,
    init_local_ip,
    init_root_dir,
)


@pytest.fixture(autouse=True)
def restore_globals():
    saved_config = config()
    saved_root, saved_ip = STATE.root, STATE.local_ip
    yield
    set_config(saved_config)
    STATE.root, STATE.local_ip = saved_root, saved_ip


def test_set_trustable_ips_splits_on_commas():
    state = AgentState()
    state.set_trustable_ips("10.0.0.1,10.0.0.2")
    assert state.trustable_ips == ["10.0.0.1", "10.0.0.2"]


def test_set_trustable_ips_empty_string():
    state = AgentState()
    state.set_trustable_ips("")
    assert state.trustable_ips == [""]


@pytest.mark.parametrize(
    "remote,expected",
    [
        ("127.0.0.1:5555", True),
        ("10.0.0.2:80", True),
        ("10.0.0.3:80", False),
        ("10.0.0.2", True),
        ("192.168.1.1", False),
    ],
)
def test_is_trustable(remote, expected):
    state = AgentState()
    state.set_trustable_ips("10.0.0.1,10.0.0.2")
    assert state.is_trustable(remote) is expected


def test_states_are_independent():
    first, second = AgentState(), AgentState()
    first.report_ports.append(22)
    assert second.report_ports == []


def test_init_root_dir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert init_root_dir() == os.getcwd()
    assert STATE.root == os.getcwd()


def test_agent_ip_prefers_config():
    STATE.local_ip = "10.1.1.1"
    set_config(GlobalConfig(ip="10.2.2.2"))
    assert agent_ip() == "10.2.2.2"
    set_config(GlobalConfig())
    assert agent_ip() == "10.1.1.1"


def test_init_local_ip_uses_heartbeat_connection():
    listener = socket.socket()
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    port = listener.getsockname()[1]
    accepted = threading.Thread(target=lambda: listener.accept()[0].close(), daemon=True)
    accepted.start()
    try:
        STATE.local_ip = ""
        set_config(GlobalConfig(heartbeat=HeartbeatConfig(enabled=True, addr=f"127.0.0.1:{port}")))
        assert init_local_ip() == "127.0.0.1"
        assert STATE.local_ip == "127.0.0.1"
    finally:
        accepted.join(timeout=5)
        listener.close()


def test_init_local_ip_disabled_leaves_state():
    STATE.local_ip = "10.9.9.9"
    set_config(GlobalConfig())
    assert init_local_ip() == "10.9.9.9"


def test_plugin_version_not_enabled():
    set_config(GlobalConfig())
    assert get_curr_plugin_version() == "plugin not enabled"


def test_plugin_version_missing_dir(tmp_path):
    set_config(GlobalConfig(plugin=PluginConfig(enabled=True, dir=str(tmp_path / "missing"))))
    assert get_curr_plugin_version() == "plugin dir not existent"


def test_plugin_version_not_a_repository(tmp_path, monkeypatch):
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path.parent))
    set_config(GlobalConfig(plugin=PluginConfig(enabled=True, dir=str(tmp_path))))
    assert get_curr_plugin_version().startswith("Error:")