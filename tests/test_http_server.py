import json
import os
import threading
import urllib.request

import pytest

from falconagent import config as config_module
from falconagent.config import VERSION, GlobalConfig, config, parse_config, set_config
from falconagent.http_server import (
    AgentApp,
    make_server,
    render_data,
    render_json,
    render_msg,
)
from falconagent.plugins import Plugin, PluginManager
from falconagent.state import STATE


def _cfg_dict(backdoor=False, plugin_enabled=False, plugin_dir=""):
    return {
        "debug": False,
        "hostname": "agent-host",
        "ip": "",
        "plugin": {"enabled": plugin_enabled, "dir": plugin_dir, "git": "", "logs": ""},
        "heartbeat": {"enabled": False, "addr": "", "interval": 60, "timeout": 1000},
        "transfer": {"enabled": False, "addrs": [], "interval": 60, "timeout": 1000},
        "http": {"enabled": True, "listen": "127.0.0.1:0", "backdoor": backdoor},
        "collector": {"ifacePrefix": [], "mountPoint": []},
        "default_tags": {},
        "ignore": {},
    }


@pytest.fixture(autouse=True)
def _restore_state():
    try:
        old_cfg = config()
    except Exception:
        old_cfg = None
    old_ips = list(STATE.trustable_ips)
    old_root = STATE.root
    yield
    if old_cfg is not None:
        set_config(old_cfg)
    STATE.trustable_ips = old_ips
    STATE.root = old_root


def _app(**kwargs):
    set_config(GlobalConfig.from_dict(_cfg_dict(**kwargs)))
    return AgentApp(PluginManager(runner=lambda plugin: None))


def test_render_data_envelope():
    resp = render_data([1, 2])
    assert resp.status == 200
    assert resp.content_type.startswith("application/json")
    assert json.loads(resp.body) == {"msg": "success", "data": [1, 2]}


def test_render_msg():
    assert json.loads(render_msg("oops").body) == {"msg": "oops"}


def test_render_json_unserialisable():
    assert render_json({"x": object()}).status == 500


def test_health_and_version():
    app = _app()
    assert app.dispatch("GET", "/health", b"", "10.0.0.1:1").body == b"ok"
    assert app.dispatch("GET", "/version", b"", "10.0.0.1:1").body == VERSION.encode()
    assert app.dispatch("GET", "/health?x=1", b"", "10.0.0.1:1").body == b"ok"


def test_exit_requires_trust():
    app = _app()
    calls = []
    app.on_exit = lambda: calls.append(True)
    assert app.dispatch("GET", "/exit", b"", "10.9.9.9:5").body == b"no privilege"
    assert calls == []
    assert app.dispatch("GET", "/exit", b"", "127.0.0.1:5").body == b"exiting..."
    assert calls == [True]


def test_ips_lists_trusted():
    app = _app()
    STATE.set_trustable_ips("10.0.0.5,10.0.0.6")
    data = json.loads(app.dispatch("GET", "/ips", b"", "1.2.3.4:1").body)["data"]
    assert data == ["10.0.0.5", "10.0.0.6"]


def test_config_reload(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps(_cfg_dict()))
    parse_config(str(path))
    app = AgentApp(PluginManager(runner=lambda plugin: None))
    assert app.dispatch("GET", "/config/reload", b"", "10.1.1.1:9").body == b"no privilege"
    resp = app.dispatch("GET", "/config/reload", b"", "127.0.0.1:9")
    payload = json.loads(resp.body)
    assert payload["msg"] == "success"
    assert payload["data"] == json.loads(json.dumps(config().to_dict()))


def test_push_blank_body():
    app = _app()
    resp = app.dispatch("POST", "/v1/push", b"", "1.1.1.1:1")
    assert resp.status == 400
    assert resp.body == b"body is blank\n"


def test_push_bad_body():
    app = _app()
    resp = app.dispatch("POST", "/v1/push", b"not json", "1.1.1.1:1")
    assert resp.status == 400


def test_push_sends_metrics():
    app = _app()
    sent = []
    app.send = sent.append
    item = {
        "endpoint": "agent-host",
        "metric": "agent.test",
        "value": 1,
        "step": 60,
        "counterType": "GAUGE",
        "tags": "",
        "timestamp": 1,
    }
    resp = app.dispatch("POST", "/v1/push", json.dumps([item]).encode(), "1.1.1.1:1")
    assert resp.body == b"success"
    assert len(sent) == 1
    assert [mv.metric for mv in sent[0]] == ["agent.test"]


def test_run_disabled():
    app = _app(backdoor=False)
    assert app.dispatch("POST", "/run", b"echo hi", "127.0.0.1:1").body == b"/run disabled"


def test_run_checks_trust_and_body():
    app = _app(backdoor=True)
    assert app.dispatch("POST", "/run", b"echo hi", "10.2.2.2:1").body == b"no privilege"
    assert app.dispatch("POST", "/run", b"", "127.0.0.1:1").status == 400


def test_run_executes_shell():
    app = _app(backdoor=True)
    assert app.dispatch("POST", "/run", b"echo hi", "127.0.0.1:1").body == b"hi\n"
    failed = app.dispatch("POST", "/run", b"exit 3", "127.0.0.1:1").body
    assert failed.startswith(b"exec fail: ")


def test_plugin_routes_disabled():
    app = _app(plugin_enabled=False)
    assert app.dispatch("GET", "/plugin/update", b"", "1.1.1.1:1").body == b"plugin not enabled"
    assert app.dispatch("GET", "/plugin/reset", b"", "1.1.1.1:1").body == b"plugin not enabled"


def test_plugin_reset_missing_dir(tmp_path):
    app = _app(plugin_enabled=True, plugin_dir=str(tmp_path / "absent"))
    assert app.dispatch("GET", "/plugin/reset", b"", "1.1.1.1:1").body == b"success"


def test_plugins_listing():
    app = _app()
    plugin = Plugin(file_path="sys/60_ntp.py", mtime=1, cycle=60)
    app.manager.add_new({plugin.file_path: plugin})
    try:
        data = json.loads(app.dispatch("GET", "/plugins", b"", "1.1.1.1:1").body)["data"]
    finally:
        app.manager.clear()
    assert data == {"sys/60_ntp.py": plugin.to_dict()}


def test_info_route_through_dispatch():
    app = _app()
    payload = json.loads(app.dispatch("GET", "/proc/cpu/num", b"", "1.1.1.1:1").body)
    assert payload == {"msg": "success", "data": os.cpu_count() or 1}


def test_static_pages(tmp_path):
    app = _app()
    public = tmp_path / "public"
    (public / "docs").mkdir(parents=True)
    (public / "index.html").write_text("<p>home</p>")
    (public / "a.txt").write_text("hello")
    (tmp_path / "secret.txt").write_text("hidden")
    STATE.root = str(tmp_path)

    home = app.dispatch("GET", "/", b"", "1.1.1.1:1")
    assert home.body == b"<p>home</p>"
    assert home.content_type.startswith("text/html")
    assert app.dispatch("GET", "/a.txt", b"", "1.1.1.1:1").body == b"hello"
    assert app.dispatch("GET", "/docs/", b"", "1.1.1.1:1").status == 404
    assert app.dispatch("GET", "/missing.txt", b"", "1.1.1.1:1").status == 404
    assert app.dispatch("GET", "/../secret.txt", b"", "1.1.1.1:1").status == 404
    redirect = app.dispatch("GET", "/docs", b"", "1.1.1.1:1")
    assert redirect.status == 301
    assert redirect.headers["Location"] == "/docs/"


def test_make_server_rejects_address_without_port():
    with pytest.raises(ValueError):
        make_server("localhost", _app())


def test_make_server_round_trip():
    app = _app()
    server = make_server("127.0.0.1:0", app)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        port = server.server_address[1]
        with urllib.request.urlopen(f"http://127.0.0.1:{port}/health", timeout=5) as resp:
            assert resp.status == 200
            assert resp.read() == b"ok"
    finally:
        server.shutdown()
        server.server_close()
    assert config_module.VERSION == VERSION