import json
import socket
import socketserver
import threading
from unittest import mock

import pytest

from falconagent import rpc
from falconagent.config import GlobalConfig, HeartbeatConfig, TransferConfig, config, set_config
from falconagent.model import MetricValue, counter_value, gauge_value
from falconagent.rpc import (
    RpcError,
    SingleConnRpcClient,
    apply_default_tags,
    hbs_client,
    init_hbs_client,
    send_metrics,
    send_to_transfer,
)


class _Handler(socketserver.StreamRequestHandler):
    def handle(self):
        self.server.connections += 1
        for line in self.rfile:
            request = json.loads(line)
            self.server.requests.append(request)
            reply = self.server.responder(request)
            if reply is not None:
                self.wfile.write(json.dumps(reply).encode() + b"\n")
                self.wfile.flush()


class _FakeServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, responder):
        super().__init__(("127.0.0.1", 0), _Handler)
        self.responder = responder
        self.requests = []
        self.connections = 0

    @property
    def addr(self):
        return f"127.0.0.1:{self.server_address[1]}"


@pytest.fixture
def make_server():
    servers = []

    def factory(responder):
        server = _FakeServer(responder)
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.shutdown()
        server.server_close()


@pytest.fixture(autouse=True)
def restore_config():
    saved = config()
    yield
    set_config(saved)


def _ok(result):
    return lambda request: {"id": request["id"], "result": result, "error": None}


def _dead_addr():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return f"127.0.0.1:{port}"


def test_call_returns_result_and_sends_request(make_server):
    server = make_server(_ok({"code": 0}))
    client = SingleConnRpcClient(server.addr, 1.0)
    try:
        assert client.call("Agent.ReportStatus", {"hostname": "h"}) == {"code": 0}
    finally:
        client.close()
    assert server.requests[0]["method"] == "Agent.ReportStatus"
    assert server.requests[0]["params"] == [{"hostname": "h"}]


def test_calls_share_one_connection(make_server):
    server = make_server(_ok("x"))
    client = SingleConnRpcClient(server.addr, 1.0)
    try:
        client.call("A.B", 1)
        client.call("A.B", 2)
    finally:
        client.close()
    assert server.connections == 1
    assert server.requests[0]["id"] != server.requests[1]["id"]


def test_server_error_raises_and_reconnects(make_server):
    server = make_server(lambda r: {"id": r["id"], "result": None, "error": "boom"})
    client = SingleConnRpcClient(server.addr, 1.0)
    try:
        with pytest.raises(RpcError, match="boom"):
            client.call("A.B", None)
        with pytest.raises(RpcError):
            client.call("A.B", None)
    finally:
        client.close()
    assert server.connections == 2


def test_call_timeout(make_server):
    server = make_server(lambda request: None)
    client = SingleConnRpcClient(server.addr, 1.0)
    client.call_timeout = 0.2
    try:
        with pytest.raises(RpcError, match="rpc call timeout"):
            client.call("A.B", None)
    finally:
        client.close()


def test_dial_failure_retries_then_raises():
    client = SingleConnRpcClient(_dead_addr(), 0.5)
    with mock.patch("falconagent.rpc.time.sleep") as sleep:
        with pytest.raises(RpcError, match="dial"):
            client.call("A.B", None)
    assert sleep.call_count == client.max_dial_retries


def test_apply_default_tags():
    metrics = [gauge_value("a", 1), counter_value("b", 2, "cpu=1")]
    tagged = apply_default_tags(metrics, {"env": "test"})
    assert [mv.tags for mv in tagged] == ["env=test", "cpu=1,env=test"]
    assert metrics[0].tags == ""


def test_apply_default_tags_without_defaults():
    metrics = [gauge_value("a", 1, "x=y")]
    assert apply_default_tags(metrics, {}) == metrics


def test_send_to_transfer_empty_returns_none():
    assert send_to_transfer([]) is None


def test_send_to_transfer_tags_and_sends(make_server):
    server = make_server(_ok({"message": "ok"}))
    set_config(
        GlobalConfig(
            transfer=TransferConfig(enabled=True, addrs=[server.addr], timeout=1000),
            default_tags={"env": "test"},
        )
    )
    result = send_to_transfer([gauge_value("cpu.idle", 1.5, "cpu=1")])
    assert result == {"message": "ok"}
    request = server.requests[0]
    assert request["method"] == "Transfer.Update"
    sent = [MetricValue.from_dict(item) for item in request["params"][0]]
    assert sent == [gauge_value("cpu.idle", 1.5, "cpu=1,env=test")]


def test_send_metrics_falls_back_to_working_server(make_server):
    server = make_server(_ok("done"))
    set_config(
        GlobalConfig(transfer=TransferConfig(enabled=True, addrs=[_dead_addr(), server.addr], timeout=500))
    )
    with mock.patch("falconagent.rpc.time.sleep"):
        assert send_metrics([gauge_value("a", 1)]) == "done"


def test_send_metrics_all_fail_returns_none():
    set_config(GlobalConfig(transfer=TransferConfig(enabled=True, addrs=[_dead_addr()], timeout=500)))
    with mock.patch("falconagent.rpc.time.sleep"):
        assert send_metrics([gauge_value("a", 1)]) is None


def test_init_hbs_client():
    set_config(GlobalConfig(heartbeat=HeartbeatConfig(enabled=True, addr="127.0.0.1:6030", timeout=500)))
    client = init_hbs_client()
    assert client.server == "127.0.0.1:6030"
    assert client.timeout == 0.5
    assert hbs_client() is client
    assert rpc.hbs_client() is client