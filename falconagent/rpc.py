"""JSON-RPC client for the heartbeat and transfer services."""

from __future__ import annotations

import json
import logging
import random
import socket
import threading
import time
from dataclasses import replace
from typing import Any, Iterable

from falconagent.config import config
from falconagent.model import MetricValue

log = logging.getLogger(__name__)


class RpcError(Exception):
    """Raised when a remote call cannot be made or the server reports an error."""


def _split_host_port(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    return host.strip("[]"), int(port)


class SingleConnRpcClient:
    """A JSON-RPC client that keeps one connection and reconnects on failure."""

    call_timeout = 10.0
    max_dial_retries = 3

    def __init__(self, server: str, timeout: float) -> None:
        self.server = server
        self.timeout = timeout
        self._lock = threading.RLock()
        self._sock: socket.socket | None = None
        self._reader: Any = None
        self._next_id = 0

    def __repr__(self) -> str:
        return f"SingleConnRpcClient(server={self.server!r}, timeout={self.timeout!r})"

    def close(self) -> None:
        """Drop the connection; the next call opens a new one."""
        with self._lock:
            if self._reader is not None:
                self._reader.close()
                self._reader = None
            if self._sock is not None:
                self._sock.close()
                self._sock = None

    def _connect(self) -> None:
        if self._sock is not None:
            return
        try:
            address = _split_host_port(self.server)
        except ValueError as exc:
            raise RpcError(str(exc)) from exc
        retry = 1
        while True:
            try:
                sock = socket.create_connection(address, timeout=self.timeout or None)
            except OSError as exc:
                log.warning("dial %s fail: %s", self.server, exc)
                if retry > self.max_dial_retries:
                    raise RpcError(f"dial {self.server} fail: {exc}") from exc
                time.sleep(2.0**retry)
                retry += 1
                continue
            self._sock = sock
            self._reader = sock.makefile("rb")
            return

    def _read_reply(self, request_id: int) -> dict:
        while True:
            line = self._reader.readline()
            if not line:
                raise ConnectionError("connection closed by server")
            if not line.strip():
                continue
            reply = json.loads(line)
            if not isinstance(reply, dict):
                raise ValueError("malformed rpc reply")
            if reply.get("id") == request_id:
                return reply

    def call(self, method: str, params: Any) -> Any:
        """Call a remote method with one argument and return its result."""
        with self._lock:
            self._connect()
            request_id = self._next_id
            self._next_id += 1
            payload = json.dumps({"method": method, "params": [params], "id": request_id})
            try:
                self._sock.settimeout(self.call_timeout)
                self._sock.sendall(payload.encode("utf-8") + b"\n")
                reply = self._read_reply(request_id)
            except TimeoutError:
                log.warning("rpc call timeout %r => %s", self, self.server)
                self.close()
                raise RpcError(f"{self.server} rpc call timeout") from None
            except (OSError, ValueError) as exc:
                self.close()
                raise RpcError(f"{self.server} rpc call fail: {exc}") from exc
            error = reply.get("error")
            if error is not None:
                self.close()
                raise RpcError(str(error))
            return reply.get("result")


_hbs_client: SingleConnRpcClient | None = None
_transfer_clients: dict[str, SingleConnRpcClient] = {}
_transfer_lock = threading.Lock()


def init_hbs_client() -> SingleConnRpcClient | None:
    """Create the heartbeat client if the heartbeat is enabled."""
    global _hbs_client
    heartbeat = config().heartbeat
    if heartbeat.enabled:
        _hbs_client = SingleConnRpcClient(heartbeat.addr, heartbeat.timeout / 1000.0)
    return _hbs_client


def hbs_client() -> SingleConnRpcClient | None:
    """Return the heartbeat client, if one was created."""
    return _hbs_client


def _transfer_client(addr: str, timeout_ms: int) -> SingleConnRpcClient:
    with _transfer_lock:
        client = _transfer_clients.get(addr)
        if client is None:
            client = SingleConnRpcClient(addr, timeout_ms / 1000.0)
            _transfer_clients[addr] = client
        return client


def send_metrics(metrics: Iterable[MetricValue]) -> Any:
    """Send metrics to the transfer servers in random order until one accepts."""
    transfer = config().transfer
    addrs = list(transfer.addrs)
    payload = [mv.to_dict() for mv in metrics]
    for addr in random.sample(addrs, len(addrs)):
        client = _transfer_client(addr, transfer.timeout)
        try:
            return client.call("Transfer.Update", payload)
        except RpcError as exc:
            log.error("call Transfer.Update fail: %r %s", client, exc)
    return None


def apply_default_tags(
    metrics: Iterable[MetricValue], default_tags: dict[str, str]
) -> list[MetricValue]:
    """Return copies of the metrics with the default tags appended."""
    if not default_tags:
        return list(metrics)
    joined = ",".join(f"{key}={value}" for key, value in default_tags.items())
    return [replace(mv, tags=f"{mv.tags},{joined}" if mv.tags else joined) for mv in metrics]


def send_to_transfer(metrics: list[MetricValue]) -> Any:
    """Tag and send metrics to the transfer service; return its response."""
    if not metrics:
        return None
    cfg = config()
    tagged = apply_default_tags(metrics, cfg.default_tags)
    if cfg.debug:
        log.debug("=> <Total=%d> %r", len(tagged), tagged[0])
    response = send_metrics(tagged)
    if cfg.debug:
        log.debug("<= %r", response)
    return response