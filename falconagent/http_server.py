"""The agent's HTTP interface: information, administration, push and static pages."""

from __future__ import annotations

import json
import logging
import mimetypes
import os
import posixpath
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable
from urllib.parse import unquote, urlsplit

from falconagent.config import VERSION, ConfigError, config, config_file, parse_config
from falconagent.http_info import INFO_ERRORS, info_routes
from falconagent.model import MetricValue
from falconagent.rpc import send_to_transfer
from falconagent.state import STATE

log = logging.getLogger(__name__)

_TEXT = "text/plain; charset=utf-8"
_JSON = "application/json; charset=UTF-8"


@dataclass
class Response:
    """An HTTP response ready to be written."""

    status: int = 200
    body: bytes = b""
    content_type: str = _TEXT
    headers: dict[str, str] = field(default_factory=dict)


def _text(text: str, status: int = 200) -> Response:
    return Response(status=status, body=text.encode("utf-8"))


def _error(text: str, status: int) -> Response:
    return _text(text + "\n", status)


def _not_found() -> Response:
    return _error("404 page not found", 404)


def render_json(value: Any) -> Response:
    """Serialise a value as a JSON response; 500 if it cannot be serialised."""
    try:
        body = json.dumps(value, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as exc:
        return _error(str(exc), 500)
    return Response(status=200, body=body, content_type=_JSON)


def render_data(data: Any) -> Response:
    """Wrap data in a success envelope."""
    return render_json({"msg": "success", "data": data})


def render_msg(msg: str) -> Response:
    """A JSON response holding only a message."""
    return render_json({"msg": msg})


def _exit_soon() -> None:
    timer = threading.Timer(1.0, os._exit, args=(0,))
    timer.daemon = True
    timer.start()


def _git(args: list[str], cwd: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args], cwd=cwd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError as exc:
        return str(exc)
    if result.returncode != 0:
        return f"exit status {result.returncode}"
    return None


Handler = Callable[[bytes, str], Response]


def _info_handler(fn: Callable[[], Any]) -> Handler:
    def handler(body: bytes, remote_addr: str) -> Response:
        try:
            data = fn()
        except INFO_ERRORS as exc:
            return render_msg(str(exc))
        return render_data(data)

    return handler


class AgentApp:
    """Routes requests to the agent's handlers."""

    def __init__(self, manager: Any) -> None:
        self.manager = manager
        self.send: Callable[[list[MetricValue]], Any] = send_to_transfer
        self.on_exit: Callable[[], None] = _exit_soon
        self._routes: dict[str, Handler] = {
            path: _info_handler(fn) for path, fn in info_routes().items()
        }
        self._routes.update(
            {
                "/exit": self._exit,
                "/config/reload": self._config_reload,
                "/workdir": self._workdir,
                "/ips": self._ips,
                "/health": lambda body, remote: _text("ok"),
                "/version": lambda body, remote: _text(VERSION),
                "/plugin/update": self._plugin_update,
                "/plugin/reset": self._plugin_reset,
                "/plugins": self._plugins,
                "/v1/push": self._push,
                "/run": self._run,
            }
        )

    def dispatch(self, method: str, path: str, body: bytes, remote_addr: str) -> Response:
        """Answer one request."""
        url_path = urlsplit(path).path or "/"
        handler = self._routes.get(url_path)
        if handler is not None:
            return handler(body, remote_addr)
        return self._static(url_path)

    def _exit(self, body: bytes, remote_addr: str) -> Response:
        if not STATE.is_trustable(remote_addr):
            return _text("no privilege")
        self.on_exit()
        return _text("exiting...")

    def _config_reload(self, body: bytes, remote_addr: str) -> Response:
        if not STATE.is_trustable(remote_addr):
            return _text("no privilege")
        try:
            cfg = parse_config(config_file())
        except ConfigError as exc:
            return _error(str(exc), 500)
        return render_data(cfg.to_dict())

    def _workdir(self, body: bytes, remote_addr: str) -> Response:
        return render_data(os.path.dirname(os.path.abspath(sys.argv[0])))

    def _ips(self, body: bytes, remote_addr: str) -> Response:
        return render_data(list(STATE.trustable_ips))

    def _plugin_update(self, body: bytes, remote_addr: str) -> Response:
        plugin = config().plugin
        if not plugin.enabled:
            return _text("plugin not enabled")
        directory = plugin.dir
        parent = os.path.dirname(directory) or "."
        try:
            os.makedirs(parent, exist_ok=True)
        except OSError as exc:
            return _text(f"git clone in dir:{parent} fail. error: {exc}")
        if os.path.exists(directory):
            err = _git(["pull"], directory)
            if err is not None:
                return _text(f"git pull in dir:{directory} fail. error: {err}")
        else:
            err = _git(["clone", plugin.git, os.path.basename(directory)], parent)
            if err is not None:
                return _text(f"git clone in dir:{parent} fail. error: {err}")
        return _text("success")

    def _plugin_reset(self, body: bytes, remote_addr: str) -> Response:
        plugin = config().plugin
        if not plugin.enabled:
            return _text("plugin not enabled")
        directory = plugin.dir
        if os.path.exists(directory):
            err = _git(["reset", "--hard"], directory)
            if err is not None:
                return _text(f"git reset --hard in dir:{directory} fail. error: {err}")
        return _text("success")

    def _plugins(self, body: bytes, remote_addr: str) -> Response:
        return render_data({key: p.to_dict() for key, p in self.manager.plugins.items()})

    def _push(self, body: bytes, remote_addr: str) -> Response:
        if not body:
            return _error("body is blank", 400)
        try:
            data = json.loads(body)
            if data is None:
                data = []
            if not isinstance(data, list):
                raise ValueError("expected a JSON array")
            metrics = [MetricValue.from_dict(item) for item in data]
        except (ValueError, TypeError, KeyError, AttributeError):
            return _error("connot decode body", 400)
        if metrics:
            self.send(metrics)
        return _text("success")

    def _run(self, body: bytes, remote_addr: str) -> Response:
        if not config().http.backdoor:
            return _text("/run disabled")
        if not STATE.is_trustable(remote_addr):
            return _text("no privilege")
        if not body:
            return _error("body is blank", 400)
        try:
            result = subprocess.run(
                ["sh", "-c", body.decode("utf-8", errors="replace")],
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        except OSError as exc:
            return _text(f"exec fail: {exc}")
        if result.returncode != 0:
            return _text(f"exec fail: exit status {result.returncode}")
        return Response(status=200, body=result.stdout)

    def _static(self, url_path: str) -> Response:
        public = os.path.join(STATE.root or os.getcwd(), "public")
        clean = posixpath.normpath("/" + unquote(url_path))
        target = os.path.join(public, clean.lstrip("/"))
        if url_path.endswith("/") and not os.path.isfile(os.path.join(target, "index.html")):
            return _not_found()
        if os.path.isdir(target):
            if not url_path.endswith("/"):
                return Response(status=301, headers={"Location": url_path + "/"})
            target = os.path.join(target, "index.html")
        if not os.path.isfile(target):
            return _not_found()
        try:
            with open(target, "rb") as handle:
                content = handle.read()
        except OSError:
            return _not_found()
        content_type = mimetypes.guess_type(target)[0] or "application/octet-stream"
        return Response(status=200, body=content, content_type=content_type)


class AgentRequestHandler(BaseHTTPRequestHandler):
    """Hands every request to the server's AgentApp."""

    server_version = "falcon-agent"

    def _handle(self) -> None:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            length = 0
        body = self.rfile.read(length) if length > 0 else b""
        remote = f"{self.client_address[0]}:{self.client_address[1]}"
        resp = self.server.app.dispatch(self.command, self.path, body, remote)
        self.send_response(resp.status)
        self.send_header("Content-Type", resp.content_type)
        self.send_header("Content-Length", str(len(resp.body)))
        for key, value in resp.headers.items():
            self.send_header(key, value)
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(resp.body)

    do_GET = _handle
    do_POST = _handle
    do_PUT = _handle
    do_DELETE = _handle
    do_HEAD = _handle

    def log_message(self, format: str, *args: Any) -> None:
        log.debug("%s - %s", self.address_string(), format % args)


def make_server(addr: str, app: AgentApp) -> ThreadingHTTPServer:
    """Bind an HTTP server for the app to a "host:port" address."""
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    server = ThreadingHTTPServer((host.strip("[]"), int(port)), AgentRequestHandler)
    server.daemon_threads = True
    server.app = app  # type: ignore[attr-defined]
    return server


def start(app: AgentApp) -> None:
    """Serve the app on the configured address, if HTTP is enabled."""
    http_cfg = config().http
    if not http_cfg.enabled or not http_cfg.listen:
        return
    server = make_server(http_cfg.listen, app)
    log.info("listening %s", http_cfg.listen)
    try:
        server.serve_forever()
    finally:
        server.server_close()