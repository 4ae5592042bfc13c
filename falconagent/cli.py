"""Command line entry point of the monitoring agent."""

from __future__ import annotations

import argparse
import sys
import threading

from falconagent.collector import check_collector, init_data_history, start_collectors
from falconagent.config import VERSION, ConfigError, init_log, parse_config
from falconagent.heartbeat import start_sync_tasks
from falconagent.http_server import AgentApp, start
from falconagent.plugins import PluginManager
from falconagent.rpc import hbs_client, init_hbs_client
from falconagent.state import init_local_ip, init_root_dir


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="falcon-agent", description="Host monitoring agent.")
    parser.add_argument("-c", dest="cfg", default="cfg.json", help="configuration file")
    parser.add_argument("-v", dest="version", action="store_true", help="show version")
    parser.add_argument("-check", "--check", dest="check", action="store_true", help="check collector")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the agent; return the process exit status."""
    args = _parser().parse_args(argv)

    if args.version:
        print(VERSION)
        return 0

    if args.check:
        for name, ok in check_collector().items():
            print(name.ljust(8), "...", "ok" if ok else "fail")
        return 0

    try:
        cfg = parse_config(args.cfg)
        init_log("debug" if cfg.debug else "info")
    except ConfigError as exc:
        print(exc, file=sys.stderr)
        return 1

    try:
        init_root_dir()
    except OSError as exc:
        print(f"getwd fail: {exc}", file=sys.stderr)
        return 1
    init_local_ip()
    init_hbs_client()

    stop = threading.Event()
    threading.Thread(target=init_data_history, args=(stop,), name="history", daemon=True).start()

    manager = PluginManager()
    start_sync_tasks(hbs_client(), manager, stop)
    start_collectors(stop)

    app = AgentApp(manager)
    threading.Thread(target=start, args=(app,), name="http", daemon=True).start()

    try:
        stop.wait()
    except KeyboardInterrupt:
        pass
    finally:
        stop.set()
        manager.clear()
    return 0


if __name__ == "__main__":
    sys.exit(main())