from __future__ import annotations

import argparse
import logging
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Optional

from .daemon.server import WiredDaemon, call_daemon, instance_sock_path
from .kernel.config import WiredConfig, load_config
from .kernel.errors import ConfigurationError
from .kernel.registry import InstanceRegistry
from .util.obslog import setup_root_json_logging

logger = logging.getLogger("wired.daemon")


def _spawn_daemon(config: WiredConfig) -> int:
    config.instance_dir.mkdir(parents=True, exist_ok=True)
    log_f = (config.instance_dir / "wired-daemon.out").open("a", encoding="utf-8")
    env = os.environ.copy()
    env["WIRED_HOME"] = str(config.home)
    p = subprocess.Popen(
        [sys.executable, "-m", "wired.daemon_main", "run"],
        stdout=log_f,
        stderr=log_f,
        stdin=subprocess.DEVNULL,
        env=env,
        start_new_session=True,
        cwd=str(Path.cwd()),
    )
    return int(p.pid)


def run(config: WiredConfig) -> int:
    setup_root_json_logging(component="daemon", level=config.log_level)
    try:
        config.require("discord_token", "guild_id")
    except ConfigurationError as e:
        logger.error("%s (copy .env.example to .env and fill in your values)", e.message)
        return 1

    from .ports.im.adapters.discord import DiscordAdapter

    daemon = WiredDaemon(config, DiscordAdapter(config.discord_token))
    return daemon.run()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="wired-daemon", description="WIRED instance supervisor")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Run a new instance in the foreground")
    sub.add_parser("start", help="Start a new instance in the background")
    p_stop = sub.add_parser("stop", help="Stop an instance")
    p_stop.add_argument("--instance", type=int, default=0, help="Instance slot (default: the only live one)")
    p_status = sub.add_parser("status", help="Instance status")
    p_status.add_argument("--instance", type=int, default=0, help="Instance slot (default: the only live one)")

    args = parser.parse_args(argv)
    try:
        config = load_config()
    except ConfigurationError as e:
        print(f"wired-daemon: {e.message}", file=sys.stderr)
        return 1

    if args.cmd == "run":
        return run(config)

    if args.cmd == "start":
        pid = _spawn_daemon(config)
        print(f"wired-daemon: started pid={pid}")
        return 0

    sock = instance_sock_path(config, args.instance or None)
    if sock is None:
        print("wired-daemon: no single live instance; pass --instance N", file=sys.stderr)
        return 1

    if args.cmd == "stop":
        resp = call_daemon({"op": "shutdown"}, sock_path=sock)
        if resp.get("ok"):
            print("wired-daemon: shutdown requested")
            return 0
        record = InstanceRegistry(config.instance_dir).load(args.instance) if args.instance else None
        if record is not None:
            try:
                os.kill(record.owner_pid, signal.SIGTERM)
                print("wired-daemon: SIGTERM sent")
                return 0
            except OSError:
                pass
        print("wired-daemon: not running")
        return 0

    if args.cmd == "status":
        resp = call_daemon({"op": "ping"}, sock_path=sock)
        if resp.get("ok"):
            result = resp.get("result") or {}
            print(f"wired-daemon: instance {result.get('instance')} running pid={result.get('pid')} version={result.get('version')}")
            return 0
        print("wired-daemon: not running")
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
