from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from . import __version__
from .daemon.server import call_daemon, instance_sock_path
from .kernel.config import WiredConfig, load_config
from .kernel.errors import ConfigurationError
from .kernel.registry import InstanceRegistry


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _config() -> WiredConfig:
    return load_config()


def _sock_or_error(config: WiredConfig, instance: int) -> Optional[Path]:
    sock = instance_sock_path(config, instance or None)
    if sock is None:
        _print_json(
            {"ok": False, "error": {"code": "ambiguous_instance", "message": "no single live instance; pass --instance N"}}
        )
    return sock


def cmd_daemon(args: argparse.Namespace) -> int:
    from .daemon_main import main as daemon_main

    argv = [args.action]
    if args.action in ("stop", "status") and args.instance:
        argv += ["--instance", str(args.instance)]
    return daemon_main(argv)


def cmd_mcp(_: argparse.Namespace) -> int:
    from .ports.mcp.main import main as mcp_main

    return mcp_main()


def cmd_overwatch(_: argparse.Namespace) -> int:
    from .ports.overwatch.__main__ import main as overwatch_main

    return overwatch_main()


def cmd_inject(args: argparse.Namespace) -> int:
    config = _config()
    sock = _sock_or_error(config, args.instance)
    if sock is None:
        return 1
    resp = call_daemon({"op": "inject", "args": {"source": args.source, "content": args.text}}, sock_path=sock)
    _print_json(resp)
    return 0 if resp.get("ok") else 1


def cmd_post(args: argparse.Namespace) -> int:
    config = _config()
    sock = _sock_or_error(config, args.instance)
    if sock is None:
        return 1
    resp = call_daemon({"op": "post", "args": {"channel_type": args.channel, "text": args.text}}, sock_path=sock)
    _print_json(resp)
    return 0 if resp.get("ok") else 1


def cmd_status(args: argparse.Namespace) -> int:
    config = _config()
    sock = _sock_or_error(config, args.instance)
    if sock is None:
        return 1
    resp = call_daemon({"op": "status"}, sock_path=sock)
    _print_json(resp)
    return 0 if resp.get("ok") else 1


def cmd_instances(_: argparse.Namespace) -> int:
    config = _config()
    records = InstanceRegistry(config.instance_dir).list_records()
    _print_json({"ok": True, "result": {"instances": [r.model_dump() for r in records]}})
    return 0


def cmd_version(_: argparse.Namespace) -> int:
    print(__version__)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="wired", description="WIRED (chat-relayed LLM instances with an overwatcher)")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_daemon = sub.add_parser("daemon", help="Manage instance supervisors")
    p_daemon.add_argument("action", choices=["run", "start", "stop", "status"], help="Action")
    p_daemon.add_argument("--instance", type=int, default=0, help="Instance slot for stop/status")
    p_daemon.set_defaults(func=cmd_daemon)

    p_mcp = sub.add_parser("mcp", help="Run the MCP chat gateway on stdio")
    p_mcp.set_defaults(func=cmd_mcp)

    p_ow = sub.add_parser("overwatch", help="Run the overwatcher for an instance (normally started by the daemon)")
    p_ow.set_defaults(func=cmd_overwatch)

    p_inject = sub.add_parser("inject", help="Inject a message into an instance's LLM child")
    p_inject.add_argument("text", help="Message text")
    p_inject.add_argument("--source", default="external", help="Source tag (default: external)")
    p_inject.add_argument("--instance", type=int, default=0, help="Instance slot (default: the only live one)")
    p_inject.set_defaults(func=cmd_inject)

    p_post = sub.add_parser("post", help="Post a message to an instance channel")
    p_post.add_argument("text", help="Message text")
    p_post.add_argument("--channel", default="primary", help="primary | overwatch (default: primary)")
    p_post.add_argument("--instance", type=int, default=0, help="Instance slot (default: the only live one)")
    p_post.set_defaults(func=cmd_post)

    p_status = sub.add_parser("status", help="Show an instance's status")
    p_status.add_argument("--instance", type=int, default=0, help="Instance slot (default: the only live one)")
    p_status.set_defaults(func=cmd_status)

    p_inst = sub.add_parser("instances", help="List live instances")
    p_inst.set_defaults(func=cmd_instances)

    p_ver = sub.add_parser("version", help="Show version")
    p_ver.set_defaults(func=cmd_version)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return int(args.func(args))
    except ConfigurationError as e:
        print(f"wired: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
