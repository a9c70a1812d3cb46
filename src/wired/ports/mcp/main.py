"""
WIRED MCP gateway, stdio mode.

Launched by the LLM CLI through `--mcp-config`; the supervisor passes the
channel bindings in the environment.

Usage:
    python -m wired.ports.mcp.main

or through the CLI:
    wired mcp
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional, Set, TextIO, Tuple

from ... import __version__
from ...contracts.v1 import ChannelKind, ChatMessage
from ...kernel.channels import normalize_kind
from ...kernel.config import WiredConfig, load_config
from ...kernel.errors import ConfigurationError, WiredError
from ...kernel.registry import InstanceRegistry
from ...kernel.relay import RelayGateway
from ...util.obslog import setup_root_json_logging
from .server import MCP_TOOLS, handle_tool_call

logger = logging.getLogger("wired.mcp")


def _make_response(id: Any, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": id, "result": result}


def _make_error(id: Any, code: int, message: str, data: Any = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": id, "error": error}


def _tool_result(payload: Dict[str, Any], *, is_error: bool = False) -> Dict[str, Any]:
    out: Dict[str, Any] = {"content": [{"type": "text", "text": json.dumps(payload, ensure_ascii=False, indent=2)}]}
    if is_error:
        out["isError"] = True
    return out


class GatewayServer:
    """JSON-RPC over stdio.

    tools/call runs on a worker pool so a blocking wait_for_message does not
    hold up get_status or a reply on the other channel.
    """

    def __init__(
        self,
        gateway: RelayGateway,
        registry: InstanceRegistry,
        *,
        instance: Optional[int] = None,
        stdin: Optional[TextIO] = None,
        stdout: Optional[TextIO] = None,
        max_workers: int = 8,
    ) -> None:
        self.gateway = gateway
        self.registry = registry
        self.instance = instance
        self._stdin = stdin or sys.stdin
        self._stdout = stdout or sys.stdout
        self._write_lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="wired-mcp")
        # request id -> channel of an outstanding wait_for_message
        self._waits: Dict[Any, ChannelKind] = {}
        self._cancelled: Set[Any] = set()
        self._waits_lock = threading.Lock()

    def _read_message(self) -> Optional[Dict[str, Any]]:
        while True:
            line = self._stdin.readline()
            if not line:
                return None
            if not line.strip():
                continue
            try:
                msg = json.loads(line)
            except ValueError:
                logger.warning("ignoring malformed JSON-RPC line")
                continue
            if isinstance(msg, dict):
                return msg

    def _write_message(self, msg: Dict[str, Any]) -> None:
        with self._write_lock:
            self._stdout.write(json.dumps(msg, ensure_ascii=False) + "\n")
            self._stdout.flush()

    def _invoke_tool(self, params: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        tool_name = str(params.get("name") or "")
        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            arguments = {}
        try:
            return handle_tool_call(self.gateway, self.registry, tool_name, arguments, instance=self.instance), False
        except WiredError as e:
            logger.info("%s failed: %s", tool_name, e.message, extra={"op": tool_name})
            return {"error": e.to_dict()}, True
        except Exception as e:
            logger.exception("%s crashed", tool_name, extra={"op": tool_name})
            return {"error": {"code": "internal_error", "message": str(e)}}, True

    def call_tool(self, req_id: Any, params: Dict[str, Any]) -> Dict[str, Any]:
        payload, is_error = self._invoke_tool(params)
        return _make_response(req_id, _tool_result(payload, is_error=is_error))

    def handle_request(self, req: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Answer everything except tools/call and cancellation (see `dispatch`)."""
        req_id = req.get("id")
        method = str(req.get("method") or "")

        if method == "initialize":
            return _make_response(req_id, {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}, "resources": {}, "prompts": {}},
                "serverInfo": {"name": "wired-gateway", "version": __version__},
            })

        if method.startswith("notifications/"):
            return None

        if method == "tools/list":
            return _make_response(req_id, {"tools": MCP_TOOLS})

        if method == "resources/list":
            return _make_response(req_id, {"resources": []})

        if method == "prompts/list":
            return _make_response(req_id, {"prompts": []})

        if method in ("ping", "logging/setLevel"):
            return _make_response(req_id, {})

        return _make_error(req_id, -32601, f"Method not found: {method}")

    def _run_tool(self, req_id: Any, params: Dict[str, Any]) -> None:
        with self._waits_lock:
            if req_id in self._cancelled:
                self._cancelled.discard(req_id)
                self._waits.pop(req_id, None)
                return
        payload, is_error = self._invoke_tool(params)
        with self._waits_lock:
            kind = self._waits.pop(req_id, None)
            dropped = req_id in self._cancelled
            self._cancelled.discard(req_id)
        if dropped:
            if kind is not None and not is_error and not payload.get("timeout"):
                # Resolved just before the cancel landed: keep it for the next wait.
                self.gateway.queue(kind).requeue(ChatMessage.from_wire(payload))
            logger.info("dropping response to cancelled request %s", req_id)
            return
        self._write_message(_make_response(req_id, _tool_result(payload, is_error=is_error)))

    def cancel_request(self, req_id: Any) -> bool:
        """Release the wait_for_message running under `req_id`, if any.

        Its response is never written; the client has already given up on it.
        """
        if not isinstance(req_id, (str, int)):
            return False
        with self._waits_lock:
            kind = self._waits.get(req_id)
            if kind is None:
                return False
            self._cancelled.add(req_id)
        self.gateway.queue(kind).cancel_waiter()
        logger.info("cancelled wait %s on %s", req_id, kind, extra={"op": "wait_for_message"})
        return True

    def dispatch(self, msg: Dict[str, Any]) -> None:
        method = str(msg.get("method") or "")
        params = msg.get("params") if isinstance(msg.get("params"), dict) else {}

        if method == "tools/call":
            req_id = msg.get("id")
            if str(params.get("name") or "") == "wait_for_message" and isinstance(req_id, (str, int)):
                args = params.get("arguments")
                try:
                    kind = normalize_kind(args.get("channel_type") if isinstance(args, dict) else None)
                except WiredError:
                    kind = None
                if kind is not None:
                    with self._waits_lock:
                        self._waits[req_id] = kind
            self._pool.submit(self._run_tool, req_id, params)
            return

        if method == "notifications/cancelled":
            self.cancel_request(params.get("requestId"))
            return

        resp = self.handle_request(msg)
        if resp is not None:
            self._write_message(resp)

    def serve(self) -> int:
        try:
            while True:
                msg = self._read_message()
                if msg is None:
                    break
                self.dispatch(msg)
        finally:
            self.gateway.close()
            self._pool.shutdown(wait=False, cancel_futures=True)
        return 0


def build_gateway(config: WiredConfig) -> RelayGateway:
    from ..im.adapters.discord import DiscordAdapter

    adapter = DiscordAdapter(config.discord_token)
    gateway = RelayGateway(
        adapter,
        bindings={"primary": config.primary_channel_id, "overwatch": config.overwatch_channel_id},
        allowed_user_id=config.allowed_user_id,
    )
    gateway.attach()
    return gateway


def main() -> int:
    try:
        config = load_config()
    except ConfigurationError as e:
        print(f"wired mcp: {e.message}", file=sys.stderr)
        return 1
    setup_root_json_logging(component="mcp", level=config.log_level, log_path=config.log_path)
    try:
        config.require("discord_token")
    except ConfigurationError as e:
        logger.error("%s", e.message)
        return 1

    gateway = build_gateway(config)
    # Tools answer "not_connected" until READY; the MCP handshake must not wait on Discord.
    threading.Thread(target=gateway.adapter.connect, name="wired-discord-connect", daemon=True).start()

    registry = InstanceRegistry(config.instance_dir)
    logger.info("gateway up (instance %s)", config.instance, extra={"instance": config.instance})
    try:
        return GatewayServer(gateway, registry, instance=config.instance).serve()
    finally:
        gateway.adapter.disconnect()


if __name__ == "__main__":
    raise SystemExit(main())
