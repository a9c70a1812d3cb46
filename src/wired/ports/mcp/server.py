"""
WIRED MCP gateway tools.

Tools exposed to the LLM child:
- wait_for_message: block until a chat message arrives on a channel kind
- send_reply: send text to a channel kind (chunked)
- get_status: connection, bindings and queue depths
- migrate_instance: leave a migration marker for another machine to pick up

Tool failures raise WiredError subclasses; the stdio loop turns them into
`isError` results.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ...kernel.errors import WiredError
from ...kernel.registry import InstanceRegistry
from ...kernel.relay import RelayGateway
from ...util.conv import coerce_float

logger = logging.getLogger("wired.mcp")


class MCPError(WiredError):
    """Tool call rejected before reaching the gateway."""

    code = "mcp_error"


def _require(args: Dict[str, Any], name: str) -> str:
    value = str(args.get(name) or "").strip()
    if not value:
        raise MCPError(f"missing {name}", code=f"missing_{name}")
    return value


def wait_for_message(gateway: RelayGateway, *, channel_type: str = "primary", timeout_seconds: Any = 0) -> Dict[str, Any]:
    result = gateway.wait(channel_type or "primary", coerce_float(timeout_seconds, default=0.0))
    return result.to_wire()


def send_reply(gateway: RelayGateway, *, message: str, channel_type: str = "primary") -> Dict[str, Any]:
    receipt = gateway.send(channel_type or "primary", message)
    out = receipt.model_dump()
    out["status"] = f"Sent to #{receipt.destination_name or receipt.destination_id}"
    return out


def get_status(gateway: RelayGateway, *, instance: Optional[int] = None) -> Dict[str, Any]:
    st = gateway.status()
    st["instance"] = instance
    return st


def migrate_instance(registry: InstanceRegistry, *, target_host: str, target_path: str, instance: Optional[int] = None) -> Dict[str, Any]:
    logger.info("migration requested: %s:%s", target_host, target_path, extra={"instance": instance})
    path = registry.write_migration_marker(target_host, target_path, instance=instance)
    return {
        "status": "migration_initiated",
        "target": f"{target_host}:{target_path}",
        "migration_file": str(path),
        "instruction": "Start WIRED on the target machine, then shut this instance down.",
    }


def handle_tool_call(
    gateway: RelayGateway,
    registry: InstanceRegistry,
    name: str,
    arguments: Dict[str, Any],
    *,
    instance: Optional[int] = None,
) -> Dict[str, Any]:
    """Dispatch one tools/call. Raises WiredError on failure."""
    args = arguments or {}

    if name == "wait_for_message":
        return wait_for_message(
            gateway,
            channel_type=str(args.get("channel_type") or "primary"),
            timeout_seconds=args.get("timeout_seconds", 0),
        )

    if name == "send_reply":
        return send_reply(
            gateway,
            message=_require(args, "message"),
            channel_type=str(args.get("channel_type") or "primary"),
        )

    if name == "get_status":
        return get_status(gateway, instance=instance)

    if name == "migrate_instance":
        return migrate_instance(
            registry,
            target_host=_require(args, "target_host"),
            target_path=_require(args, "target_path"),
            instance=instance,
        )

    raise MCPError(f"unknown tool: {name}", code="unknown_tool")


_CHANNEL_TYPE_SCHEMA = {
    "type": "string",
    "enum": ["primary", "overwatch", "tars", "romilly"],
    "default": "primary",
}

MCP_TOOLS: List[Dict[str, Any]] = [
    {
        "name": "wait_for_message",
        "description": (
            "Wait for the next Discord message. BLOCKS until a message arrives on the channel "
            "(primary = your conversation channel, overwatch = ROMILLY's channel). "
            "Returns {timeout: true} when timeout_seconds passes first."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "channel_type": {**_CHANNEL_TYPE_SCHEMA, "description": "Which channel to listen on"},
                "timeout_seconds": {
                    "type": "number",
                    "default": 0,
                    "description": "Timeout in seconds (0 = wait forever)",
                },
            },
            "required": [],
        },
    },
    {
        "name": "send_reply",
        "description": "Send a reply message to a Discord channel. Long messages are split into several posts.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "message": {"type": "string", "description": "The message to send"},
                "channel_type": {**_CHANNEL_TYPE_SCHEMA, "description": "Which channel to send to"},
            },
            "required": ["message"],
        },
    },
    {
        "name": "get_status",
        "description": "Get the current status of the WIRED gateway.",
        "inputSchema": {"type": "object", "properties": {}, "required": []},
    },
    {
        "name": "migrate_instance",
        "description": "Migrate this WIRED instance to another machine. Writes a migration marker for the target to pick up.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "target_host": {"type": "string", "description": "Target machine hostname or IP"},
                "target_path": {"type": "string", "description": "Path to the WIRED installation on the target"},
            },
            "required": ["target_host", "target_path"],
        },
    },
]
