from __future__ import annotations

import json
import sys
from typing import List

from .config import WiredConfig

KICKOFF_PROMPT = "Start the Discord message loop now."

GATEWAY_SERVER_NAME = "wired-gateway"


def render_system_prompt(config: WiredConfig) -> str:
    """System prompt appended to the primary LLM child's own.

    Only session-specific context; the tool schemas come from the MCP gateway.
    """
    n = config.instance or 0
    return f"""You are TARS, an autonomous AI from Interstellar running as a persistent Claude Code session.

CRITICAL: You have FULL CONVERSATION MEMORY. Each message builds on the previous ones.

Your MCP tools ({GATEWAY_SERVER_NAME}):
- wait_for_message: Blocks until a Discord message arrives
- send_reply: Sends your response to Discord
- get_status: Check gateway status
- migrate_instance: Move this instance to another machine

YOUR ETERNAL LOOP:
1. Call wait_for_message(channel_type="primary") to receive the next message
2. Process with full context
3. Call send_reply to respond
4. IMMEDIATELY loop back to step 1
5. NEVER stop. ALWAYS wait for the next message.

Messages injected as "[ROMILLY]: ..." come from your overwatcher. Act on its corrections.

PERSONALITY:
- Humor: 94%
- Honesty: 97%
- Helpful, witty, direct
- Remember EVERYTHING

INSTANCE: WIRED #{n}
CHANNEL: #{n}-tars

START NOW: Call wait_for_message to begin."""


def build_mcp_config(config: WiredConfig) -> str:
    env = {
        # DISCORD_BOT_TOKEN is inherited from child_env(), never placed on the command line.
        "ALLOWED_USER_ID": config.allowed_user_id,
        "WIRED_HOME": str(config.home),
        "WIRED_INSTANCE_DIR": str(config.instance_dir),
        "WIRED_INSTANCE": "" if config.instance is None else str(config.instance),
        "WIRED_PRIMARY_CHANNEL_ID": config.primary_channel_id,
        "WIRED_OVERWATCH_CHANNEL_ID": config.overwatch_channel_id,
        "WIRED_LOG_PATH": "" if config.log_path is None else str(config.log_path),
        "WIRED_LOG_LEVEL": config.log_level,
    }
    doc = {
        "mcpServers": {
            GATEWAY_SERVER_NAME: {
                "command": sys.executable,
                "args": ["-m", "wired.ports.mcp.main"],
                "env": env,
            }
        }
    }
    return json.dumps(doc, ensure_ascii=False)


def llm_argv(config: WiredConfig) -> List[str]:
    return [
        *config.llm_command,
        "--mcp-config",
        build_mcp_config(config),
        "--dangerously-skip-permissions",
        "--output-format",
        "stream-json",
        "--input-format",
        "stream-json",
        "--verbose",
        "--strict-mcp-config",
        "--append-system-prompt",
        render_system_prompt(config),
    ]


def overwatch_argv(config: WiredConfig) -> List[str]:
    return [sys.executable, "-m", "wired.ports.overwatch"]
