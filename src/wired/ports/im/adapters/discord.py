"""
Discord adapter for WIRED.

Uses discord.py with a Gateway connection for inbound events, outbound
messages and per-instance channel management.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

from ....kernel.errors import GatewayNotReady, TransportError
from .base import ChatAdapter

logger = logging.getLogger("wired.im.discord")

T = TypeVar("T")

CONNECT_TIMEOUT_S = 30.0
CALL_TIMEOUT_S = 15.0


def _as_snowflake(value: str) -> Optional[int]:
    try:
        return int(str(value).strip())
    except ValueError:
        return None


class DiscordAdapter(ChatAdapter):
    """
    Discord adapter using discord.py Gateway.

    Runs the client's event loop in a background thread; public methods are
    synchronous and marshal onto that loop.
    """

    platform = "discord"

    def __init__(self, token: str, *, connect_timeout_s: float = CONNECT_TIMEOUT_S):
        super().__init__()
        self.token = token
        self.connect_timeout_s = float(connect_timeout_s)

        self._connected = False
        self._client: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready_event = threading.Event()

    @property
    def connected(self) -> bool:
        return self._connected

    def user_tag(self) -> str:
        user = getattr(self._client, "user", None)
        return str(user) if user is not None else ""

    def connect(self) -> bool:
        """
        Start the Discord client in a background thread and wait for READY.
        """
        try:
            import discord
        except ImportError:
            logger.error("discord.py not installed. Run: pip install discord.py")
            return False

        intents = discord.Intents.default()
        intents.guilds = True
        intents.guild_messages = True
        intents.message_content = True
        self._client = discord.Client(intents=intents)

        @self._client.event
        async def on_ready():
            logger.info("discord connected as %s", self._client.user)
            self._ready_event.set()

        @self._client.event
        async def on_message(message):
            self._handle_message(message)

        def run_loop() -> None:
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            try:
                self._loop.run_until_complete(self._client.start(self.token))
            except Exception:
                logger.exception("discord client stopped with an error")
            finally:
                self._connected = False
                self._loop.close()

        self._thread = threading.Thread(target=run_loop, name="wired-discord", daemon=True)
        self._thread.start()

        if self._ready_event.wait(timeout=self.connect_timeout_s):
            self._connected = True
            return True
        logger.error("discord connection timeout after %.0fs", self.connect_timeout_s)
        return False

    def _handle_message(self, message: Any) -> None:
        if self._client is not None and message.author == self._client.user:
            return
        created = getattr(message, "created_at", None)
        event: Dict[str, Any] = {
            "chat_id": str(message.channel.id),
            "chat_title": getattr(message.channel, "name", None) or str(message.channel.id),
            "text": message.content or "",
            "from_user": message.author.name or str(message.author.id),
            "from_user_id": str(message.author.id),
            "is_bot": bool(getattr(message.author, "bot", False)),
            "message_id": str(message.id),
        }
        if created is not None:
            event["timestamp"] = created.isoformat().replace("+00:00", "Z")
        try:
            self._emit_inbound(event)
        except Exception:
            logger.exception("inbound handler failed", extra={"kind": event["chat_id"]})

    def _run(self, coro: Awaitable[T], *, timeout: float = CALL_TIMEOUT_S) -> T:
        if not self._connected or self._client is None or self._loop is None:
            close = getattr(coro, "close", None)
            if close is not None:
                close()
            raise GatewayNotReady("discord not connected yet")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)  # type: ignore[arg-type]
        try:
            return future.result(timeout=timeout)
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"discord call failed: {e}", details={"error": type(e).__name__}) from e

    async def _channel(self, chat_id: str) -> Any:
        cid = _as_snowflake(chat_id)
        if cid is None:
            raise TransportError(f"invalid channel id: {chat_id}")
        channel = self._client.get_channel(cid)
        if channel is None:
            channel = await self._client.fetch_channel(cid)
        return channel

    def disconnect(self) -> None:
        if self._client is not None and self._loop is not None and not self._loop.is_closed():
            try:
                future = asyncio.run_coroutine_threadsafe(self._client.close(), self._loop)
                future.result(timeout=5)
            except Exception as e:
                logger.warning("discord close failed: %s", e)
        self._connected = False
        logger.info("discord disconnected")

    def send_message(self, chat_id: str, text: str) -> None:
        if not text:
            return

        async def do_send() -> None:
            channel = await self._channel(chat_id)
            await channel.send(text)

        self._run(do_send())

    def get_chat_title(self, chat_id: str) -> str:
        if self._client is None:
            return str(chat_id)
        cid = _as_snowflake(chat_id)
        channel = self._client.get_channel(cid) if cid is not None else None
        if channel is not None:
            return getattr(channel, "name", str(chat_id))
        if not self._connected:
            return str(chat_id)

        async def do_fetch() -> str:
            ch = await self._channel(chat_id)
            return str(getattr(ch, "name", chat_id))

        try:
            return self._run(do_fetch())
        except TransportError:
            return str(chat_id)

    def ensure_instance_channels(self, guild_id: str, slot: int) -> Dict[str, str]:
        import discord

        n = int(slot)
        category_name = f"INSTANCE #{n}"
        wanted = {
            "primary": (f"{n}-tars", f"TARS Instance {n} - Cooper <-> TARS communication"),
            "overwatch": (f"{n}-romilly", f"ROMILLY Overwatcher for Instance {n}"),
        }

        async def do_ensure() -> Dict[str, str]:
            gid = _as_snowflake(guild_id)
            if gid is None:
                raise TransportError(f"invalid guild id: {guild_id}")
            guild = self._client.get_guild(gid) or await self._client.fetch_guild(gid)
            await guild.fetch_channels()

            category = discord.utils.get(guild.categories, name=category_name)
            if category is None:
                category = await guild.create_category(category_name)

            out: Dict[str, str] = {"category": str(category.id)}
            for kind, (name, topic) in wanted.items():
                channel = discord.utils.get(guild.text_channels, name=name)
                if channel is None:
                    channel = await guild.create_text_channel(name, category=category, topic=topic)
                elif channel.category_id != category.id:
                    await channel.edit(category=category)
                out[kind] = str(channel.id)
            return out

        return self._run(do_ensure(), timeout=60.0)

    def delete_channels(self, channel_ids: List[str]) -> None:
        async def do_delete() -> None:
            for chat_id in channel_ids:
                try:
                    channel = await self._channel(chat_id)
                    await channel.delete(reason="WIRED instance shutdown")
                except Exception as e:
                    logger.warning("channel delete failed: %s (%s)", chat_id, e)

        self._run(do_delete(), timeout=30.0)

    def add_reaction(self, chat_id: str, message_id: str, emoji: str) -> bool:
        async def do_react() -> None:
            channel = await self._channel(chat_id)
            msg = await channel.fetch_message(int(message_id))
            await msg.add_reaction(emoji)

        try:
            self._run(do_react())
            return True
        except TransportError as e:
            logger.debug("reaction failed: %s", e)
            return False
