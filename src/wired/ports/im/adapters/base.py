"""
Base class for chat platform adapters.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

InboundHandler = Callable[[Dict[str, Any]], None]


class ChatAdapter(ABC):
    """
    Abstract base class for chat platform adapters.

    Each adapter handles:
    - Connecting to the platform
    - Pushing inbound messages to a handler
    - Sending text to a channel (one call per chunk; callers do the chunking)
    - Creating and deleting the per-instance channels

    Inbound events are dicts with:
    - chat_id, chat_title: str
    - text: str
    - from_user, from_user_id: str
    - is_bot: bool
    - message_id: str
    - timestamp: str (UTC ISO-8601)
    """

    platform: str = "unknown"

    def __init__(self) -> None:
        self._inbound_handler: Optional[InboundHandler] = None

    def set_inbound_handler(self, handler: Optional[InboundHandler]) -> None:
        self._inbound_handler = handler

    def _emit_inbound(self, event: Dict[str, Any]) -> None:
        handler = self._inbound_handler
        if handler is not None:
            handler(event)

    @abstractmethod
    def connect(self) -> bool:
        """
        Initialize connection to the platform.
        Returns True if successful.
        """

    @abstractmethod
    def disconnect(self) -> None:
        """Disconnect from the platform."""

    @property
    @abstractmethod
    def connected(self) -> bool:
        """True once the platform session is ready."""

    def user_tag(self) -> str:
        return ""

    @abstractmethod
    def send_message(self, chat_id: str, text: str) -> None:
        """
        Send one message to a chat.
        Raises TransportError on failure.
        """

    @abstractmethod
    def get_chat_title(self, chat_id: str) -> str:
        """Get the title/name of a chat."""

    def ensure_instance_channels(self, guild_id: str, slot: int) -> Dict[str, str]:
        """Create (or reuse) the channels for instance `slot`.

        Returns {"category": id, "primary": id, "overwatch": id}.
        """
        raise NotImplementedError

    def delete_channels(self, channel_ids: List[str]) -> None:
        """Delete channels (best-effort per channel)."""
        raise NotImplementedError

    def add_reaction(self, chat_id: str, message_id: str, emoji: str) -> bool:
        _ = chat_id
        _ = message_id
        _ = emoji
        return False
