from __future__ import annotations

from .base import ChatAdapter, InboundHandler
from .discord import DiscordAdapter

__all__ = ["ChatAdapter", "DiscordAdapter", "InboundHandler"]
