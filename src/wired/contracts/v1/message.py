from __future__ import annotations

from typing import Any, Dict, Literal

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso

ChannelKind = Literal["primary", "overwatch"]


class ChatMessage(BaseModel):
    """An inbound chat message routed to one channel kind. Immutable."""

    sender: str
    sender_id: str = ""
    body: str
    channel_kind: ChannelKind
    origin_channel_id: str = ""
    origin_channel_name: str = ""
    timestamp: str = Field(default_factory=utc_now_iso)

    model_config = ConfigDict(extra="forbid", frozen=True)

    def to_wire(self) -> Dict[str, Any]:
        """Shape handed to the LLM child by `wait_for_message`."""
        return {
            "user": self.sender,
            "userId": self.sender_id,
            "content": self.body,
            "channel": self.origin_channel_name,
            "channelId": self.origin_channel_id,
            "channel_type": self.channel_kind,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_wire(cls, doc: Dict[str, Any]) -> "ChatMessage":
        return cls(
            sender=str(doc.get("user") or ""),
            sender_id=str(doc.get("userId") or ""),
            body=str(doc.get("content") or ""),
            channel_kind=doc.get("channel_type") or "primary",
            origin_channel_id=str(doc.get("channelId") or ""),
            origin_channel_name=str(doc.get("channel") or ""),
            timestamp=str(doc.get("timestamp") or utc_now_iso()),
        )


class DeliveryReceipt(BaseModel):
    channel_type: ChannelKind
    destination_id: str
    destination_name: str = ""
    chunks: int = 0
    chars: int = 0

    model_config = ConfigDict(extra="forbid")
