"""Relay gateway between the chat platform and the supervised LLM child.

Inbound chat events are routed by channel id to one ChannelQueue per kind; the
child drains them through `wait`. Replies go out through `send`, chunked so a
long reply arrives in order as several chat messages.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Mapping, Optional

from ..contracts.v1 import ChannelKind, ChatMessage, DeliveryReceipt
from ..ports.im.adapters.base import ChatAdapter
from ..util.time import utc_now_iso
from .channels import CHANNEL_KINDS, CHUNK_LIMIT, ChannelQueue, WaitResult, chunk_text, normalize_kind
from .errors import ChannelUnbound, GatewayNotReady, TransportError

logger = logging.getLogger("wired.relay")


class RelayGateway:
    def __init__(
        self,
        adapter: ChatAdapter,
        *,
        bindings: Optional[Mapping[str, str]] = None,
        allowed_user_id: str = "",
        chunk_limit: int = CHUNK_LIMIT,
    ) -> None:
        self.adapter = adapter
        self.allowed_user_id = str(allowed_user_id or "").strip()
        self.chunk_limit = int(chunk_limit)
        self._lock = threading.Lock()
        self._queues: Dict[ChannelKind, ChannelQueue] = {k: ChannelQueue(k) for k in CHANNEL_KINDS}
        self._bindings: Dict[ChannelKind, str] = {}
        self._names: Dict[ChannelKind, str] = {}
        for kind, dest in (bindings or {}).items():
            if dest:
                self.bind(kind, dest)

    def attach(self) -> None:
        """Start receiving inbound events from the adapter."""
        self.adapter.set_inbound_handler(self.route_inbound)

    def queue(self, kind: str) -> ChannelQueue:
        return self._queues[normalize_kind(kind)]

    def bind(self, kind: str, destination_id: str, *, name: str = "") -> None:
        k = normalize_kind(kind)
        with self._lock:
            self._bindings[k] = str(destination_id).strip()
            if name:
                self._names[k] = name

    def destination(self, kind: str) -> Optional[str]:
        k = normalize_kind(kind)
        with self._lock:
            return self._bindings.get(k) or None

    def _kind_for_channel(self, chat_id: str) -> Optional[ChannelKind]:
        with self._lock:
            for kind, dest in self._bindings.items():
                if dest and dest == chat_id:
                    return kind
        return None

    def route_inbound(self, event: Mapping[str, Any]) -> Optional[ChannelKind]:
        """Turn a raw chat event into a ChatMessage on the matching queue.

        Returns the kind it was routed to, or None when the event is ignored.
        """
        if event.get("is_bot"):
            return None
        sender_id = str(event.get("from_user_id") or "")
        if self.allowed_user_id and sender_id != self.allowed_user_id:
            return None
        chat_id = str(event.get("chat_id") or "")
        kind = self._kind_for_channel(chat_id)
        if kind is None:
            return None

        chat_title = str(event.get("chat_title") or "")
        if chat_title:
            with self._lock:
                self._names[kind] = chat_title

        message = ChatMessage(
            sender=str(event.get("from_user") or "user"),
            sender_id=sender_id,
            body=str(event.get("text") or ""),
            channel_kind=kind,
            origin_channel_id=chat_id,
            origin_channel_name=chat_title,
            timestamp=str(event.get("timestamp") or utc_now_iso()),
        )
        logger.info("%s message from %s: %s", kind, message.sender, message.body[:50], extra={"kind": kind})
        self.deliver(kind, message)
        return kind

    def deliver(self, kind: str, message: ChatMessage) -> None:
        handed = self.queue(kind).deliver(message)
        if not handed:
            logger.debug("queued %s message (depth=%d)", kind, len(self.queue(kind)), extra={"kind": kind})

    def wait(self, kind: str, timeout_s: float = 0) -> WaitResult:
        q = self.queue(kind)
        logger.debug("wait_for_message(%s) queue=%d", q.kind, len(q), extra={"kind": q.kind})
        return q.wait(timeout_s)

    def send(self, kind: str, text: str) -> DeliveryReceipt:
        k = normalize_kind(kind)
        if not self.adapter.connected:
            raise GatewayNotReady("chat platform not connected yet")
        dest = self.destination(k)
        if not dest:
            raise ChannelUnbound(
                f"no {k} channel configured",
                details={"channel_type": k, "hint": f"set WIRED_{k.upper()}_CHANNEL_ID"},
            )

        chunks = chunk_text(text or "", self.chunk_limit)
        for i, chunk in enumerate(chunks):
            try:
                self.adapter.send_message(dest, chunk)
            except TransportError as e:
                e.details.setdefault("chunks_sent", i)
                raise
            except Exception as e:
                raise TransportError(str(e), details={"chunks_sent": i}) from e

        with self._lock:
            name = self._names.get(k, "")
        if not name:
            name = self.adapter.get_chat_title(dest)
        logger.info("sent to %s: %s", k, (text or "")[:50], extra={"kind": k})
        return DeliveryReceipt(
            channel_type=k,
            destination_id=dest,
            destination_name=name,
            chunks=len(chunks),
            chars=len(text or ""),
        )

    def status(self) -> Dict[str, Any]:
        with self._lock:
            bound = {k: (self._names.get(k) or self._bindings.get(k) or None) for k in CHANNEL_KINDS}
        return {
            "connected": bool(self.adapter.connected),
            "user": self.adapter.user_tag() or None,
            "bound_destinations": bound,
            "queue_depths": {k: len(q) for k, q in self._queues.items()},
            "waiting": {k: q.waiting for k, q in self._queues.items()},
        }

    def close(self) -> None:
        self.adapter.set_inbound_handler(None)
        for q in self._queues.values():
            q.cancel_waiter()
