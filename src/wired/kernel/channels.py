"""Per-channel inbound queues with a single blocking consumer.

A ChannelQueue holds pending messages in arrival order and at most one waiter.
When a waiter is registered, `deliver` hands the message straight to it, so
`pending` is only ever non-empty while nobody is waiting.
"""
from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional, Tuple, Union

from ..contracts.v1 import ChannelKind, ChatMessage
from .errors import AlreadyWaiting, UnknownChannel

CHANNEL_KINDS: Tuple[ChannelKind, ...] = ("primary", "overwatch")

_KIND_ALIASES = {
    "primary": "primary",
    "tars": "primary",
    "overwatch": "overwatch",
    "romilly": "overwatch",
}

# Chat platforms cap a single message (Discord: 2000); leave room for markup.
CHUNK_LIMIT = 1900


def normalize_kind(value: object, *, default: ChannelKind = "primary") -> ChannelKind:
    s = str(value or "").strip().lower()
    if not s:
        return default
    kind = _KIND_ALIASES.get(s)
    if kind is None:
        raise UnknownChannel(f"unknown channel_type: {s}", details={"allowed": list(CHANNEL_KINDS)})
    return kind  # type: ignore[return-value]


def chunk_text(text: str, limit: int = CHUNK_LIMIT) -> List[str]:
    """Split `text` into consecutive pieces of at most `limit` characters."""
    if limit <= 0:
        raise ValueError("limit must be positive")
    return [text[i : i + limit] for i in range(0, len(text), limit)]


@dataclass(frozen=True)
class WaitTimeout:
    """Result of a wait whose deadline passed before any message arrived."""

    channel_type: ChannelKind
    timeout_s: float

    def to_wire(self) -> dict:
        return {"timeout": True, "channel_type": self.channel_type}


WaitResult = Union[ChatMessage, WaitTimeout]


class _Waiter:
    __slots__ = ("event", "message")

    def __init__(self) -> None:
        self.event = threading.Event()
        self.message: Optional[ChatMessage] = None


class ChannelQueue:
    def __init__(self, kind: ChannelKind) -> None:
        self.kind = kind
        self._lock = threading.Lock()
        self._pending: Deque[ChatMessage] = deque()
        self._waiter: Optional[_Waiter] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def waiting(self) -> bool:
        with self._lock:
            return self._waiter is not None

    def deliver(self, message: ChatMessage) -> bool:
        """Hand `message` to the waiter if one exists, else queue it.

        Returns True when a waiter was resolved directly.
        """
        with self._lock:
            w = self._waiter
            if w is not None:
                self._waiter = None
                w.message = message
                w.event.set()
                return True
            self._pending.append(message)
            return False

    def wait(self, timeout_s: float = 0) -> WaitResult:
        """Return the oldest pending message, or block for the next one.

        `timeout_s <= 0` blocks until a message arrives. Raises AlreadyWaiting
        if another caller is already blocked on this queue.
        """
        with self._lock:
            if self._pending:
                return self._pending.popleft()
            if self._waiter is not None:
                raise AlreadyWaiting(
                    f"a wait on {self.kind} is already outstanding",
                    details={"channel_type": self.kind},
                )
            w = _Waiter()
            self._waiter = w

        timeout = float(timeout_s) if timeout_s and timeout_s > 0 else None
        w.event.wait(timeout)

        # Delivery and timeout race here; whoever takes the lock first decides.
        with self._lock:
            if w.message is not None:
                return w.message
            if self._waiter is w:
                self._waiter = None
        return WaitTimeout(channel_type=self.kind, timeout_s=float(timeout_s or 0))

    def cancel_waiter(self) -> bool:
        """Release a blocked waiter with a timeout result (used on shutdown)."""
        with self._lock:
            w = self._waiter
            self._waiter = None
        if w is None:
            return False
        w.event.set()
        return True

    def requeue(self, message: ChatMessage) -> None:
        """Put back a message whose consumer went away, ahead of newer ones."""
        with self._lock:
            w = self._waiter
            if w is None:
                self._pending.appendleft(message)
                return
            self._waiter = None
            w.message = message
            w.event.set()
