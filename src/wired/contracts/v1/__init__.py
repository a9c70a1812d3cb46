from __future__ import annotations

from .directive import Directive, Observation, ObservationType
from .instance import ChildPids, InstanceRecord, MigrationMarker
from .ipc import DaemonError, DaemonRequest, DaemonResponse, InjectArgs, PostArgs
from .message import ChannelKind, ChatMessage, DeliveryReceipt

__all__ = [
    "ChannelKind",
    "ChatMessage",
    "ChildPids",
    "DaemonError",
    "DaemonRequest",
    "DaemonResponse",
    "DeliveryReceipt",
    "Directive",
    "InjectArgs",
    "InstanceRecord",
    "MigrationMarker",
    "Observation",
    "ObservationType",
    "PostArgs",
]
