"""Error taxonomy shared by the supervisor, gateway and overwatcher."""

from __future__ import annotations

from typing import Any, Dict, Optional


class WiredError(Exception):
    code = "wired_error"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigurationError(WiredError):
    """Required configuration is missing or invalid. Fatal at startup."""

    code = "configuration_error"


class TransportError(WiredError):
    """The chat platform could not be reached or rejected a call."""

    code = "transport_error"


class GatewayNotReady(TransportError):
    code = "not_connected"


class ChannelUnbound(WiredError):
    code = "channel_unbound"


class UnknownChannel(WiredError):
    code = "unknown_channel"


class AlreadyWaiting(WiredError):
    """A second wait was issued while one is already outstanding on the channel."""

    code = "already_waiting"


class InjectionRejected(WiredError):
    """The child is not accepting input; the message was dropped."""

    code = "injection_rejected"


class RegistryCorruption(WiredError):
    """An instance record could not be read. Logged and purged, never raised to callers."""

    code = "registry_corruption"
