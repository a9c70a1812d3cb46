from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class DaemonRequest(BaseModel):
    """One control-socket request line sent to a supervisor."""

    v: int = 1
    op: str
    args: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class DaemonError(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class DaemonResponse(BaseModel):
    v: int = 1
    ok: bool
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[DaemonError] = None

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def success(cls, **result: Any) -> "DaemonResponse":
        return cls(ok=True, result=result)

    @classmethod
    def failure(cls, code: str, message: str, **details: Any) -> "DaemonResponse":
        return cls(ok=False, error=DaemonError(code=code, message=message, details=details))


class InjectArgs(BaseModel):
    """Arguments of `op: inject` and of `POST /inject`."""

    source: str = "external"
    content: str

    model_config = ConfigDict(extra="ignore")


class PostArgs(BaseModel):
    channel_type: str = "overwatch"
    text: str

    model_config = ConfigDict(extra="ignore")
