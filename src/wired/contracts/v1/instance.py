from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso


class ChildPids(BaseModel):
    llm: Optional[int] = None
    overwatch: Optional[int] = None

    model_config = ConfigDict(extra="ignore")


class InstanceRecord(BaseModel):
    """Durable record for one live instance slot (one file per slot)."""

    v: int = 1
    slot: int = Field(ge=1)
    instance_name: str = ""
    owner_pid: int = Field(gt=0)
    child_pids: ChildPids = Field(default_factory=ChildPids)
    channels: Dict[str, str] = Field(default_factory=dict)
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    host: str = ""

    model_config = ConfigDict(extra="ignore")


class MigrationMarker(BaseModel):
    target_host: str
    target_path: str
    timestamp: str = Field(default_factory=utc_now_iso)
    source_host: str = ""
    instance: Optional[int] = None

    model_config = ConfigDict(extra="forbid")
