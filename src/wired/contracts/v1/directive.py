from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso

ObservationType = Literal["good_sign", "worry", "bad_sign", "threat"]


class Observation(BaseModel):
    type: ObservationType = "worry"
    observation: str = ""
    score: Optional[int] = None

    model_config = ConfigDict(extra="ignore")


class Directive(BaseModel):
    """Assessment produced by the overwatcher from the judge's reply."""

    observer: str = "ROMILLY"
    timestamp: str = Field(default_factory=utc_now_iso)
    overall_score: int = 380
    status: str = "HABITABLE"
    observations: List[Observation] = Field(default_factory=list)
    correction: Optional[str] = None
    praise: Optional[str] = None

    model_config = ConfigDict(extra="ignore")
