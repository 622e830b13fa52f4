from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from civicsense.models.core import LatLng

ScoreScale = Literal[10, 100]


class ProposalCreate(BaseModel):
    location: LatLng
    business_type: str = Field(min_length=1)
    review: str = Field(min_length=1)
    author: str = "Anonymous"
    score: float = Field(default=0.0, ge=0)
    score_scale: ScoreScale = 100
    vision_image: str | None = None
    parent_proposal_id: str | None = None
    flags: list[str] = Field(default_factory=list)
    owner_id: str | None = None

    @property
    def idea_text(self) -> str:
        return f"{self.business_type}: {self.review}"


class Proposal(ProposalCreate):
    id: str
    agreement_count: int = Field(default=0, ge=0)
    created_at: datetime
