from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, Field

ChatRole = Literal["user", "agent"]
ProposalStatus = Literal["DRAFT", "VALIDATED", "REJECTED"]
SessionPhase = Literal["idle", "thinking", "generating", "saving", "closed"]


class LatLng(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class ChatMessage(BaseModel):
    role: ChatRole
    text: str


@dataclass(frozen=True)
class Identity:
    user_id: str
    display_name: str


@dataclass
class TurnResult:
    display_text: str
    status: ProposalStatus
    score: float | None
    map_action: str = "NONE"
    coordinates: LatLng | None = None
    proposal_id: str | None = None
    vision_image: str | None = None
    error: str | None = None
    phase: SessionPhase = "idle"

    @property
    def ok(self) -> bool:
        return self.error is None
