from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

PinEventKind = Literal["created", "upvoted", "deleted"]


class PinEvent(BaseModel):
    kind: PinEventKind
    pin_id: str
    actor_id: str | None = None
