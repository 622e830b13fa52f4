from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from civicsense.models.core import LatLng

MapAction = Literal["MOVE_TO", "SHOW_PINS", "SHOW_3D_SIMULATION", "NONE"]

MAP_ACTIONS: tuple[str, ...] = ("MOVE_TO", "SHOW_PINS", "SHOW_3D_SIMULATION", "NONE")
STATUSES: tuple[str, ...] = ("DRAFT", "VALIDATED", "REJECTED")


class _PayloadBase(BaseModel):
    map_action: MapAction = "NONE"
    coordinates: LatLng
    score: float = 0.0
    title: str | None = None
    description: str | None = None
    author: str | None = None
    flags: list[str] = Field(default_factory=list)


class DraftPayload(_PayloadBase):
    status: Literal["DRAFT"] = "DRAFT"
    # The agent said VALIDATED but left out title or description.
    claimed_validated: bool = False


class ValidatedPayload(_PayloadBase):
    status: Literal["VALIDATED"] = "VALIDATED"
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)


class RejectedPayload(_PayloadBase):
    status: Literal["REJECTED"] = "REJECTED"


ActionPayload = Annotated[
    Union[DraftPayload, ValidatedPayload, RejectedPayload],
    Field(discriminator="status"),
]


def default_payload(location: LatLng) -> DraftPayload:
    return DraftPayload(coordinates=location.model_copy())
