from __future__ import annotations

from pydantic import BaseModel, Field

from civicsense.models.core import LatLng


class GatewayReply(BaseModel):
    text: str
    backend: str


class GeneratedImage(BaseModel):
    mime_type: str = "image/png"
    data: str

    def as_data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


class SceneAnalysis(BaseModel):
    street_analysis: str | None = None
    overhead_analysis: str | None = None


class VisionRequest(BaseModel):
    text: str = Field(min_length=1)
    location: LatLng
    street_view: str | None = None
    satellite: str | None = None
    place_name: str | None = None
    place_address: str | None = None
    place_types: list[str] = Field(default_factory=list)


class VisionResponse(BaseModel):
    success: bool
    image: str | None = None
    analysis: SceneAnalysis | None = None
    brief: str | None = None
