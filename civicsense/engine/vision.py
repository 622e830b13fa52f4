from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, TypeVar

from civicsense.config import Settings
from civicsense.errors import InferenceUnavailableError
from civicsense.llm.client import InferenceGateway
from civicsense.llm.prompts import (
    DESIGN_BRIEF_INSTRUCTION,
    SATELLITE_INSTRUCTION,
    STREET_VIEW_INSTRUCTION,
    build_brief_message,
    build_render_prompt,
)
from civicsense.llm.schemas import SceneAnalysis, VisionRequest, VisionResponse
from civicsense.llm.vision import MediaClient
from civicsense.maps.client import MapsClient, PlaceInfo
from civicsense.models.core import LatLng
from civicsense.models.proposals import ProposalCreate

log = logging.getLogger(__name__)

T = TypeVar("T")


class VisionOrchestrator:
    """Context capture and rendering fan-out run when a proposal validates.

    Every step is best-effort: a missing snapshot, analysis or brief degrades
    the rendering, and a failed or slow rendering yields ``image=None``.
    Nothing here can block the proposal from being recorded.
    """

    def __init__(
        self,
        settings: Settings,
        gateway: InferenceGateway,
        maps: MapsClient,
        media: MediaClient,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.maps = maps
        self.media = media

    @property
    def analysis_timeout(self) -> float:
        return max(self.settings.snapshot_timeout_seconds * 2, 1.0)

    async def on_validated(
        self,
        draft: ProposalCreate,
        *,
        place_name: str | None = None,
        place_address: str | None = None,
        place_types: list[str] | None = None,
    ) -> VisionResponse:
        request = VisionRequest(
            text=draft.idea_text,
            location=draft.location,
            place_name=place_name,
            place_address=place_address,
            place_types=place_types or [],
        )
        try:
            return await asyncio.wait_for(self.generate(request), timeout=self.settings.vision_timeout_seconds)
        except TimeoutError:
            log.warning("vision_pipeline_timeout timeout_seconds=%s", self.settings.vision_timeout_seconds)
        except Exception:
            log.warning("vision_pipeline_failed", exc_info=True)
        return VisionResponse(success=False)

    async def generate(self, request: VisionRequest) -> VisionResponse:
        needs_place = request.place_name is None and request.place_address is None and not request.place_types
        needs_snapshots = request.street_view is None and request.satellite is None
        if needs_place or needs_snapshots:
            street, overhead, place = await asyncio.gather(
                self._capture("street_view", self.maps.street_view_snapshot, request.location, needs_snapshots),
                self._capture("satellite", self.maps.satellite_snapshot, request.location, needs_snapshots),
                self._capture("place", self.maps.place_at, request.location, needs_place),
            )
            updates: dict[str, Any] = {}
            if needs_snapshots:
                updates.update(street_view=street, satellite=overhead)
            if isinstance(place, PlaceInfo):
                log.info("vision_place_resolved name=%s types=%s", place.name, len(place.types))
                updates.update(place_name=place.name, place_address=place.address, place_types=place.types)
            request = request.model_copy(update=updates)

        street_analysis, overhead_analysis = await asyncio.gather(
            self._describe("street_view", request.street_view, STREET_VIEW_INSTRUCTION),
            self._describe("satellite", request.satellite, SATELLITE_INSTRUCTION),
        )
        analysis = SceneAnalysis(street_analysis=street_analysis, overhead_analysis=overhead_analysis)
        brief = await self._design_brief(request, analysis)
        prompt = build_render_prompt(
            brief,
            place_name=request.place_name,
            place_address=request.place_address,
            place_types=request.place_types,
            has_street=request.street_view is not None,
            has_overhead=request.satellite is not None,
        )
        try:
            image = await asyncio.to_thread(
                self.media.generate_image,
                prompt,
                street_view=request.street_view,
                satellite=request.satellite,
                timeout=self.settings.vision_timeout_seconds,
            )
        except Exception:
            log.warning("vision_generation_failed", exc_info=True)
            return VisionResponse(success=False, analysis=analysis, brief=brief)
        log.info(
            "vision_generated street=%s overhead=%s mime=%s",
            request.street_view is not None,
            request.satellite is not None,
            image.mime_type,
        )
        return VisionResponse(success=True, image=image.as_data_uri(), analysis=analysis, brief=brief)

    async def _capture(self, name: str, fetch: Callable[..., T], location: LatLng, wanted: bool = True) -> T | None:
        if not wanted:
            return None
        timeout = self.settings.snapshot_timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.to_thread(fetch, location, timeout=timeout), timeout=timeout)
        except TimeoutError:
            log.warning("capture_timeout kind=%s timeout_seconds=%s", name, timeout)
        except Exception:
            log.warning("capture_failed kind=%s", name, exc_info=True)
        return None

    async def _describe(self, name: str, image_b64: str | None, instruction: str) -> str | None:
        if not image_b64:
            return None
        timeout = self.analysis_timeout
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.media.describe_image, image_b64, instruction, timeout=timeout),
                timeout=timeout,
            )
        except TimeoutError:
            log.warning("scene_analysis_timeout kind=%s", name)
        except Exception:
            log.warning("scene_analysis_failed kind=%s", name, exc_info=True)
        return None

    async def _design_brief(self, request: VisionRequest, analysis: SceneAnalysis) -> str:
        message = build_brief_message(
            request.text,
            request.place_name,
            analysis.street_analysis,
            analysis.overhead_analysis,
            place_address=request.place_address,
            place_types=request.place_types,
        )
        try:
            reply = await self.gateway.generate(DESIGN_BRIEF_INSTRUCTION, [], message, temperature=0.4)
        except InferenceUnavailableError:
            log.warning("design_brief_failed fallback=idea_text")
            return request.text
        text = reply.text.strip()
        if not text or text.startswith("[stub]"):
            return request.text
        return text


def vision_summary(response: VisionResponse) -> dict[str, Any]:
    return {
        "success": response.success,
        "has_image": response.image is not None,
        "street_analysis": bool(response.analysis and response.analysis.street_analysis),
        "overhead_analysis": bool(response.analysis and response.analysis.overhead_analysis),
    }
