from __future__ import annotations

import json
import logging

from pydantic import BaseModel, Field, ValidationError

from civicsense.db.gateway import PersistenceGateway
from civicsense.errors import InferenceUnavailableError, PersistenceError
from civicsense.llm.client import JSON_MIME_TYPE, InferenceGateway
from civicsense.llm.prompts import NEEDS_REPORT_INSTRUCTION
from civicsense.models.core import LatLng
from civicsense.models.proposals import Proposal

log = logging.getLogger(__name__)

REPORT_RADIUS_KM = 1.0


class NeedsReport(BaseModel):
    top_recommendation: str = Field(default="None", alias="topRecommendation")
    community_sentiment: str = Field(default="Not enough data", alias="communitySentiment")
    market_gaps: list[str] = Field(default_factory=list, alias="marketGaps")
    pins_analyzed: int = 0
    error: str | None = None

    model_config = {"populate_by_name": True}


def describe_pins(pins: list[Proposal]) -> str:
    lines = []
    for pin in pins:
        lines.append(
            f'Business Type: {pin.business_type}, Review: "{pin.review}", '
            f"Score: {pin.score:g}/{pin.score_scale}, Agreements: {pin.agreement_count}"
        )
    return "\n".join(lines)


async def build_needs_report(
    gateway: InferenceGateway,
    persistence: PersistenceGateway,
    location: LatLng,
    *,
    radius_km: float = REPORT_RADIUS_KM,
) -> NeedsReport:
    try:
        pins = await persistence.list_near(location, radius_km)
    except PersistenceError as exc:
        log.warning("needs_report_listing_failed error=%s", exc)
        return NeedsReport(error="Could not load nearby proposals.")
    if not pins:
        return NeedsReport()

    try:
        reply = await gateway.generate(
            NEEDS_REPORT_INSTRUCTION,
            [],
            f"Requests within {radius_km:g} km:\n{describe_pins(pins)}",
            temperature=0.2,
            response_mime_type=JSON_MIME_TYPE,
        )
        data = json.loads(reply.text)
        if not isinstance(data, dict):
            raise ValueError("report is not a JSON object")
        report = NeedsReport.model_validate({**data, "pins_analyzed": len(pins)})
    except InferenceUnavailableError:
        log.warning("needs_report_inference_failed pins=%s", len(pins))
        return NeedsReport(pins_analyzed=len(pins), error="Failed to generate report.")
    except (json.JSONDecodeError, ValueError, ValidationError):
        log.warning("needs_report_invalid_json pins=%s", len(pins), exc_info=True)
        return NeedsReport(pins_analyzed=len(pins), error="Failed to generate report.")
    log.info("needs_report_built pins=%s gaps=%s", len(pins), len(report.market_gaps))
    return report
