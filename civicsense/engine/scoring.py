"""Market saturation index: demand weight over nearby competition."""

from __future__ import annotations

import asyncio
import json
import logging
import re

from pydantic import BaseModel

from civicsense.errors import InferenceUnavailableError
from civicsense.llm.client import JSON_MIME_TYPE, InferenceGateway
from civicsense.llm.prompts import DEMAND_WEIGHT_INSTRUCTION, build_demand_message
from civicsense.maps.client import MapsClient
from civicsense.models.core import LatLng

log = logging.getLogger(__name__)

DEFAULT_DEMAND_WEIGHT = 5
COMPETITOR_RADIUS_M = 500


class SaturationAnalysis(BaseModel):
    demand_weight: int
    competitor_count: int
    saturation_index: float


def compute_saturation(demand_weight: int, competitor_count: int) -> float:
    """Return ``demand_weight / (competitor_count + 1)``; larger means less saturated."""
    if not 1 <= demand_weight <= 10:
        raise ValueError("demand_weight must be between 1 and 10")
    if competitor_count < 0:
        raise ValueError("competitor_count cannot be negative")
    return demand_weight / (competitor_count + 1)


def parse_demand_weight(raw: str | None) -> int:
    text = (raw or "").strip()
    value: object = None
    try:
        parsed = json.loads(text)
        value = parsed.get("demand_weight") if isinstance(parsed, dict) else parsed
    except (json.JSONDecodeError, ValueError):
        match = re.search(r"-?\d+(?:\.\d+)?", text)
        value = match.group(0) if match else None
    if isinstance(value, bool):
        return DEFAULT_DEMAND_WEIGHT
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_DEMAND_WEIGHT
    if not number.is_integer() or not 1 <= number <= 10:
        return DEFAULT_DEMAND_WEIGHT
    return int(number)


async def extract_demand_weight(gateway: InferenceGateway, review: str, business_type: str) -> int:
    try:
        reply = await gateway.generate(
            DEMAND_WEIGHT_INSTRUCTION,
            [],
            build_demand_message(review, business_type),
            temperature=0.0,
            response_mime_type=JSON_MIME_TYPE,
        )
    except InferenceUnavailableError:
        log.warning("demand_weight_failed fallback=%s", DEFAULT_DEMAND_WEIGHT)
        return DEFAULT_DEMAND_WEIGHT
    weight = parse_demand_weight(reply.text)
    log.debug("demand_weight business_type=%s weight=%s", business_type, weight)
    return weight


async def count_competitors(
    maps: MapsClient,
    location: LatLng,
    keyword: str,
    *,
    radius_m: int = COMPETITOR_RADIUS_M,
    timeout: float = 5.0,
) -> int:
    try:
        places = await asyncio.wait_for(
            asyncio.to_thread(maps.nearby_search, location, keyword, radius_m=radius_m, timeout=timeout),
            timeout=timeout,
        )
    except TimeoutError:
        log.warning("competitor_search_timeout keyword=%s", keyword)
        return 0
    except Exception:
        log.warning("competitor_search_failed keyword=%s", keyword, exc_info=True)
        return 0
    return len(places)


async def analyze_site(
    gateway: InferenceGateway,
    maps: MapsClient,
    *,
    location: LatLng,
    business_type: str,
    review: str,
) -> SaturationAnalysis:
    demand_weight, competitor_count = await asyncio.gather(
        extract_demand_weight(gateway, review, business_type),
        count_competitors(maps, location, business_type),
    )
    analysis = SaturationAnalysis(
        demand_weight=demand_weight,
        competitor_count=competitor_count,
        saturation_index=compute_saturation(demand_weight, competitor_count),
    )
    log.info(
        "site_analyzed business_type=%s demand=%s competitors=%s index=%.2f",
        business_type,
        demand_weight,
        competitor_count,
        analysis.saturation_index,
    )
    return analysis
