from __future__ import annotations

import asyncio

import pytest

from civicsense.config import Settings
from civicsense.engine.scoring import (
    analyze_site,
    compute_saturation,
    count_competitors,
    extract_demand_weight,
    parse_demand_weight,
)
from civicsense.errors import InferenceUnavailableError, MapsServiceError
from civicsense.llm.client import InferenceGateway
from civicsense.llm.schemas import GatewayReply
from civicsense.models.core import LatLng

HERE = LatLng(lat=34.05, lng=-118.24)


class FakeMaps:
    def __init__(self, results=None, error: Exception | None = None) -> None:
        self.results = results or []
        self.error = error
        self.keywords: list[str] = []

    def nearby_search(self, location, keyword, *, radius_m=500, timeout=5.0):
        self.keywords.append(keyword)
        if self.error is not None:
            raise self.error
        return self.results


class ReplyGateway:
    def __init__(self, text: str) -> None:
        self.text = text

    async def generate(self, *args, **kwargs) -> GatewayReply:
        return GatewayReply(text=self.text, backend="fake")


class DownGateway:
    async def generate(self, *args, **kwargs) -> GatewayReply:
        raise InferenceUnavailableError("down")


def test_worked_values():
    assert compute_saturation(8, 0) == 8.0
    assert compute_saturation(8, 3) == 2.0
    assert compute_saturation(5, 0) == 5.0


def test_more_competitors_never_raise_the_index():
    for demand in range(1, 11):
        values = [compute_saturation(demand, competitors) for competitors in range(0, 20)]
        assert values == sorted(values, reverse=True)


def test_higher_demand_never_lowers_the_index():
    for competitors in range(0, 10):
        values = [compute_saturation(demand, competitors) for demand in range(1, 11)]
        assert values == sorted(values)


def test_out_of_range_inputs_raise():
    with pytest.raises(ValueError):
        compute_saturation(0, 1)
    with pytest.raises(ValueError):
        compute_saturation(11, 1)
    with pytest.raises(ValueError):
        compute_saturation(5, -1)


def test_parse_demand_weight_variants():
    assert parse_demand_weight('{"demand_weight": 9}') == 9
    assert parse_demand_weight("I'd say 7 out of 10") == 7
    assert parse_demand_weight("8") == 8
    assert parse_demand_weight("") == 5
    assert parse_demand_weight('{"demand_weight": 42}') == 5
    assert parse_demand_weight('{"demand_weight": true}') == 5
    assert parse_demand_weight("no idea") == 5


def test_extract_demand_weight_defaults_when_inference_is_down():
    assert asyncio.run(extract_demand_weight(DownGateway(), "we need a pharmacy", "pharmacy")) == 5


def test_extract_demand_weight_from_stub_backend():
    gateway = InferenceGateway(Settings(llm_backends="stub"))

    weight = asyncio.run(extract_demand_weight(gateway, "We desperately need a pharmacy", "pharmacy"))

    assert weight == 7


def test_count_competitors_treats_maps_failure_as_zero():
    maps = FakeMaps(error=MapsServiceError("maps_missing_api_key"))

    assert asyncio.run(count_competitors(maps, HERE, "bakery")) == 0


def test_analyze_site_combines_demand_and_competition():
    maps = FakeMaps(results=[{"name": "A"}, {"name": "B"}, {"name": "C"}])

    analysis = asyncio.run(
        analyze_site(ReplyGateway('{"demand_weight": 8}'), maps, location=HERE, business_type="bakery", review="fresh bread")
    )

    assert analysis.demand_weight == 8
    assert analysis.competitor_count == 3
    assert analysis.saturation_index == 2.0
    assert maps.keywords == ["bakery"]
