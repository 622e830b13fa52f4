from __future__ import annotations

import asyncio

from civicsense.config import Settings
from civicsense.db.gateway import PersistenceGateway
from civicsense.db.store import Store
from civicsense.engine.report import build_needs_report
from civicsense.errors import InferenceUnavailableError
from civicsense.llm.client import JSON_MIME_TYPE, InferenceGateway
from civicsense.llm.schemas import GatewayReply
from civicsense.models.core import LatLng
from civicsense.models.proposals import ProposalCreate

HERE = LatLng(lat=40.7128, lng=-74.006)


class RecordingGateway:
    def __init__(self, text: str) -> None:
        self.text = text
        self.calls: list[dict] = []

    async def generate(self, system_instruction, history, message, **kwargs) -> GatewayReply:
        self.calls.append({"message": message, **kwargs})
        return GatewayReply(text=self.text, backend="fake")


class DownGateway:
    async def generate(self, *args, **kwargs) -> GatewayReply:
        raise InferenceUnavailableError("down")


def _store_with_pins() -> Store:
    store = Store(":memory:")
    store.create_pin(ProposalCreate(location=HERE, business_type="Urban Farm", review="Fresh produce", score=92))
    store.create_pin(
        ProposalCreate(location=LatLng(lat=40.7135, lng=-74.0045), business_type="Pedestrian Plaza", review="No cars")
    )
    return store


def test_no_pins_returns_default_report_without_inference():
    gateway = RecordingGateway("{}")

    report = asyncio.run(build_needs_report(gateway, PersistenceGateway(Store(":memory:")), HERE))

    assert gateway.calls == []
    assert report.top_recommendation == "None"
    assert report.community_sentiment == "Not enough data"
    assert report.market_gaps == []


def test_report_summarizes_nearby_pins():
    gateway = RecordingGateway(
        '{"topRecommendation": "Grocery", "communitySentiment": "Eager", "marketGaps": ["fresh food", "seating"]}'
    )

    report = asyncio.run(build_needs_report(gateway, PersistenceGateway(_store_with_pins()), HERE))

    assert report.top_recommendation == "Grocery"
    assert report.market_gaps == ["fresh food", "seating"]
    assert report.pins_analyzed == 2
    assert report.error is None
    assert gateway.calls[0]["response_mime_type"] == JSON_MIME_TYPE
    assert "Urban Farm" in gateway.calls[0]["message"]


def test_report_failure_is_reported_not_raised():
    report = asyncio.run(build_needs_report(DownGateway(), PersistenceGateway(_store_with_pins()), HERE))

    assert report.error == "Failed to generate report."


def test_report_with_non_json_reply_is_an_error():
    report = asyncio.run(build_needs_report(RecordingGateway("Sorry!"), PersistenceGateway(_store_with_pins()), HERE))

    assert report.error == "Failed to generate report."
    assert report.pins_analyzed == 2


def test_stub_backend_produces_a_report():
    gateway = InferenceGateway(Settings(llm_backends="stub"))

    report = asyncio.run(build_needs_report(gateway, PersistenceGateway(_store_with_pins()), HERE))

    assert report.error is None
    assert report.top_recommendation.startswith("LLM unavailable")
