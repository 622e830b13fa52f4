from __future__ import annotations

import pytest
import requests

from civicsense.config import Settings
from civicsense.errors import MapsServiceError
from civicsense.maps.client import MapsClient
from civicsense.models.core import LatLng

HERE = LatLng(lat=40.7128, lng=-74.006)

GEOCODE_BODY = {
    "status": "OK",
    "results": [
        {
            "formatted_address": "City Hall Park, New York, NY 10007, USA",
            "types": ["park", "point_of_interest", "establishment"],
            "address_components": [
                {"long_name": "New York", "types": ["locality", "political"]},
                {"long_name": "City Hall Park", "types": ["park", "point_of_interest"]},
            ],
        }
    ],
}


class FakeResponse:
    def __init__(self, status_code: int, payload: dict):
        self.status_code = status_code
        self._payload = payload

    def json(self) -> dict:
        return self._payload


class FakeRequests:
    RequestException = requests.RequestException

    def __init__(self, payload: dict, status_code: int = 200) -> None:
        self.calls: list[dict] = []
        self.payload = payload
        self.status_code = status_code

    def get(self, url: str, *args, **kwargs) -> FakeResponse:
        self.calls.append({"url": url, "params": kwargs.get("params")})
        return FakeResponse(self.status_code, self.payload)


def _client() -> MapsClient:
    return MapsClient(Settings(llm_backends="stub", maps_api_key="test-key"))


def test_place_at_reads_top_geocode_result(monkeypatch):
    fake_requests = FakeRequests(GEOCODE_BODY)
    monkeypatch.setattr("civicsense.maps.client.requests", fake_requests)

    place = _client().place_at(HERE)

    assert place.name == "City Hall Park"
    assert place.address == "City Hall Park, New York, NY 10007, USA"
    assert place.types == ["park", "point_of_interest", "establishment"]
    assert fake_requests.calls[0]["url"].endswith("/geocode/json")
    assert fake_requests.calls[0]["params"]["latlng"] == "40.7128,-74.006"


def test_place_name_falls_back_to_first_address_segment(monkeypatch):
    body = {"status": "OK", "results": [{"formatted_address": "12 Main St, Springfield", "types": ["street_address"]}]}
    monkeypatch.setattr("civicsense.maps.client.requests", FakeRequests(body))

    assert _client().place_at(HERE).name == "12 Main St"


def test_place_at_without_results_raises(monkeypatch):
    monkeypatch.setattr("civicsense.maps.client.requests", FakeRequests({"status": "ZERO_RESULTS", "results": []}))

    with pytest.raises(MapsServiceError):
        _client().place_at(HERE)


def test_place_at_needs_api_key():
    with pytest.raises(MapsServiceError):
        MapsClient(Settings(llm_backends="stub", maps_api_key=None)).place_at(HERE)
