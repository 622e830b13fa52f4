from __future__ import annotations

import base64
import logging
from typing import Any

import requests
from pydantic import BaseModel, Field

from civicsense.config import Settings
from civicsense.errors import MapsServiceError
from civicsense.models.core import LatLng

log = logging.getLogger(__name__)

SNAPSHOT_SIZE = "640x640"
NAME_COMPONENT_TYPES = ("point_of_interest", "establishment", "premise", "park", "neighborhood", "route")


class PlaceInfo(BaseModel):
    name: str | None = None
    address: str | None = None
    types: list[str] = Field(default_factory=list)


class MapsClient:
    """Street View Static, Static Maps, Geocoding and Places Nearby Search over HTTP."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def street_view_snapshot(self, location: LatLng, *, timeout: float = 4.0) -> str:
        params = {
            "size": SNAPSHOT_SIZE,
            "location": _latlng(location),
            "fov": "90",
            "pitch": "10",
            "return_error_code": "true",
        }
        return self._fetch_image("streetview", params, timeout=timeout)

    def satellite_snapshot(self, location: LatLng, *, timeout: float = 4.0) -> str:
        params = {
            "center": _latlng(location),
            "zoom": "18",
            "size": SNAPSHOT_SIZE,
            "maptype": "satellite",
        }
        return self._fetch_image("staticmap", params, timeout=timeout)

    def nearby_search(self, location: LatLng, keyword: str, *, radius_m: int = 500, timeout: float = 5.0) -> list[dict[str, Any]]:
        params = {
            "location": _latlng(location),
            "radius": str(radius_m),
            "keyword": keyword,
            "key": self._api_key(),
        }
        try:
            response = requests.get(f"{self.settings.maps_base_url}/place/nearbysearch/json", params=params, timeout=timeout)
        except requests.RequestException as exc:
            raise MapsServiceError("nearby_search_request_failed") from exc
        if response.status_code != 200:
            raise MapsServiceError(f"nearby_search_http_{response.status_code}")
        body = response.json()
        status = body.get("status", "OK")
        if status not in {"OK", "ZERO_RESULTS"}:
            raise MapsServiceError(f"nearby_search_status_{status}")
        results = body.get("results") or []
        return [item for item in results if isinstance(item, dict)]

    def place_at(self, location: LatLng, *, timeout: float = 4.0) -> PlaceInfo:
        """Reverse-geocode a coordinate into a display name, address and place types."""
        params = {"latlng": _latlng(location), "key": self._api_key()}
        try:
            response = requests.get(f"{self.settings.maps_base_url}/geocode/json", params=params, timeout=timeout)
        except requests.RequestException as exc:
            raise MapsServiceError("geocode_request_failed") from exc
        if response.status_code != 200:
            raise MapsServiceError(f"geocode_http_{response.status_code}")
        body = response.json()
        status = body.get("status", "OK")
        results = [item for item in body.get("results") or [] if isinstance(item, dict)]
        if status not in {"OK", "ZERO_RESULTS"}:
            raise MapsServiceError(f"geocode_status_{status}")
        if not results:
            raise MapsServiceError("geocode_no_results")
        top = results[0]
        address = str(top.get("formatted_address") or "") or None
        return PlaceInfo(
            name=_place_name(top, address),
            address=address,
            types=[str(kind) for kind in top.get("types") or []],
        )

    def _fetch_image(self, endpoint: str, params: dict[str, str], *, timeout: float) -> str:
        query = dict(params, key=self._api_key())
        try:
            response = requests.get(f"{self.settings.maps_base_url}/{endpoint}", params=query, timeout=timeout)
        except requests.RequestException as exc:
            raise MapsServiceError(f"{endpoint}_request_failed") from exc
        if response.status_code != 200:
            raise MapsServiceError(f"{endpoint}_http_{response.status_code}")
        content_type = response.headers.get("Content-Type", "")
        if not content_type.startswith("image/"):
            raise MapsServiceError(f"{endpoint}_not_an_image content_type={content_type}")
        log.debug("map_snapshot_fetched endpoint=%s bytes=%s", endpoint, len(response.content))
        return base64.b64encode(response.content).decode("ascii")

    def _api_key(self) -> str:
        if not self.settings.maps_api_key:
            raise MapsServiceError("maps_missing_api_key")
        return self.settings.maps_api_key


def _latlng(location: LatLng) -> str:
    return f"{location.lat},{location.lng}"


def _place_name(result: dict[str, Any], address: str | None) -> str | None:
    for wanted in NAME_COMPONENT_TYPES:
        for component in result.get("address_components") or []:
            if isinstance(component, dict) and wanted in (component.get("types") or []):
                return str(component.get("long_name") or "") or None
    if address:
        return address.split(",")[0].strip() or None
    return None
