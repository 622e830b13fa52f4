from __future__ import annotations

import json
import logging
from typing import Any

import requests

from civicsense.config import Settings
from civicsense.errors import MediaServiceError
from civicsense.llm.schemas import GeneratedImage

log = logging.getLogger(__name__)


class MediaClient:
    """Image understanding and image generation against the Generative Language API."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def describe_image(self, image_b64: str, instruction: str, *, timeout: float = 10.0) -> str:
        parts = [{"text": instruction}, _inline_jpeg(image_b64)]
        body = self._generate(self.settings.gemini_vision_model, {"contents": [{"parts": parts}]}, timeout=timeout)
        for part in _parts(body):
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                return text.strip()
        raise MediaServiceError("image_description_missing")

    def generate_image(
        self,
        prompt: str,
        *,
        street_view: str | None = None,
        satellite: str | None = None,
        timeout: float = 12.0,
    ) -> GeneratedImage:
        parts: list[dict[str, Any]] = [{"text": prompt}]
        if street_view:
            parts.append({"text": "Context A: Street View, use for style."})
            parts.append(_inline_jpeg(street_view))
        if satellite:
            parts.append({"text": "Context B: Satellite map, use for layout."})
            parts.append(_inline_jpeg(satellite))
        request_body = {
            "contents": [{"parts": parts}],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }
        body = self._generate(self.settings.gemini_image_model, request_body, timeout=timeout)
        for part in _parts(body):
            inline = part.get("inlineData") or part.get("inline_data")
            if isinstance(inline, dict) and inline.get("data"):
                mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
                return GeneratedImage(mime_type=str(mime_type), data=str(inline["data"]))
        raise MediaServiceError("generated_image_missing")

    def _generate(self, model: str, request_body: dict[str, Any], *, timeout: float) -> dict[str, Any]:
        api_key = self.settings.gemini_api_key
        if not api_key:
            raise MediaServiceError("gemini_missing_api_key")
        try:
            response = requests.post(
                f"{self.settings.gemini_base_url}/models/{model}:generateContent",
                params={"key": api_key},
                headers={"Content-Type": "application/json"},
                data=json.dumps(request_body),
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise MediaServiceError(f"media_request_failed model={model}") from exc
        if response.status_code != 200:
            log.warning("media_http_error model=%s status=%s", model, response.status_code)
            raise MediaServiceError(f"media_http_{response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise MediaServiceError("media_invalid_json") from exc
        if not isinstance(body, dict):
            raise MediaServiceError("media_unexpected_body")
        return body


def _inline_jpeg(image_b64: str) -> dict[str, Any]:
    return {"inlineData": {"mimeType": "image/jpeg", "data": image_b64}}


def _parts(body: dict[str, Any]) -> list[dict[str, Any]]:
    candidates = body.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        return []
    content = candidates[0].get("content") or {}
    parts = content.get("parts") if isinstance(content, dict) else None
    return [part for part in parts or [] if isinstance(part, dict)]
