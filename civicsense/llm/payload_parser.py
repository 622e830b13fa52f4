from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import ValidationError

from civicsense.models.core import LatLng
from civicsense.models.payloads import (
    MAP_ACTIONS,
    STATUSES,
    DraftPayload,
    RejectedPayload,
    ValidatedPayload,
    default_payload,
)

log = logging.getLogger(__name__)

FENCED_RE = re.compile(r"```[ \t]*(?:json)?[ \t]*\n?(.*?)```", flags=re.DOTALL | re.IGNORECASE)
CONTROL_KEYS = ('"map_action"', '"status"', '"feasibility_score"')

PayloadSource = Literal["fenced", "brace", "default"]


@dataclass
class ParsedReply:
    payload: DraftPayload | ValidatedPayload | RejectedPayload
    clean_text: str
    source: PayloadSource


def parse_agent_reply(agent_text: str, fallback_location: LatLng) -> ParsedReply:
    """Split an agent reply into its control payload and the text shown to the user.

    Never raises: malformed or missing payloads yield the default Draft payload.
    """
    text = agent_text or ""
    clean_text = strip_control_blocks(text)
    try:
        data, source = _extract_object(text)
    except Exception:
        log.warning("payload_extract_failed", exc_info=True)
        data, source = None, "default"

    if data is None:
        log.warning("payload_missing fallback=default chars=%s", len(text))
        return ParsedReply(payload=default_payload(fallback_location), clean_text=clean_text, source="default")

    try:
        payload = _to_payload(data, fallback_location)
    except Exception:
        log.warning("payload_normalize_failed fallback=default", exc_info=True)
        return ParsedReply(payload=default_payload(fallback_location), clean_text=clean_text, source="default")
    if source == "brace":
        log.info("payload_recovered_from_brace status=%s", payload.status)
    return ParsedReply(payload=payload, clean_text=clean_text, source=source)


def strip_control_blocks(text: str) -> str:
    """Remove control JSON from the reply, keeping fenced blocks that are ordinary content."""
    pieces: list[str] = []
    last = 0
    for match in FENCED_RE.finditer(text):
        pieces.append(_strip_prose(text[last : match.start()]))
        if not _is_control_block(match.group(1)):
            pieces.append(match.group(0))
        last = match.end()
    pieces.append(_strip_prose(text[last:]))
    cleaned = re.sub(r"\n{3,}", "\n\n", "".join(pieces))
    return cleaned.strip()


def _is_control_block(body: str) -> bool:
    return _loads_dict(body.strip()) is not None or any(key in body for key in CONTROL_KEYS)


def _strip_prose(text: str) -> str:
    cleaned = text
    for start, end in reversed(_balanced_spans(cleaned)):
        fragment = cleaned[start:end]
        if any(key in fragment for key in CONTROL_KEYS):
            cleaned = cleaned[:start] + cleaned[end:]
    # A dangling fence left by a truncated reply.
    return re.sub(r"```(?:json)?", "", cleaned, flags=re.IGNORECASE)


def _extract_object(text: str) -> tuple[dict[str, Any] | None, PayloadSource]:
    for block in reversed(FENCED_RE.findall(text)):
        parsed = _loads_dict(block.strip())
        if parsed is not None:
            return parsed, "fenced"

    for start, end in _balanced_spans(text):
        parsed = _loads_dict(text[start:end])
        if parsed is not None:
            return parsed, "brace"

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        parsed = _loads_dict(text[start : end + 1])
        if parsed is not None:
            return parsed, "brace"
    return None, "default"


def _loads_dict(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _balanced_spans(text: str) -> list[tuple[int, int]]:
    """Top-level ``{...}`` spans, skipping braces inside JSON strings."""
    spans: list[tuple[int, int]] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and depth > 0:
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                spans.append((start, index + 1))
    return spans


def _to_payload(data: dict[str, Any], fallback_location: LatLng) -> DraftPayload | ValidatedPayload | RejectedPayload:
    map_action = str(data.get("map_action") or "NONE").strip().upper()
    if map_action not in MAP_ACTIONS:
        map_action = "NONE"
    status = str(data.get("status") or "DRAFT").strip().upper()
    if status not in STATUSES:
        status = "DRAFT"

    fields: dict[str, Any] = {
        "map_action": map_action,
        "coordinates": _to_location(data.get("coordinates"), fallback_location),
        "score": _to_score(data.get("feasibility_score", data.get("score"))),
        "title": _clean_str(data.get("idea_title", data.get("title"))),
        "description": _clean_str(data.get("idea_description", data.get("description"))),
        "author": _clean_str(data.get("author")),
        "flags": _to_flags(data.get("flags")),
    }
    if status == "REJECTED":
        return RejectedPayload(**fields)
    if status == "VALIDATED":
        if fields["title"] and fields["description"]:
            return ValidatedPayload(**fields)
        log.warning(
            "payload_validated_incomplete title=%s description=%s",
            bool(fields["title"]),
            bool(fields["description"]),
        )
        return DraftPayload(claimed_validated=True, **fields)
    return DraftPayload(**fields)


def _to_location(raw: Any, fallback: LatLng) -> LatLng:
    if isinstance(raw, dict):
        try:
            return LatLng(lat=float(raw["lat"]), lng=float(raw["lng"]))
        except (KeyError, TypeError, ValueError, ValidationError):
            pass
    return fallback.model_copy()


def _to_score(raw: Any) -> float:
    if isinstance(raw, bool):
        return 0.0
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value) or value < 0:
        return 0.0
    return value


def _clean_str(raw: Any) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip()
    if not text or text.lower() in {"null", "none"}:
        return None
    return text


def _to_flags(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [str(flag).strip()[:48] for flag in raw if str(flag).strip()][:10]
