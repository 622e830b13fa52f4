from __future__ import annotations

import json

from civicsense.models.core import LatLng
from civicsense.models.proposals import Proposal

GREETING = (
    "Hi! I'm the CivicSense Urban Planning Agent. "
    "What kind of renovation or new business would you like to propose here?"
)

OUTPUT_CONTRACT = """Output format:
Write your friendly, conversational reply first. Then ALWAYS append exactly one JSON object
at the very end, fenced like this:
```json
{
  "map_action": "MOVE_TO" | "SHOW_PINS" | "SHOW_3D_SIMULATION" | "NONE",
  "coordinates": {"lat": number, "lng": number},
  "feasibility_score": number,
  "status": "DRAFT" | "VALIDATED" | "REJECTED",
  "idea_title": string | null,
  "idea_description": string | null,
  "author": string | null,
  "flags": [string]
}
```"""

FINALIZE_DIRECTIVE = (
    "FINALIZE NOW: do not ask any more questions. Fill in any missing details with plausible "
    "values drawn from the conversation, assign a feasibility score, and answer with status "
    "\"VALIDATED\" and non-null idea_title, idea_description and author."
)

STREET_VIEW_INSTRUCTION = (
    "Analyze this Street View image. In 2-3 concise sentences: (1) architectural style of "
    "surroundings, (2) urban density, (3) visible vegetation or climate clues."
)

SATELLITE_INSTRUCTION = (
    "This is a satellite map. In 2-3 concise factual sentences: (1) area type, "
    "(2) density/type of structures, (3) road layout."
)

DESIGN_BRIEF_INSTRUCTION = (
    "You are a head architect. Write one cohesive paragraph of about 150 words describing the "
    "building's style, massing and materials, how it fits the observed streetscape, and the "
    "features the user asked for. Describe visuals only."
)

DEMAND_WEIGHT_INSTRUCTION = (
    "Rate how urgently residents want the proposed business. "
    'Reply with JSON only: {"demand_weight": <integer 1-10>}.'
)

NEEDS_REPORT_INSTRUCTION = (
    "Analyze these community requests and produce a Neighborhood Needs Report. Reply with JSON only: "
    '{"topRecommendation": string, "communitySentiment": string, "marketGaps": [string]}.'
)


def build_interview_instruction(
    location: LatLng,
    *,
    score_scale: int,
    refinement_target: Proposal | None = None,
    finalize: bool = False,
) -> str:
    threshold = 85 if score_scale == 100 else 8
    sections = [
        'Role: You are the "CivicSense Urban Planning Agent". Help citizens propose realistic '
        "neighborhood improvements and filter out unrealistic or harmful ideas.",
        "Realistic filter: if a proposal is physically impossible for the site, environmentally "
        'damaging, or clearly satirical, reject it with status "REJECTED" and explain the urban '
        "planning reason.",
    ]
    if refinement_target is None:
        sections.append(
            "Information gathering: before approving, make sure you know the specific building "
            "details (size, features, design constraints) and the user's name for attribution."
        )
    else:
        sections.append(
            "Refinement mode: the user is improving an existing proposal. Ask only for the new "
            "details they want to add; the author is already known.\n"
            f"Existing proposal: {refinement_target.business_type}: {refinement_target.review} "
            f"(by {refinement_target.author})"
        )
    sections.append(
        f"Scoring: rate feasibility from 0 to {score_scale}. Use \"SHOW_3D_SIMULATION\" only for "
        f"validated ideas scoring at least {threshold}."
    )
    sections.append(
        'Status rules: "DRAFT" while gathering information, "REJECTED" for the realistic filter, '
        '"VALIDATED" only with idea_title, idea_description and author all populated.'
    )
    sections.append(OUTPUT_CONTRACT)
    sections.append(f"Current active coordinates for this session: {json.dumps(location.model_dump())}")
    if finalize:
        sections.append(FINALIZE_DIRECTIVE)
    return "\n\n".join(sections)


GENERIC_PLACE_TYPES = ("point_of_interest", "establishment")


def place_types_label(place_types: list[str]) -> str:
    specific = [kind for kind in place_types if kind not in GENERIC_PLACE_TYPES]
    return ", ".join(specific) or "unknown"


def build_brief_message(
    idea_text: str,
    place_name: str | None,
    street: str | None,
    overhead: str | None,
    *,
    place_address: str | None = None,
    place_types: list[str] | None = None,
) -> str:
    return "\n".join(
        [
            f'USER VISION: "{idea_text}"',
            f'LOCATION NAME: "{place_name or "Unknown place"}"',
            f'ADDRESS: "{place_address or "Unknown address"}"',
            f"MAPS TYPES: {place_types_label(place_types or [])}",
            f'STREET VIEW AUDIT: "{street or "Standard urban environment"}"',
            f'SATELLITE AUDIT: "{overhead or "Standard layout"}"',
            "DESIGN BRIEF:",
        ]
    )


def build_render_prompt(
    brief: str,
    *,
    place_name: str | None,
    has_street: bool,
    has_overhead: bool,
    place_address: str | None = None,
    place_types: list[str] | None = None,
) -> str:
    site = place_name or "the selected location"
    if place_address and place_address != place_name:
        site = f"{site} ({place_address})"
    lines = [
        "Render an illustrative 3D smart-city digital twin of the proposed building, isometric "
        "45-degree bird's-eye view, flat low-poly surfaces, matte colours, minimal shadows.",
        f"Site: {site}.",
        f"Maps types: {place_types_label(place_types or [])}.",
        f"Design brief: {brief}",
    ]
    if has_street:
        lines.append("Context A is a Street View photo; use it for architectural style.")
    if has_overhead:
        lines.append("Context B is a satellite map; use it for the surrounding layout.")
    return "\n".join(lines)


def build_demand_message(review: str, business_type: str) -> str:
    return f'Proposed business type: "{business_type}"\nResident review: "{review}"'
