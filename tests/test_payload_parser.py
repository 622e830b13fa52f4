from __future__ import annotations

from civicsense.llm.payload_parser import parse_agent_reply, strip_control_blocks
from civicsense.models.core import LatLng
from civicsense.models.payloads import DraftPayload, RejectedPayload, ValidatedPayload

HERE = LatLng(lat=40.7128, lng=-74.006)


def test_fenced_payload_is_extracted_and_hidden():
    text = (
        "Great, approving your library!\n"
        "```json\n"
        '{"map_action": "SHOW_3D_SIMULATION", "coordinates": {"lat": 40.71, "lng": -74.0}, '
        '"feasibility_score": 88, "status": "VALIDATED", "idea_title": "Corner Library", '
        '"idea_description": "Two floors of books", "author": "Maya"}\n'
        "```"
    )

    parsed = parse_agent_reply(text, HERE)

    assert parsed.source == "fenced"
    assert isinstance(parsed.payload, ValidatedPayload)
    assert parsed.payload.title == "Corner Library"
    assert parsed.payload.score == 88
    assert parsed.payload.coordinates.lat == 40.71
    assert parsed.clean_text == "Great, approving your library!"


def test_bare_object_is_recovered():
    text = 'Hmm, tell me more. {"map_action": "NONE", "status": "DRAFT", "feasibility_score": 0}'

    parsed = parse_agent_reply(text, HERE)

    assert parsed.source == "brace"
    assert isinstance(parsed.payload, DraftPayload)
    assert parsed.clean_text == "Hmm, tell me more."


def test_missing_payload_defaults_to_draft_at_session_location():
    parsed = parse_agent_reply("What would you like to build?", HERE)

    assert parsed.source == "default"
    assert isinstance(parsed.payload, DraftPayload)
    assert parsed.payload.map_action == "NONE"
    assert parsed.payload.coordinates == HERE
    assert parsed.clean_text == "What would you like to build?"


def test_malformed_inputs_never_raise():
    for text in ["", "{", "}{", "```json\n{not json}\n```", "{\"status\": [1, 2", None, "{\"a\": \"}\"}"]:
        parsed = parse_agent_reply(text, HERE)
        assert parsed.payload.status in {"DRAFT", "VALIDATED", "REJECTED"}


def test_unknown_enum_values_fall_back():
    text = '{"map_action": "FLY_AWAY", "status": "MAYBE", "feasibility_score": "high"}'

    parsed = parse_agent_reply(text, HERE)

    assert parsed.payload.map_action == "NONE"
    assert parsed.payload.status == "DRAFT"
    assert parsed.payload.score == 0.0


def test_validated_without_title_is_downgraded():
    text = '```json\n{"status": "VALIDATED", "idea_title": null, "idea_description": "x"}\n```'

    parsed = parse_agent_reply(text, HERE)

    assert isinstance(parsed.payload, DraftPayload)
    assert parsed.payload.claimed_validated is True


def test_rejected_payload_keeps_explanation_text():
    text = 'Too tall for this street.\n```json\n{"status": "rejected", "map_action": "NONE"}\n```'

    parsed = parse_agent_reply(text, HERE)

    assert isinstance(parsed.payload, RejectedPayload)
    assert parsed.clean_text == "Too tall for this street."


def test_last_fenced_block_wins():
    text = (
        '```json\n{"status": "DRAFT"}\n```\nActually, approved.\n'
        '```json\n{"status": "REJECTED"}\n```'
    )

    parsed = parse_agent_reply(text, HERE)

    assert parsed.payload.status == "REJECTED"


def test_strip_leaves_unrelated_braces():
    assert strip_control_blocks("Use {curly} braces") == "Use {curly} braces"


def test_ordinary_fenced_block_stays_visible():
    text = (
        "Here is a rough floor plan:\n"
        "```\n| Floor | Use |\n| 1 | Reading room |\n```\n"
        "Does that work?\n"
        '```json\n{"map_action": "NONE", "status": "DRAFT", "feasibility_score": 60}\n```'
    )

    parsed = parse_agent_reply(text, HERE)

    assert parsed.source == "fenced"
    assert "| 1 | Reading room |" in parsed.clean_text
    assert parsed.clean_text.count("```") == 2
    assert "feasibility_score" not in parsed.clean_text
    assert parsed.clean_text.endswith("Does that work?")


def test_fenced_block_with_control_key_is_hidden_even_when_malformed():
    text = 'Almost there.\n```json\n{"status": "DRAFT", "map_action":\n```'

    assert strip_control_blocks(text) == "Almost there."
