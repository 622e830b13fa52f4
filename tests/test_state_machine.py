from __future__ import annotations

import pytest

from civicsense.engine.state_machine import (
    GatheredFields,
    ProposalStateMachine,
    TransitionContext,
    title_from_messages,
)
from civicsense.models.core import LatLng
from civicsense.models.payloads import DraftPayload, RejectedPayload, ValidatedPayload

HERE = LatLng(lat=51.5, lng=-0.12)


def _draft(**kwargs) -> DraftPayload:
    return DraftPayload(coordinates=HERE, **kwargs)


def test_draft_without_progress_increments_stall():
    machine = ProposalStateMachine(stall_limit=2)

    step = machine.transition(_draft(), TransitionContext(stalled_turn_count=0))

    assert step.status == "DRAFT"
    assert step.stalled_turn_count == 1
    assert step.reason == "stalled"


def test_new_field_resets_stall():
    machine = ProposalStateMachine(stall_limit=3)

    step = machine.transition(_draft(title="Library"), TransitionContext(stalled_turn_count=2))

    assert step.status == "DRAFT"
    assert step.stalled_turn_count == 0
    assert step.gathered.title == "Library"


def test_stall_limit_forces_validated_with_synthesized_fields():
    machine = ProposalStateMachine(stall_limit=2, default_score=70)
    context = TransitionContext(
        stalled_turn_count=2,
        user_messages=["I want to build a bakery. With a patio.", "not sure"],
        author_fallback="Maya",
    )

    step = machine.transition(_draft(), context)

    assert step.status == "VALIDATED"
    assert step.synthesized
    assert step.reason == "stall_limit"
    assert isinstance(step.payload, ValidatedPayload)
    assert step.payload.title == "A bakery"
    assert step.payload.description.startswith("I want to build a bakery")
    assert step.payload.author == "Maya"
    assert step.payload.score == 70
    assert step.stalled_turn_count == 0


def test_force_uses_gathered_fields_and_anonymous_author():
    machine = ProposalStateMachine()
    gathered = GatheredFields(title="Night Market", description="Weekend food stalls")

    step = machine.transition(_draft(), TransitionContext(force=True, gathered=gathered))

    assert step.status == "VALIDATED"
    assert step.reason == "force_finalize"
    assert step.payload.title == "Night Market"
    assert step.payload.description == "Weekend food stalls"
    assert step.payload.author == "Anonymous"


def test_rejection_wins_even_when_forced():
    machine = ProposalStateMachine()

    step = machine.transition(
        RejectedPayload(coordinates=HERE),
        TransitionContext(force=True, stalled_turn_count=5, agent_text="Too tall for this street."),
    )

    assert step.status == "REJECTED"
    assert step.stalled_turn_count == 0
    assert step.explanation == "Too tall for this street."


def test_rejection_without_text_gets_explanation():
    step = ProposalStateMachine().transition(RejectedPayload(coordinates=HERE), TransitionContext())

    assert step.explanation


def test_validated_requires_author_outside_refinement():
    machine = ProposalStateMachine()
    payload = ValidatedPayload(coordinates=HERE, title="Cafe", description="Small cafe", score=90)

    step = machine.transition(payload, TransitionContext())

    assert step.status == "DRAFT"


def test_validated_in_refinement_uses_identity_name():
    machine = ProposalStateMachine()
    payload = ValidatedPayload(coordinates=HERE, title="Cafe", description="Add a terrace", score=90)

    step = machine.transition(payload, TransitionContext(refining=True, author_fallback="Sam"))

    assert step.status == "VALIDATED"
    assert step.payload.author == "Sam"
    assert step.score == 90


def test_score_is_clamped_to_scale():
    machine = ProposalStateMachine(score_scale=10, default_score=7)
    payload = ValidatedPayload(coordinates=HERE, title="Cafe", description="d", author="A", score=85)

    step = machine.transition(payload, TransitionContext())

    assert step.score == 10


def test_invalid_scale_is_rejected():
    with pytest.raises(ValueError):
        ProposalStateMachine(score_scale=5)


def test_title_from_messages_falls_back():
    assert title_from_messages(["   ", ""]) == "Community Proposal"
    assert title_from_messages(["a community garden! with benches"]) == "A community garden"
