"""Draft -> Validated | Rejected transitions for one proposal interview.

The machine is pure: it takes the parsed payload of one agent turn plus the
session facts it needs and returns the next state. The session owns and
commits that state.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace

from civicsense.models.core import ProposalStatus
from civicsense.models.payloads import DraftPayload, RejectedPayload, ValidatedPayload

log = logging.getLogger(__name__)

REJECTION_FALLBACK = (
    "This proposal did not pass the realism check for this site. "
    "Try an idea that fits the street's scale and surroundings."
)
DEFAULT_TITLE = "Community Proposal"


@dataclass(frozen=True)
class GatheredFields:
    title: str | None = None
    description: str | None = None
    author: str | None = None
    flags: tuple[str, ...] = ()

    def merge(self, payload: DraftPayload | ValidatedPayload | RejectedPayload) -> tuple[GatheredFields, bool]:
        """Fold the payload's fields in; report whether any required field is new."""
        progressed = False
        updates: dict[str, object] = {}
        for name in ("title", "description", "author"):
            value = getattr(payload, name)
            if value and value != getattr(self, name):
                updates[name] = value
                progressed = True
        if payload.flags:
            merged = list(self.flags)
            for flag in payload.flags:
                if flag not in merged:
                    merged.append(flag)
            updates["flags"] = tuple(merged[:10])
        return replace(self, **updates), progressed


@dataclass
class TransitionContext:
    stalled_turn_count: int = 0
    force: bool = False
    refining: bool = False
    gathered: GatheredFields = field(default_factory=GatheredFields)
    user_messages: list[str] = field(default_factory=list)
    author_fallback: str | None = None
    agent_text: str = ""


@dataclass
class Transition:
    status: ProposalStatus
    payload: DraftPayload | ValidatedPayload | RejectedPayload
    stalled_turn_count: int
    gathered: GatheredFields
    score: float | None = None
    synthesized: bool = False
    reason: str = ""
    explanation: str | None = None


class ProposalStateMachine:
    def __init__(self, *, stall_limit: int = 2, score_scale: int = 100, default_score: float = 70.0) -> None:
        if score_scale not in (10, 100):
            raise ValueError("score_scale must be 10 or 100")
        self.stall_limit = stall_limit
        self.score_scale = score_scale
        self.default_score = self.clamp_score(default_score)

    def clamp_score(self, value: float) -> float:
        return max(0.0, min(float(self.score_scale), float(value)))

    def must_finalize(self, context: TransitionContext) -> bool:
        return context.force or context.stalled_turn_count >= self.stall_limit

    def transition(
        self,
        payload: DraftPayload | ValidatedPayload | RejectedPayload,
        context: TransitionContext,
    ) -> Transition:
        gathered, progressed = context.gathered.merge(payload)
        reported_score = self.clamp_score(payload.score) if payload.score > 0 else None

        if isinstance(payload, RejectedPayload):
            explanation = context.agent_text.strip() or REJECTION_FALLBACK
            log.info("proposal_rejected forced=%s", self.must_finalize(context))
            return Transition(
                status="REJECTED",
                payload=payload,
                stalled_turn_count=0,
                gathered=gathered,
                score=reported_score,
                reason="realism_filter",
                explanation=explanation,
            )

        if isinstance(payload, ValidatedPayload):
            author = payload.author or gathered.author
            if author or context.refining:
                validated = payload.model_copy(
                    update={
                        "author": author or context.author_fallback or "Anonymous",
                        "score": reported_score if reported_score is not None else self.default_score,
                        "flags": list(gathered.flags),
                    }
                )
                return Transition(
                    status="VALIDATED",
                    payload=validated,
                    stalled_turn_count=0,
                    gathered=gathered,
                    score=validated.score,
                    reason="agent_validated",
                )
            log.warning("validated_without_author treated_as=draft")

        if isinstance(payload, DraftPayload) and payload.claimed_validated:
            log.warning("validated_missing_fields treated_as=draft")

        if self.must_finalize(context):
            validated = self._synthesize(payload, gathered, context)
            log.info(
                "proposal_auto_validated force=%s stalled_turns=%s",
                context.force,
                context.stalled_turn_count,
            )
            return Transition(
                status="VALIDATED",
                payload=validated,
                stalled_turn_count=0,
                gathered=gathered,
                score=validated.score,
                synthesized=True,
                reason="force_finalize" if context.force else "stall_limit",
            )

        stalled = 0 if progressed else context.stalled_turn_count + 1
        draft = payload if isinstance(payload, DraftPayload) else DraftPayload(**_base_fields(payload))
        return Transition(
            status="DRAFT",
            payload=draft,
            stalled_turn_count=stalled,
            gathered=gathered,
            score=reported_score,
            reason="progress" if progressed else "stalled",
        )

    def _synthesize(
        self,
        payload: DraftPayload | ValidatedPayload,
        gathered: GatheredFields,
        context: TransitionContext,
    ) -> ValidatedPayload:
        title = payload.title or gathered.title or title_from_messages(context.user_messages)
        description = (
            payload.description
            or gathered.description
            or " ".join(text.strip() for text in context.user_messages if text.strip())[:500]
            or title
        )
        author = payload.author or gathered.author or context.author_fallback or "Anonymous"
        score = self.clamp_score(payload.score) if payload.score > 0 else self.default_score
        fields = _base_fields(payload)
        fields.update(
            title=title,
            description=description,
            author=author,
            score=score,
            flags=list(gathered.flags),
        )
        return ValidatedPayload(**fields)


def title_from_messages(messages: list[str]) -> str:
    for text in messages:
        cleaned = " ".join(text.split())
        if not cleaned:
            continue
        sentence = re.split(r"(?<=[.!?])\s", cleaned, maxsplit=1)[0].rstrip(".!?")
        sentence = re.sub(r"^(?:i\s+(?:want|would like|think|propose)\s+(?:to\s+(?:build|open|add|see)\s+)?)", "", sentence, flags=re.IGNORECASE)
        sentence = sentence.strip()
        if sentence:
            title = sentence[:60].rstrip()
            return title[0].upper() + title[1:]
    return DEFAULT_TITLE


def _base_fields(payload: DraftPayload | ValidatedPayload | RejectedPayload) -> dict[str, object]:
    return {
        "map_action": payload.map_action,
        "coordinates": payload.coordinates,
        "score": payload.score,
        "title": payload.title,
        "description": payload.description,
        "author": payload.author,
        "flags": list(payload.flags),
    }
