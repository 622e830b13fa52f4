from __future__ import annotations

import inspect
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from civicsense.config import Settings
from civicsense.engine.state_machine import GatheredFields, ProposalStateMachine, TransitionContext
from civicsense.engine.vision import vision_summary
from civicsense.errors import (
    InferenceUnavailableError,
    InvalidInputError,
    PersistenceError,
    SessionBusyError,
    SessionClosedError,
)
from civicsense.llm.client import InferenceGateway
from civicsense.llm.payload_parser import parse_agent_reply
from civicsense.llm.prompts import GREETING, build_interview_instruction
from civicsense.llm.schemas import VisionResponse
from civicsense.models.core import ChatMessage, Identity, LatLng, ProposalStatus, SessionPhase, TurnResult
from civicsense.models.payloads import ValidatedPayload
from civicsense.models.proposals import Proposal, ProposalCreate

log = logging.getLogger(__name__)

FORCE_FINALIZE_MESSAGE = "Please submit my proposal now with the details I have given so far."
INFERENCE_APOLOGY = (
    "Sorry, I couldn't reach the planning assistant just now. "
    "Your proposal is still a draft; please send your message again."
)
SAVE_FAILED_MESSAGE = (
    "Your proposal was approved but could not be saved to the map. "
    "Nothing was lost; please retry the save."
)
EMPTY_REPLY_FALLBACK = "Could you tell me a bit more about your idea?"

PhaseListener = Callable[[SessionPhase], Any]


class ProposalWriter(Protocol):
    async def create_proposal(self, proposal: ProposalCreate, submission_key: str | None = None) -> str: ...


class ValidationHook(Protocol):
    async def on_validated(self, draft: ProposalCreate, **kwargs: Any) -> VisionResponse: ...


@dataclass
class PendingSave:
    draft: ProposalCreate
    display_text: str
    map_action: str
    coordinates: LatLng


class DialogueSession:
    """One proposal interview, from the first message to the saved pin.

    Turns are strictly sequential: a submission while another turn is in
    flight raises ``SessionBusyError``. A session persists at most one
    proposal; every write carries the session's submission key so a retried
    save never produces a second document.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        gateway: InferenceGateway,
        persistence: ProposalWriter,
        orchestrator: ValidationHook | None = None,
        location: LatLng | None = None,
        identity: Identity | None = None,
        refinement_target: Proposal | None = None,
        on_phase: PhaseListener | None = None,
        greet: bool = True,
    ) -> None:
        if refinement_target is not None:
            location = refinement_target.location
        if location is None:
            raise InvalidInputError("a proposal needs a map location")
        self.settings = settings
        self.gateway = gateway
        self.persistence = persistence
        self.orchestrator = orchestrator
        self.location = location
        self.identity = identity
        self.refinement_target = refinement_target
        self.on_phase = on_phase
        self.machine = ProposalStateMachine(
            stall_limit=settings.stall_limit,
            score_scale=settings.score_scale,
            default_score=settings.effective_default_feasibility,
        )
        self.score_scale = self.machine.score_scale
        self.history: list[ChatMessage] = [ChatMessage(role="agent", text=GREETING)] if greet else []
        self.status: ProposalStatus = "DRAFT"
        self.score: float | None = None
        self.stalled_turn_count = 0
        self.gathered = GatheredFields()
        self.phase: SessionPhase = "idle"
        self.proposal_id: str | None = None
        self.submission_key = uuid.uuid4().hex
        self.last_vision: VisionResponse | None = None
        self._force_next = False
        self._busy = False
        self._pending: PendingSave | None = None

    @property
    def closed(self) -> bool:
        return self.proposal_id is not None

    @property
    def has_pending_save(self) -> bool:
        return self._pending is not None

    async def submit_user_message(self, text: str) -> TurnResult:
        self._ensure_open()
        message = (text or "").strip()
        if not message:
            raise InvalidInputError("message cannot be empty")
        return await self._exclusive(self._run_turn(message, forced=False))

    async def force_finalize(self) -> TurnResult:
        self._ensure_open()
        return await self._exclusive(self._run_turn(FORCE_FINALIZE_MESSAGE, forced=True))

    async def retry_save(self) -> TurnResult:
        self._ensure_open()
        if self._pending is None:
            raise InvalidInputError("there is no approved proposal waiting to be saved")
        return await self._exclusive(self._persist(self._pending))

    async def _exclusive(self, turn: Awaitable[TurnResult]) -> TurnResult:
        if self._busy:
            if inspect.iscoroutine(turn):
                turn.close()
            raise SessionBusyError("a message is already being processed")
        self._busy = True
        try:
            return await turn
        finally:
            self._busy = False

    def _ensure_open(self) -> None:
        if self.closed:
            raise SessionClosedError(f"proposal already saved as {self.proposal_id}")

    async def _run_turn(self, message: str, *, forced: bool) -> TurnResult:
        # A rejected idea restarts as a fresh draft, committed only once the agent answers.
        restarting = self.status == "REJECTED"
        if forced:
            self._force_next = True

        context = TransitionContext(
            stalled_turn_count=0 if restarting else self.stalled_turn_count,
            force=self._force_next,
            refining=self.refinement_target is not None,
            gathered=GatheredFields() if restarting else self.gathered,
            user_messages=self._user_messages() + ([] if forced else [message]),
            author_fallback=self.identity.display_name if self.identity else None,
        )
        instruction = build_interview_instruction(
            self.location,
            score_scale=self.score_scale,
            refinement_target=self.refinement_target,
            finalize=self.machine.must_finalize(context),
        )

        await self._set_phase("thinking")
        try:
            reply = await self.gateway.generate(instruction, self.history, message, temperature=0.7)
        except InferenceUnavailableError:
            log.warning("dialogue_inference_failed key=%s status=%s", self.submission_key, self.status)
            await self._set_phase("idle")
            return self._result(INFERENCE_APOLOGY, error="inference_unavailable")

        if restarting:
            log.info("session_restart_after_rejection key=%s", self.submission_key)
            self.status = "DRAFT"
        parsed = parse_agent_reply(reply.text, self.location)
        context.agent_text = parsed.clean_text
        transition = self.machine.transition(parsed.payload, context)
        log.info(
            "dialogue_turn key=%s backend=%s source=%s status=%s reason=%s stalled=%s",
            self.submission_key,
            reply.backend,
            parsed.source,
            transition.status,
            transition.reason,
            transition.stalled_turn_count,
        )

        display_text = parsed.clean_text or transition.explanation or EMPTY_REPLY_FALLBACK
        self.history.append(ChatMessage(role="user", text=message))
        self.history.append(ChatMessage(role="agent", text=display_text))
        self.gathered = transition.gathered
        self.stalled_turn_count = transition.stalled_turn_count
        if transition.score is not None:
            self.score = transition.score
        payload = transition.payload

        if transition.status != "VALIDATED" or not isinstance(payload, ValidatedPayload):
            self.status = transition.status
            if transition.status == "REJECTED":
                self._force_next = False
            await self._set_phase("idle")
            return self._result(display_text, map_action=payload.map_action, coordinates=payload.coordinates)

        self._force_next = False
        self.status = "VALIDATED"
        draft = self._build_draft(payload)
        if self.orchestrator is not None:
            await self._set_phase("generating")
            self.last_vision = await self.orchestrator.on_validated(draft)
            log.info("dialogue_vision key=%s %s", self.submission_key, vision_summary(self.last_vision))
            if self.last_vision.image:
                draft = draft.model_copy(update={"vision_image": self.last_vision.image})
        self._pending = PendingSave(
            draft=draft,
            display_text=display_text,
            map_action=payload.map_action,
            coordinates=payload.coordinates,
        )
        return await self._persist(self._pending)

    async def _persist(self, pending: PendingSave) -> TurnResult:
        await self._set_phase("saving")
        try:
            proposal_id = await self.persistence.create_proposal(pending.draft, submission_key=self.submission_key)
        except PersistenceError as exc:
            log.warning("proposal_save_failed key=%s error=%s", self.submission_key, exc)
            self.status = "DRAFT"
            await self._set_phase("idle")
            return self._result(
                f"{pending.display_text}\n\n{SAVE_FAILED_MESSAGE}",
                map_action=pending.map_action,
                coordinates=pending.coordinates,
                vision_image=pending.draft.vision_image,
                error="save_failed",
            )

        self._pending = None
        self.status = "VALIDATED"
        self.proposal_id = proposal_id
        log.info("proposal_saved key=%s pin=%s", self.submission_key, proposal_id)
        await self._set_phase("closed")
        return self._result(
            pending.display_text,
            map_action=pending.map_action,
            coordinates=pending.coordinates,
            vision_image=pending.draft.vision_image,
        )

    def _build_draft(self, payload: ValidatedPayload) -> ProposalCreate:
        return ProposalCreate(
            location=self.location,
            business_type=payload.title,
            review=payload.description,
            author=payload.author or "Anonymous",
            score=self.score if self.score is not None else self.machine.default_score,
            score_scale=self.score_scale,
            parent_proposal_id=self.refinement_target.id if self.refinement_target else None,
            flags=list(payload.flags),
            owner_id=self.identity.user_id if self.identity else None,
        )

    def _user_messages(self) -> list[str]:
        return [m.text for m in self.history if m.role == "user" and m.text != FORCE_FINALIZE_MESSAGE]

    def _result(
        self,
        display_text: str,
        *,
        map_action: str = "NONE",
        coordinates: LatLng | None = None,
        vision_image: str | None = None,
        error: str | None = None,
    ) -> TurnResult:
        return TurnResult(
            display_text=display_text,
            status=self.status,
            score=self.score,
            map_action=map_action,
            coordinates=coordinates,
            proposal_id=self.proposal_id,
            vision_image=vision_image,
            error=error,
            phase=self.phase,
        )

    async def _set_phase(self, phase: SessionPhase) -> None:
        self.phase = phase
        if self.on_phase is None:
            return
        try:
            outcome = self.on_phase(phase)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            log.warning("phase_listener_failed phase=%s", phase, exc_info=True)
