from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from pydantic import ValidationError

from civicsense.config import Settings
from civicsense.db.gateway import PersistenceGateway
from civicsense.db.store import Store
from civicsense.engine.report import build_needs_report
from civicsense.engine.scoring import analyze_site
from civicsense.engine.session import DialogueSession
from civicsense.engine.vision import VisionOrchestrator
from civicsense.errors import (
    InvalidInputError,
    PersistenceError,
    ProposalNotFoundError,
    SessionBusyError,
    SessionClosedError,
)
from civicsense.llm.client import InferenceGateway
from civicsense.maps.client import MapsClient
from civicsense.models.core import Identity, LatLng, SessionPhase, TurnResult

log = logging.getLogger(__name__)


COMMAND_MAP = {
    "!help": "HELP",
    "!propose": "PROPOSE",
    "!refine": "REFINE",
    "!submit": "SUBMIT",
    "!retry": "RETRY",
    "!cancel": "CANCEL",
    "!upvote": "UPVOTE",
    "!near": "NEAR",
    "!report": "REPORT",
    "!analyze": "ANALYZE",
}

HELP_TEXT = (
    "Commands: !propose <lat>,<lng> | !refine <pin_id> | !submit | !retry | !cancel | "
    "!upvote <pin_id> | !near [km] | !report | !analyze <business type> | <review>\n"
    "Once a proposal is open, just chat with the planning agent."
)
NO_SESSION_TEXT = "No proposal is open. Start one with !propose <lat>,<lng>."
GENERATING_TEXT = "Proposal approved. Generating a rendering of your idea, this can take a few seconds..."
PENDING_SAVE_TEXT = "Your approved proposal has not been saved yet. Use !retry to save it or !cancel to discard it first."
NEAR_RADIUS_KM = 1.0

Notify = Callable[[str], Awaitable[None]]


@dataclass
class Command:
    action: str
    argument: str | None = None


@dataclass
class HubReply:
    text: str
    image: str | None = None


def parse_command(text: str) -> Command:
    stripped = text.strip()
    lower = stripped.lower()
    for command, action in COMMAND_MAP.items():
        if lower == command or lower.startswith(f"{command} "):
            argument = stripped[len(command) :].strip()
            return Command(action=action, argument=argument or None)
    return Command(action="MESSAGE", argument=stripped)


def parse_location(raw: str | None) -> LatLng:
    if not raw:
        raise InvalidInputError("Give a location as <lat>,<lng>, for example !propose 40.7128,-74.0060")
    parts = [part for part in raw.replace(",", " ").split() if part]
    if len(parts) != 2:
        raise InvalidInputError("Give a location as <lat>,<lng>.")
    try:
        return LatLng(lat=float(parts[0]), lng=float(parts[1]))
    except (ValueError, ValidationError) as exc:
        raise InvalidInputError("That location is not a valid latitude/longitude pair.") from exc


def format_turn(result: TurnResult, score_scale: int) -> list[HubReply]:
    replies = [HubReply(text=result.display_text)]
    if result.proposal_id:
        score = f"{result.score:g}/{score_scale}" if result.score is not None else "n/a"
        replies.append(HubReply(text=f"Saved to the map as pin {result.proposal_id} (feasibility {score}).", image=result.vision_image))
    elif result.error == "save_failed":
        replies.append(HubReply(text="Type !retry to try saving again."))
    elif result.status == "REJECTED":
        replies.append(HubReply(text="Proposal rejected. Try a different idea or !cancel."))
    return replies


class ChatHub:
    """Routes chat messages from many users to their own dialogue sessions."""

    def __init__(
        self,
        settings: Settings,
        store: Store,
        gateway: InferenceGateway,
        maps: MapsClient,
        orchestrator: VisionOrchestrator | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.gateway = gateway
        self.maps = maps
        self.orchestrator = orchestrator
        self.sessions: dict[str, DialogueSession] = {}
        self.last_location: dict[str, LatLng] = {}

    def persistence_for(self, identity: Identity) -> PersistenceGateway:
        return PersistenceGateway(
            self.store,
            identity=identity,
            timeout_seconds=self.settings.persistence_timeout_seconds,
        )

    async def handle_message(self, identity: Identity, text: str, notify: Notify | None = None) -> list[HubReply]:
        command = parse_command(text)
        log.info("chat_command user=%s action=%s", identity.user_id, command.action)
        try:
            return await self._dispatch(identity, command, notify)
        except InvalidInputError as exc:
            return [HubReply(text=str(exc))]
        except SessionBusyError:
            return [HubReply(text="Still working on your last message, one moment.")]
        except SessionClosedError:
            self.sessions.pop(identity.user_id, None)
            return [HubReply(text=NO_SESSION_TEXT)]
        except ProposalNotFoundError:
            return [HubReply(text="No pin with that id.")]
        except PersistenceError as exc:
            log.warning("chat_persistence_failed user=%s error=%s", identity.user_id, exc)
            return [HubReply(text="The map store is not responding right now. Please try again.")]

    async def _dispatch(self, identity: Identity, command: Command, notify: Notify | None) -> list[HubReply]:
        user_id = identity.user_id
        if command.action == "HELP":
            return [HubReply(text=HELP_TEXT)]
        if command.action in {"PROPOSE", "REFINE"}:
            self._ensure_nothing_pending(user_id)
        if command.action == "PROPOSE":
            location = parse_location(command.argument)
            session = self._open_session(identity, notify, location=location)
            return [HubReply(text=session.history[0].text)]
        if command.action == "REFINE":
            if not command.argument:
                raise InvalidInputError("Which pin? Use !refine <pin_id>.")
            target = await self.persistence_for(identity).get(command.argument)
            if target is None:
                raise ProposalNotFoundError(command.argument)
            session = self._open_session(identity, notify, refinement_target=target)
            return [HubReply(text=f"Refining \"{target.business_type}\" by {target.author}. What would you like to add or change?")]
        if command.action == "CANCEL":
            dropped = self.sessions.pop(user_id, None)
            return [HubReply(text="Proposal discarded." if dropped else NO_SESSION_TEXT)]
        if command.action == "UPVOTE":
            if not command.argument:
                raise InvalidInputError("Which pin? Use !upvote <pin_id>.")
            count = await self.persistence_for(identity).upvote(command.argument)
            return [HubReply(text=f"Thanks! That proposal now has {count} agreements.")]
        if command.action == "NEAR":
            return await self._near(identity, command.argument)
        if command.action == "REPORT":
            return await self._report(identity)
        if command.action == "ANALYZE":
            return await self._analyze(identity, command.argument)

        session = self.sessions.get(user_id)
        if session is None:
            return [HubReply(text=NO_SESSION_TEXT)]
        if command.action == "SUBMIT":
            result = await session.force_finalize()
        elif command.action == "RETRY":
            result = await session.retry_save()
        else:
            result = await session.submit_user_message(command.argument or "")
        if session.closed:
            self.sessions.pop(user_id, None)
        return format_turn(result, session.score_scale)

    def _open_session(
        self,
        identity: Identity,
        notify: Notify | None,
        *,
        location: LatLng | None = None,
        refinement_target=None,
    ) -> DialogueSession:
        async def on_phase(phase: SessionPhase) -> None:
            if phase == "generating" and notify is not None:
                await notify(GENERATING_TEXT)

        session = DialogueSession(
            settings=self.settings,
            gateway=self.gateway,
            persistence=self.persistence_for(identity),
            orchestrator=self.orchestrator,
            location=location,
            identity=identity,
            refinement_target=refinement_target,
            on_phase=on_phase,
        )
        self.sessions[identity.user_id] = session
        self.last_location[identity.user_id] = session.location
        return session

    def _ensure_nothing_pending(self, user_id: str) -> None:
        current = self.sessions.get(user_id)
        if current is not None and current.has_pending_save:
            raise InvalidInputError(PENDING_SAVE_TEXT)

    def _location_for(self, user_id: str) -> LatLng:
        location = self.last_location.get(user_id)
        if location is None:
            raise InvalidInputError("Open a proposal with !propose <lat>,<lng> first so I know where to look.")
        return location

    async def _near(self, identity: Identity, argument: str | None) -> list[HubReply]:
        radius_km = NEAR_RADIUS_KM
        if argument:
            try:
                radius_km = float(argument)
            except ValueError as exc:
                raise InvalidInputError("Radius must be a number of kilometres.") from exc
            if radius_km <= 0:
                raise InvalidInputError("Radius must be positive.")
        pins = await self.persistence_for(identity).list_near(self._location_for(identity.user_id), radius_km)
        if not pins:
            return [HubReply(text=f"No proposals within {radius_km:g} km yet.")]
        lines = [
            f"{pin.id}: {pin.business_type} by {pin.author} ({pin.agreement_count} agreements)"
            for pin in pins[:10]
        ]
        return [HubReply(text="\n".join(lines))]

    async def _report(self, identity: Identity) -> list[HubReply]:
        report = await build_needs_report(
            self.gateway,
            self.persistence_for(identity),
            self._location_for(identity.user_id),
        )
        if report.error:
            return [HubReply(text=report.error)]
        gaps = ", ".join(report.market_gaps) or "none identified"
        return [
            HubReply(
                text=(
                    f"Neighborhood needs ({report.pins_analyzed} proposals)\n"
                    f"Top recommendation: {report.top_recommendation}\n"
                    f"Sentiment: {report.community_sentiment}\n"
                    f"Market gaps: {gaps}"
                )
            )
        ]

    async def _analyze(self, identity: Identity, argument: str | None) -> list[HubReply]:
        if not argument or "|" not in argument:
            raise InvalidInputError("Use !analyze <business type> | <review text>.")
        business_type, review = (part.strip() for part in argument.split("|", 1))
        if not business_type or not review:
            raise InvalidInputError("Both a business type and a review are needed.")
        analysis = await analyze_site(
            self.gateway,
            self.maps,
            location=self._location_for(identity.user_id),
            business_type=business_type,
            review=review,
        )
        return [
            HubReply(
                text=(
                    f"{business_type}: demand {analysis.demand_weight}/10, "
                    f"{analysis.competitor_count} competitors within 500 m, "
                    f"saturation index {analysis.saturation_index:.2f}"
                )
            )
        ]
