from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, TypeVar

from civicsense.db.store import PinListener, Store
from civicsense.errors import PersistenceError
from civicsense.models.core import Identity, LatLng
from civicsense.models.proposals import Proposal, ProposalCreate

log = logging.getLogger(__name__)

T = TypeVar("T")


class PersistenceGateway:
    """Async, time-bounded access to the pin store on behalf of one identity."""

    def __init__(self, store: Store, *, identity: Identity | None = None, timeout_seconds: float = 5.0) -> None:
        self.store = store
        self.identity = identity
        self.timeout_seconds = timeout_seconds

    @property
    def actor_id(self) -> str | None:
        return self.identity.user_id if self.identity else None

    async def create_proposal(self, proposal: ProposalCreate, submission_key: str | None = None) -> str:
        if proposal.owner_id is None and self.identity is not None:
            proposal = proposal.model_copy(update={"owner_id": self.identity.user_id})
        return await self._run("create_proposal", self.store.create_pin, proposal, submission_key)

    async def upvote(self, pin_id: str) -> int:
        return await self._run("upvote", self.store.upvote, pin_id, self.actor_id)

    async def delete(self, pin_id: str) -> None:
        await self._run("delete", self.store.delete_pin, pin_id, self.actor_id)

    async def get(self, pin_id: str) -> Proposal | None:
        return await self._run("get", self.store.get_pin, pin_id)

    async def list_near(self, location: LatLng, radius_km: float) -> list[Proposal]:
        return await self._run("list_near", self.store.list_near, location, radius_km)

    def subscribe(self, on_change: PinListener) -> Callable[[], None]:
        return self.store.subscribe(on_change)

    async def _run(self, op: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout_seconds)
        except TimeoutError as exc:
            log.warning("persistence_timeout op=%s timeout_seconds=%s", op, self.timeout_seconds)
            raise PersistenceError(f"{op} timed out after {self.timeout_seconds}s") from exc
        except PersistenceError:
            raise
        except Exception as exc:
            log.warning("persistence_failed op=%s", op, exc_info=True)
            raise PersistenceError(f"{op} failed: {exc}") from exc
