from __future__ import annotations

import json
import logging
import math
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterator

from civicsense.db.schema import init_db
from civicsense.errors import PermissionDeniedError, ProposalNotFoundError
from civicsense.models.core import LatLng
from civicsense.models.events import PinEvent
from civicsense.models.proposals import Proposal, ProposalCreate

log = logging.getLogger(__name__)

KM_PER_DEGREE = 111.0

PinListener = Callable[[PinEvent], None]


def approx_distance_km(a: LatLng, b: LatLng) -> float:
    d_lat = (b.lat - a.lat) * KM_PER_DEGREE
    d_lng = (b.lng - a.lng) * KM_PER_DEGREE * math.cos(math.radians(a.lat))
    return math.sqrt(d_lat * d_lat + d_lng * d_lng)


class Store:
    """SQLite-backed pin collection.

    The connection is shared between worker threads, so every statement runs
    under one lock. Listeners registered with ``subscribe`` are called after
    each committed change.
    """

    def __init__(self, db_path: str) -> None:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._listeners: list[PinListener] = []
        init_db(self.conn)

    @contextmanager
    def tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            log.debug("transaction_start")
            try:
                yield self.conn
                self.conn.commit()
                log.debug("transaction_commit")
            except Exception:
                self.conn.rollback()
                log.exception("transaction_rollback")
                raise

    def create_pin(self, proposal: ProposalCreate, submission_key: str | None = None) -> str:
        with self.tx() as conn:
            if submission_key:
                row = conn.execute(
                    "SELECT pin_id FROM pins WHERE submission_key = ?",
                    (submission_key,),
                ).fetchone()
                if row is not None:
                    log.info("pin_write_deduplicated pin=%s key=%s", row["pin_id"], submission_key)
                    return row["pin_id"]
            pin_id = uuid.uuid4().hex
            conn.execute(
                """
                INSERT INTO pins(
                    pin_id, lat, lng, business_type, review, author, agreement_count,
                    score, score_scale, vision_image, parent_pin_id, flags_json,
                    owner_id, submission_key, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    pin_id,
                    proposal.location.lat,
                    proposal.location.lng,
                    proposal.business_type,
                    proposal.review,
                    proposal.author,
                    proposal.score,
                    proposal.score_scale,
                    proposal.vision_image,
                    proposal.parent_proposal_id,
                    json.dumps(proposal.flags),
                    proposal.owner_id,
                    submission_key,
                    datetime.now(UTC).isoformat(),
                ),
            )
        log.info("pin_created pin=%s type=%s", pin_id, proposal.business_type)
        self._notify(PinEvent(kind="created", pin_id=pin_id, actor_id=proposal.owner_id))
        return pin_id

    def get_pin(self, pin_id: str) -> Proposal | None:
        with self._lock:
            row = self.conn.execute("SELECT * FROM pins WHERE pin_id = ?", (pin_id,)).fetchone()
        return _row_to_proposal(row) if row is not None else None

    def upvote(self, pin_id: str, actor_id: str | None = None) -> int:
        with self.tx() as conn:
            cursor = conn.execute(
                "UPDATE pins SET agreement_count = agreement_count + 1 WHERE pin_id = ?",
                (pin_id,),
            )
            if cursor.rowcount == 0:
                raise ProposalNotFoundError(f"pin {pin_id} not found")
            count = conn.execute(
                "SELECT agreement_count FROM pins WHERE pin_id = ?", (pin_id,)
            ).fetchone()["agreement_count"]
        self._notify(PinEvent(kind="upvoted", pin_id=pin_id, actor_id=actor_id))
        return int(count)

    def delete_pin(self, pin_id: str, actor_id: str | None = None) -> None:
        with self.tx() as conn:
            row = conn.execute("SELECT owner_id FROM pins WHERE pin_id = ?", (pin_id,)).fetchone()
            if row is None:
                raise ProposalNotFoundError(f"pin {pin_id} not found")
            owner_id = row["owner_id"]
            if owner_id is not None and owner_id != actor_id:
                raise PermissionDeniedError(f"pin {pin_id} belongs to another user")
            conn.execute("DELETE FROM pins WHERE pin_id = ?", (pin_id,))
        log.info("pin_deleted pin=%s actor=%s", pin_id, actor_id)
        self._notify(PinEvent(kind="deleted", pin_id=pin_id, actor_id=actor_id))

    def list_pins(self, limit: int | None = None) -> list[Proposal]:
        sql = "SELECT * FROM pins ORDER BY created_at DESC, rowid DESC"
        params: tuple[int, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [_row_to_proposal(row) for row in rows]

    def list_near(self, location: LatLng, radius_km: float) -> list[Proposal]:
        nearby: list[tuple[float, Proposal]] = []
        for pin in self.list_pins():
            distance = approx_distance_km(location, pin.location)
            if distance <= radius_km:
                nearby.append((distance, pin))
        nearby.sort(key=lambda item: item[0])
        return [pin for _, pin in nearby]

    def count_pins(self) -> int:
        with self._lock:
            return int(self.conn.execute("SELECT COUNT(*) AS c FROM pins").fetchone()["c"])

    def subscribe(self, listener: PinListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: PinEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                log.warning("pin_listener_failed kind=%s pin=%s", event.kind, event.pin_id, exc_info=True)


def _row_to_proposal(row: sqlite3.Row) -> Proposal:
    try:
        flags = json.loads(row["flags_json"] or "[]")
    except json.JSONDecodeError:
        flags = []
    return Proposal(
        id=row["pin_id"],
        location=LatLng(lat=row["lat"], lng=row["lng"]),
        business_type=row["business_type"],
        review=row["review"],
        author=row["author"],
        agreement_count=row["agreement_count"],
        score=row["score"],
        score_scale=row["score_scale"],
        vision_image=row["vision_image"],
        parent_proposal_id=row["parent_pin_id"],
        flags=[str(flag) for flag in flags] if isinstance(flags, list) else [],
        owner_id=row["owner_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )
