from __future__ import annotations

import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from civicsense.config import Settings, configure_logging
from civicsense.db.store import Store
from civicsense.models.core import LatLng
from civicsense.models.proposals import ProposalCreate

log = logging.getLogger("seed_pins")

SEED_PINS = [
    (
        ProposalCreate(
            location=LatLng(lat=40.7128, lng=-74.0060),
            business_type="Community Tech Hub",
            review=(
                "A collaborative workspace and learning center designed to provide free high-speed internet, "
                "coding workshops for kids, and meeting space for local startups."
            ),
            author="Sarah Jenkins",
            score=85,
        ),
        42,
    ),
    (
        ProposalCreate(
            location=LatLng(lat=40.7135, lng=-74.0045),
            business_type="Rooftop Urban Farm",
            review=(
                "Utilize empty commercial rooftop space to build a hydroponic farm that supplies fresh produce "
                "to neighborhood restaurants and local food banks."
            ),
            author="Marcus Chen",
            score=92,
        ),
        128,
    ),
    (
        ProposalCreate(
            location=LatLng(lat=40.7115, lng=-74.0075),
            business_type="Pedestrian Plaza & Cafe",
            review=(
                "Close off this intersection to car traffic and create a pedestrian-only zone with outdoor seating, "
                "a small coffee kiosk, and space for local musicians."
            ),
            author="Elena Rodriguez",
            score=78,
        ),
        85,
    ),
    (
        # Same spot as the tech hub, so one location carries two ideas.
        ProposalCreate(
            location=LatLng(lat=40.7128, lng=-74.0060),
            business_type="Pop-Up Art Gallery",
            review=(
                "A temporary exhibition space housed in rotating shipping containers, showcasing local artists "
                "and offering weekend pottery classes."
            ),
            author="David Kim",
            score=65,
        ),
        31,
    ),
]


def seed(store: Store) -> int:
    if store.count_pins() > 0:
        log.info("seed_skipped existing_pins=%s", store.count_pins())
        return 0
    for index, (proposal, agreements) in enumerate(SEED_PINS):
        pin_id = store.create_pin(proposal, submission_key=f"seed-{index}")
        with store.tx() as conn:
            conn.execute("UPDATE pins SET agreement_count = ? WHERE pin_id = ?", (agreements, pin_id))
    log.info("seed_complete pins=%s", len(SEED_PINS))
    return len(SEED_PINS)


def run() -> None:
    settings = Settings()
    configure_logging(settings.dev_mode)
    seeded = seed(Store(settings.db_path))
    print(f"seeded_pins={seeded}")


if __name__ == "__main__":
    run()
