from __future__ import annotations

import logging

from civicsense.commands import ChatHub
from civicsense.config import Settings, configure_logging
from civicsense.db.store import Store
from civicsense.discord_bot import run_discord_bot
from civicsense.engine.vision import VisionOrchestrator
from civicsense.llm.client import InferenceGateway
from civicsense.llm.vision import MediaClient
from civicsense.maps.client import MapsClient


def build_hub(settings: Settings) -> ChatHub:
    store = Store(settings.db_path)
    gateway = InferenceGateway(settings)
    maps = MapsClient(settings)
    orchestrator = VisionOrchestrator(settings, gateway, maps, MediaClient(settings))
    return ChatHub(settings, store, gateway, maps, orchestrator=orchestrator)


def main() -> None:
    settings = Settings()
    configure_logging(settings.dev_mode)
    logging.getLogger(__name__).info("app_start %s", settings.redacted())
    hub = build_hub(settings)
    run_discord_bot(hub, settings)


if __name__ == "__main__":
    main()
