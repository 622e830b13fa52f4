from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    db_path: str = os.getenv("DB_PATH", "civicsense.db")
    dev_mode: bool = os.getenv("DEV_MODE", "0") == "1"
    discord_token: str | None = os.getenv("DISCORD_TOKEN")
    discord_channel: str = os.getenv("DISCORD_CHANNEL", "proposals")
    llm_backends: str = os.getenv("LLM_BACKENDS", "stub").strip().lower()
    gemini_api_key: str | None = os.getenv("GEMINI_API_KEY")
    gemini_base_url: str = os.getenv(
        "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
    ).rstrip("/")
    gemini_model: str = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
    gemini_vision_model: str = os.getenv("GEMINI_VISION_MODEL", "gemini-2.0-flash-exp")
    gemini_image_model: str = os.getenv("GEMINI_IMAGE_MODEL", "gemini-2.0-flash-exp-image-generation")
    openrouter_api_key: str | None = os.getenv("OPENROUTER_API_KEY")
    openrouter_model: str = os.getenv("OPENROUTER_MODEL", "openrouter/free")
    openrouter_base_url: str = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1").rstrip("/")
    ollama_base_url: str = os.getenv("OLLAMA_BASE_URL", "http://127.0.0.1:11434").rstrip("/")
    ollama_model: str = os.getenv("OLLAMA_MODEL", "llama3.1:8b")
    maps_api_key: str | None = os.getenv("MAPS_API_KEY")
    maps_base_url: str = os.getenv("MAPS_BASE_URL", "https://maps.googleapis.com/maps/api").rstrip("/")
    llm_max_input_chars: int = _env_int("LLM_MAX_INPUT_CHARS", 8000)
    llm_timeout_seconds: float = _env_float("LLM_TIMEOUT_SECONDS", 20.0)
    snapshot_timeout_seconds: float = _env_float("SNAPSHOT_TIMEOUT_SECONDS", 4.0)
    vision_timeout_seconds: float = _env_float("VISION_TIMEOUT_SECONDS", 12.0)
    persistence_timeout_seconds: float = _env_float("PERSISTENCE_TIMEOUT_SECONDS", 5.0)
    score_scale: int = _env_int("SCORE_SCALE", 100)
    stall_limit: int = _env_int("STALL_LIMIT", 2)
    default_feasibility: int = _env_int("DEFAULT_FEASIBILITY", 70)

    @property
    def backend_order(self) -> list[str]:
        names = [name.strip() for name in self.llm_backends.split(",")]
        return [name for name in names if name] or ["stub"]

    @property
    def effective_default_feasibility(self) -> float:
        """Default score expressed on the configured scale (70 -> 7 on a 0-10 scale)."""
        if self.score_scale == 10:
            return round(self.default_feasibility / 10, 1)
        return float(self.default_feasibility)

    def redacted(self) -> dict[str, object]:
        return {
            "db_path": self.db_path,
            "dev_mode": self.dev_mode,
            "discord_token_set": bool(self.discord_token),
            "discord_channel": self.discord_channel,
            "llm_backends": self.backend_order,
            "gemini_api_key_set": bool(self.gemini_api_key),
            "gemini_model": self.gemini_model,
            "openrouter_api_key_set": bool(self.openrouter_api_key),
            "openrouter_model": self.openrouter_model,
            "ollama_model": self.ollama_model,
            "maps_api_key_set": bool(self.maps_api_key),
            "llm_timeout_seconds": self.llm_timeout_seconds,
            "vision_timeout_seconds": self.vision_timeout_seconds,
            "persistence_timeout_seconds": self.persistence_timeout_seconds,
            "score_scale": self.score_scale,
            "stall_limit": self.stall_limit,
        }


def configure_logging(dev_mode: bool) -> None:
    level = logging.DEBUG if dev_mode else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
