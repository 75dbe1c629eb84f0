"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_GREETING = (
    "When the call starts, greet the caller by saying 'Thank you for calling "
    "Fluffhead Pharmacy, where our intent is all for your delight. This is the "
    "pharmacist speaking, how may I assist you today?'"
)


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")

    # Realtime model leg
    openai_api_key: str | None = Field(default=None)
    openai_realtime_url: str = Field(
        default="wss://api.openai.com/v1/realtime?model=gpt-4o-realtime-preview-2024-12-17",
        description="WebSocket endpoint of the realtime model.",
    )
    openai_beta_header: str = Field(default="realtime=v1")

    # Session defaults sent on session.created (observer config overrides these)
    default_voice: str = Field(default="sage")
    transcription_model: str = Field(default="whisper-1")
    greeting_instruction: str = Field(default=DEFAULT_GREETING)

    # Hold music
    hold_music_dir: Path = Field(
        default=Path("./assets/audio"),
        description="Directory holding hold music assets (raw 8 kHz mu-law).",
    )
    hold_music_frame_ms: int = Field(default=20, ge=1)

    # Session lifecycle
    session_cleanup_timeout_seconds: float = Field(default=300.0, gt=0)
    activity_check_interval_seconds: float = Field(default=60.0, gt=0)
    observer_hub_session_id: str = Field(
        default="logs-shared",
        description="Session where every UI observer connects to receive broadcasts.",
    )
    broadcast_registry_session_id: str = Field(
        default="broadcast-registry",
        description="Session holding the polled broadcast backlog.",
    )

    public_base_url: str | None = Field(
        default=None,
        description="Public base URL of this service (e.g. https://<ngrok>.ngrok-free.app).",
    )

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.strip().upper()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
