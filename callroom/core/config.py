"""Application configuration for the signaling server and call clients."""
from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["*"])
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3001)
    log_level: str = Field(default="INFO")

    room_capacity: int = Field(default=2, ge=1)
    room_id_length: int = Field(default=8, ge=4, le=32)
    room_grace_seconds: float = Field(default=300.0, ge=0)
    relay_require_room_membership: bool = Field(default=True)

    signaling_url: str = Field(default="ws://localhost:3001/ws")
    ice_servers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
    ])
    data_channel_label: str = Field(default="transcript")
    audio_device: str = Field(default="default")
    audio_format: str = Field(default="pulse")

    speech_language: str = Field(default="ja-JP")
    silence_timeout_ms: int = Field(default=2000, ge=1)
    recognition_restart_attempts: int = Field(default=3, ge=1)
    recognition_restart_base_ms: int = Field(default=300, ge=0)
    recognition_restart_step_ms: int = Field(default=200, ge=0)

    deepgram_api_key: str = Field(default="")
    deepgram_model: str = Field(default="nova-2")

    @field_validator("cors_allow_origins", "ice_servers", mode="before")
    @classmethod
    def _split_csv(cls, value: object) -> object:
        """Allow comma-separated env values for list settings."""

        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
