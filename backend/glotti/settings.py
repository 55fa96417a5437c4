import os
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_VOICES = ["Puck", "Charon", "Kore", "Fenrir", "Aoede"]


class Settings(BaseSettings):
    """Global configuration for the Glotti backend."""

    api_key: str = Field(
        default_factory=lambda: os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY") or ""
    )
    use_vertex: bool = False
    project_id: str = Field(
        default_factory=lambda: (
            os.getenv("GOOGLE_CLOUD_PROJECT")
            or os.getenv("GCLOUD_PROJECT")
            or os.getenv("GOOGLE_CLOUD_PROJECT_ID")
            or ""
        )
    )
    location: str = "us-central1"

    live_model_id: str = "gemini-2.5-flash-native-audio-preview-12-2025"
    report_model_id: str = "gemini-2.5-flash"
    tone_model_id: str = "gemini-2.5-flash"
    voices: list[str] = Field(default_factory=lambda: list(DEFAULT_VOICES))

    session_max_seconds: float = 180.0
    interrupt_grace_seconds: float = 1.0
    upstream_setup_timeout_seconds: float = 10.0
    user_flush_words: int = 10
    ai_flush_words: int = 15

    tone_check_interval_seconds: float = 15.0
    tone_min_words: int = 20
    tone_text_limit: int = 1000

    store_backend: Literal["file", "database"] = "file"
    sessions_file: Path = Path("sessions.json")
    share_key_length: int = 24
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="GLOTTI_", extra="ignore")

    @field_validator("voices")
    @classmethod
    def validate_voices(cls, value: list[str]) -> list[str]:
        voices = [voice.strip() for voice in value if voice.strip()]
        if not voices:
            raise ValueError("At least one voice must be configured.")
        return voices

    @field_validator("session_max_seconds", "interrupt_grace_seconds")
    @classmethod
    def validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Durations must be positive.")
        return value


settings = Settings()  # type: ignore[call-arg]
