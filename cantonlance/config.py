"""Canonical configuration surface for the cantonlance client."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CantonlanceSettings(BaseSettings):
    """Runtime settings for ledger access and local state."""

    model_config = SettingsConfigDict(
        env_prefix="CANTONLANCE_",
        env_file=".env",
        extra="ignore",
    )

    # Where local-config.json / devnet-config.json are probed
    config_dir: Path = Path("public")

    # Dynamic identities are persisted here, one file per environment
    state_dir: Path = Field(default_factory=lambda: Path.home() / ".cantonlance")

    application_id: str = "cantonlance"

    # HTTP
    request_timeout: float = 30.0
    max_retries: int = 2

    # Bounded histories
    call_log_size: int = 100
    action_log_size: int = 500

    @field_validator("request_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("request_timeout must be positive")
        return v

    @field_validator("max_retries", "call_log_size", "action_log_size")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("value must not be negative")
        return v


@lru_cache
def load_settings(env_file: str | None = None) -> CantonlanceSettings:
    """Load settings once per process so every component agrees."""
    env_path = Path(env_file) if env_file else None
    return CantonlanceSettings(_env_file=env_path)
