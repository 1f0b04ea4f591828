"""Configuration for the bandcal availability core."""

from __future__ import annotations

import logging

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings loaded from environment."""

    api_base_url: str = "http://localhost:54321"
    api_key: SecretStr = SecretStr("")
    request_timeout_seconds: float = 30.0

    window_months: int = Field(default=6, ge=0)
    poll_interval_seconds: float = Field(default=45.0, gt=0)
    stale_after_seconds: float = Field(default=60.0, ge=0)
    verify_max_retries: int = Field(default=3, ge=0)
    verify_base_delay_seconds: float = Field(default=0.2, ge=0)

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="BANDCAL_", env_file=".env")


def configure_logging(settings: Settings) -> None:
    """Apply the configured log level to the package logger."""
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.getLogger("bandcal").setLevel(level)
