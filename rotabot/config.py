"""Application configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_path: Path = Field(default=Path("rotabot.db"), alias="DATABASE_PATH")
    signal_cli_path: str = Field(default="signal-cli", alias="SIGNAL_CLI_PATH")
    signal_account: str = Field(..., alias="SIGNAL_ACCOUNT")
    signal_owner_number: str = Field(..., alias="SIGNAL_OWNER_NUMBER")
    # Comma-separated E.164 numbers allowed to DM the bot besides rotation members.
    signal_allowed_senders: str = Field(default="", alias="SIGNAL_ALLOWED_SENDERS")
    signal_poll_interval_seconds: float = Field(default=2.0, alias="SIGNAL_POLL_INTERVAL_SECONDS")
    default_timezone: str = Field(default="UTC", alias="DEFAULT_TIMEZONE")
    summary_occurrences: int = Field(default=4, ge=1, alias="SUMMARY_OCCURRENCES")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()


def allowed_senders(settings: Settings) -> frozenset[str]:
    """Return the set of E.164 numbers permitted to DM the bot outside any rotation.

    Always includes the owner. Rotation members are admitted separately, since
    they need to answer their own picks.
    """
    extra = {n.strip() for n in settings.signal_allowed_senders.split(",") if n.strip()}
    return frozenset({settings.signal_owner_number} | extra)
