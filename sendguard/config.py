from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Safety gate settings loaded from environment variables.
    Every limit here is operator-configurable without a code change.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
        populate_by_name=True,
    )

    # Storage
    DATABASE_URL: str = "sqlite:///./safety-data/safety.db"
    DATA_DIR: str = "./safety-data"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Startup interlock
    GRACE_PERIOD_SECONDS: float = Field(default=240.0, ge=0)
    KILL_SWITCH: bool = Field(
        default=False,
        validation_alias=AliasChoices("KILL_SWITCH", "WHATSAPP_KILL_SWITCH"),
    )

    # Circuit breaker
    HOURLY_LIMIT: int = Field(default=3, ge=0)
    DAILY_LIMIT: int = Field(default=10, ge=0)

    # Recipient-level duplicate safeguards
    RAPID_FIRE_SECONDS: float = Field(default=5.0, ge=0)
    MAX_CONSECUTIVE_FAILURES: int = Field(default=3, ge=1)

    # Similarity guard
    SIMILARITY_THRESHOLD: float = Field(default=0.8, ge=0.0, le=1.0)

    # Business hours, [start, end) in BUSINESS_TIMEZONE (local time when unset)
    BUSINESS_HOURS_START: int = Field(default=9, ge=0, le=24)
    BUSINESS_HOURS_END: int = Field(default=20, ge=0, le=24)
    BUSINESS_TIMEZONE: Optional[str] = None

    # Per-type cooldowns and daily caps from the rule catalog
    ENFORCE_RULE_WINDOWS: bool = False

    EVALUATION_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every call.
    """
    return Settings()
