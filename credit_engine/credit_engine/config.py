"""Credit engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from credit_engine.compliance.policy import FailurePolicy

logger = logging.getLogger(__name__)


class PlatformEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Ledger and compliance settings loaded from environment variables with LEDGER_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: PlatformEnv = PlatformEnv.DEV
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///.dispatch/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Compliance
    compliance_failure_policy: FailurePolicy = FailurePolicy.FAIL_OPEN
    default_timezone: str = "America/New_York"
    quiet_hours_start: int = 21
    quiet_hours_end: int = 8

    # Telemetry
    structured_logging: bool = False

    @field_validator("quiet_hours_start", "quiet_hours_end")
    @classmethod
    def validate_hour(cls, v: int) -> int:
        if not 0 <= v <= 23:
            raise ValueError(f"Quiet-hours bound must be an hour in 0..23, got {v}")
        return v

    def is_postgres(self) -> bool:
        return self.database_url.startswith("postgresql")


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded settings for environment: %s", settings.env.value)

    return settings
