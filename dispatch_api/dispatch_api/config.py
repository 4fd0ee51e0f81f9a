"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from credit_engine.compliance.policy import FailurePolicy
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``DISPATCH_`` (e.g. ``DISPATCH_PORT=9000``) or through a ``.env`` file in
    the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="DISPATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # asyncpg URL in production; aiosqlite file for local runs.
    database_url: str = "sqlite+aiosqlite:///.dispatch/state.db"

    # Bearer token the external cron trigger must present.  Empty disables the check.
    cron_secret: SecretStr = SecretStr("")

    # Messaging gateway.  An empty URL selects the logging provider.
    provider_url: str = ""
    provider_token: SecretStr = SecretStr("")
    provider_timeout: float = Field(default=10.0, gt=0)
    provider_sender: str = ""

    # In-process job runner (alternative to the external cron trigger).
    scheduler_enabled: bool = False
    scheduler_max_concurrency: int = Field(default=4, ge=1, le=64)
    scheduler_poll_seconds: float = Field(default=60.0, gt=0)
    # How long a send claim blocks overlapping runs of the same job.
    scheduler_claim_lease_seconds: float = Field(default=900.0, gt=0)

    # Link inserted into promotional templates.
    booking_url: str = ""

    # Structured JSON logging for log aggregation.
    structured_logging: bool = False

    compliance_failure_policy: FailurePolicy = FailurePolicy.FAIL_OPEN

    @field_validator("provider_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    def is_local(self) -> bool:
        """True when the state store is a local SQLite file."""
        return self.database_url.startswith("sqlite")


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
