"""Centralized, typed configuration using pydantic-settings.

Provides a single ``Settings`` class backed by ``.env`` file and environment
variables, a cached ``get_settings()`` accessor, and a ``validate_credentials()``
startup gate that enforces credential presence in production mode.

IMPORTANT: This module has ZERO imports from the ``outreach`` package to
prevent circular imports.  Only stdlib, pydantic, pydantic_settings, and
structlog are used.
"""

from __future__ import annotations

import sys
from functools import lru_cache
from pathlib import Path

import structlog
from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger()


class Settings(BaseSettings):
    """Application settings loaded from environment variables and ``.env`` file.

    ``SecretStr`` fields prevent accidental leaks in logs or error output.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- General ---------------------------------------------------------------
    production: bool = False
    webhook_port: int = 8000
    database_path: Path = Path("data/outreach.db")

    # -- Scheduler secrets -----------------------------------------------------
    cron_secret: SecretStr = SecretStr("")
    inbound_webhook_secret: SecretStr = SecretStr("")

    # -- Guardrails ------------------------------------------------------------
    daily_autopilot_limit: int = Field(default=10, ge=0)
    quiet_hour_start: int = Field(default=21, ge=0, le=23)
    quiet_hour_end: int = Field(default=8, ge=0, le=23)
    default_timezone: str = "America/New_York"

    # -- Command bus -----------------------------------------------------------
    command_batch_size: int = Field(default=20, ge=1)
    command_max_attempts: int = Field(default=3, ge=1)
    command_backoff_minutes: tuple[int, ...] = (2, 10)
    command_claim_timeout_seconds: int = Field(default=300, ge=1)

    # -- Tick ------------------------------------------------------------------
    autopilot_batch_size: int = Field(default=20, ge=0)
    follow_up_batch_size: int = Field(default=10, ge=0)
    tick_time_budget_seconds: float = Field(default=25.0, gt=0)

    # -- Cadence ---------------------------------------------------------------
    max_touches: int = Field(default=4, ge=1)
    follow_up_day_offsets: tuple[int, ...] = (3, 7, 7)
    max_thread_days: int = Field(default=30, ge=1)
    fallback_wait_days: float = Field(default=1.0, gt=0)

    # -- Mail (Resend) ---------------------------------------------------------
    resend_api_key: SecretStr = SecretStr("")
    mail_from: str = "Member Success <team@example.com>"
    reply_domain: str = ""
    mailer_timeout_seconds: float = 15.0

    # -- LLM / Anthropic -------------------------------------------------------
    anthropic_api_key: SecretStr = SecretStr("")
    reasoner_model: str = "claude-haiku-4-5"
    reasoner_timeout_seconds: float = 20.0

    # -- Slack (secrets) -------------------------------------------------------
    slack_bot_token: SecretStr = SecretStr("")
    slack_escalation_channel: str = ""

    # -- Error tracking --------------------------------------------------------
    sentry_dsn: str = ""

    @field_validator("command_backoff_minutes", "follow_up_day_offsets")
    @classmethod
    def _non_empty_offsets(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        if not value or any(v <= 0 for v in value):
            msg = "must contain at least one positive value"
            raise ValueError(msg)
        return value


@lru_cache
def get_settings() -> Settings:
    """Return a cached ``Settings`` instance.

    The ``@lru_cache`` decorator ensures environment variables are parsed
    exactly once.  Call ``get_settings.cache_clear()`` in tests to reset.

    Returns:
        The application ``Settings``.
    """
    try:
        return Settings()
    except ValidationError as exc:
        # Log only the structured errors list -- never the full exception
        # which may contain raw SecretStr values.
        logger.error("settings_validation_failed", errors=exc.errors())
        sys.exit(1)


def validate_credentials(settings: Settings) -> None:
    """Enforce credential presence at startup.

    In **production** mode (``settings.production is True``), the application
    exits with a clear error block if any required credential is missing.

    In **development** mode, each missing credential is logged as a warning
    but the application continues to start.

    Args:
        settings: The loaded application settings.
    """
    errors: list[str] = []

    if not settings.cron_secret.get_secret_value():
        errors.append("CRON_SECRET is empty or not set")

    if not settings.anthropic_api_key.get_secret_value():
        errors.append("ANTHROPIC_API_KEY is empty or not set")

    if not settings.resend_api_key.get_secret_value():
        errors.append("RESEND_API_KEY is empty or not set")

    if not errors:
        logger.info("credential_validation_passed")
        return

    if settings.production:
        for err in errors:
            logger.error("credential_missing", detail=err)
        print("\n=== STARTUP FAILED ===", file=sys.stderr)
        print("Missing required credentials for production mode:", file=sys.stderr)
        for err in errors:
            print(f"  - {err}", file=sys.stderr)
        print("======================\n", file=sys.stderr)
        sys.exit(1)
    else:
        for err in errors:
            logger.warning("credential_missing_dev", detail=err)
