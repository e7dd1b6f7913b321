# backend/escrowbook/core/config.py
"""
Runtime configuration for the escrow booking core.

Every value can be supplied through an environment variable of the same
name (upper-cased) or through a ``backend/.env`` file outside CI.
"""

import logging
import os
from pathlib import Path
from typing import Annotated, Any, List, Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)


def is_running_tests() -> bool:
    """Detect if code is running under pytest."""
    return os.getenv("PYTEST_CURRENT_TEST") is not None


# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # backend/.env
    if env_path.exists():
        logger.info(f"[CONFIG] Loading environment from {env_path}")
        load_dotenv(env_path)


class Settings(BaseSettings):
    environment: str = Field(default="development", description="Deployment mode")

    # Storage
    database_url: str = Field(
        default="sqlite+pysqlite:///./escrowbook.db",
        description="SQLAlchemy database URL for the booking record store",
    )
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL for Celery, provider locks and month-rollup cache",
    )

    # Booking lifecycle timing
    scheduler_tick_seconds: int = Field(default=60, description="Scheduler Driver cadence")
    run_workers_in_process: bool = Field(
        default=False,
        description="Run the scheduler and ledger monitor inside the API process instead of Celery beat",
    )
    completion_grace_minutes: int = Field(
        default=15, description="Delay after scheduled end before auto-completion"
    )
    minimum_lead_minutes: int = Field(
        default=60, description="Minimum notice between now and a bookable slot"
    )
    default_buffer_minutes: int = Field(
        default=15, description="Idle time enforced before/after a committed booking"
    )
    reminder_window_start_minutes: int = Field(default=60)
    reminder_window_end_minutes: int = Field(default=120)
    completion_stale_minutes: int = Field(
        default=10, description="Age after which an unconfirmed complete call is reported"
    )
    booking_lock_ttl_seconds: int = Field(default=30)
    booking_lock_wait_seconds: float = Field(default=5.0)

    # Availability
    month_cache_ttl_seconds: int = Field(default=300)
    next_available_search_days: int = Field(default=90)

    # Escrow ledger gateway
    ledger_base_url: str = Field(default="http://localhost:8545/escrow")
    ledger_api_key: SecretStr = Field(default=SecretStr(""))
    ledger_timeout_seconds: float = Field(default=10.0)
    ledger_max_attempts: int = Field(default=3)
    ledger_retry_base_seconds: float = Field(default=0.5)
    ledger_platform_completion_enabled: bool = Field(
        default=False,
        description=(
            "Set only once the escrow contract grants completeService to the platform signer"
        ),
    )
    ledger_event_batch_size: int = Field(default=100)
    ledger_monitor_interval_seconds: int = Field(default=15)
    ledger_cursor_name: str = Field(default="escrow")

    # External calendar collaborator
    calendar_base_url: Optional[str] = Field(default=None)
    calendar_platforms: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["google"])
    calendar_timeout_seconds: float = Field(default=5.0)
    calendar_cache_ttl_seconds: int = Field(default=120)

    # Downstream status webhook
    status_webhook_url: Optional[str] = Field(default=None)
    status_webhook_timeout_seconds: float = Field(default=5.0)
    outbox_max_attempts: int = Field(default=5)

    model_config = SettingsConfigDict(
        env_file=None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator(
        "scheduler_tick_seconds",
        "minimum_lead_minutes",
        "month_cache_ttl_seconds",
        "ledger_max_attempts",
        "ledger_event_batch_size",
        "ledger_monitor_interval_seconds",
        "outbox_max_attempts",
        "booking_lock_ttl_seconds",
    )
    @classmethod
    def _must_be_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("completion_grace_minutes", "default_buffer_minutes")
    @classmethod
    def _must_not_be_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("calendar_platforms", mode="before")
    @classmethod
    def _split_platforms(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


settings = Settings()
