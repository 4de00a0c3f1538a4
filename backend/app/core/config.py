# backend/app/core/config.py
import logging
import os
from pathlib import Path
from typing import Dict, Literal

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import BRAND_NAME


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug(f"[CONFIG] Looking for .env at: {env_path}")
    load_dotenv(env_path)


_DEFAULT_SECRET_KEY = SecretStr("dev-only-secret-key-change-me")


class Settings(BaseSettings):
    app_name: str = Field(default=BRAND_NAME.lower())
    environment: str = Field(
        default="development", description="development | staging | production"
    )

    # Auth
    secret_key: SecretStr = Field(
        default=_DEFAULT_SECRET_KEY,
        description="Secret key for verifying JWT bearer tokens",
    )
    jwt_algorithm: str = "HS256"
    cron_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Bearer secret for the scheduler trigger endpoints",
    )

    # Storage / broker
    database_url: str = Field(default="sqlite:///./tipu.db")
    redis_url: str = Field(default="redis://localhost:6379/0")

    # Payments
    stripe_secret_key: SecretStr = Field(default=SecretStr(""))
    payment_currency: str = "gbp"
    gateway_timeout_seconds: int = Field(default=20, ge=1)

    # Scheduler
    scheduler_batch_size: int = Field(default=20, ge=1)
    payment_max_retries: int = Field(default=3, ge=0)
    payment_retry_base_minutes: int = Field(default=60, ge=1)
    payment_claim_timeout_minutes: int = Field(default=10, ge=1)
    authorization_hold_days: int = Field(default=7, ge=1)

    # Meetings
    meeting_provider: Literal["fake", "graph"] = "fake"
    graph_tenant_id: str = ""
    graph_client_id: str = ""
    graph_client_secret: SecretStr = Field(default=SecretStr(""))
    graph_organizer_user_id: str = ""
    meeting_timeout_seconds: float = Field(default=15.0, gt=0)
    meeting_max_retries: int = Field(default=3, ge=0)
    meeting_retry_base_delay_seconds: float = Field(default=1.0, ge=0)

    # Pricing defaults for tutor suggestions (minor units per hour)
    default_hourly_rates: Dict[str, int] = Field(
        default_factory=lambda: {"GCSE": 4500, "A-Level": 6000}
    )

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,  # allows SECRET_KEY to match secret_key
        extra="ignore",
    )

    @field_validator("payment_currency")
    @classmethod
    def _lowercase_currency(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in {"prod", "production"}

    def get_database_url(self) -> str:
        return self.database_url


settings = Settings()
