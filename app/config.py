"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables, with an optional .env file
as a fallback. The API process and every worker process build one Settings
instance at start-up; components receive it (or values from it) explicitly
instead of reading the environment themselves.

Pydantic Settings automatically:
  1. Reads from environment variables (highest priority)
  2. Falls back to .env file values
  3. Uses defaults defined here (lowest priority)

The model is frozen: nothing may change configuration after start-up. Tests
that need different values derive a copy with settings.model_copy(update=...).

Usage:
    from app.config import settings
    print(settings.PAYMENT_CURRENCY)
"""

from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for the payments core.

    Required fields (no defaults) MUST be set in .env or environment:
      - SECRET_KEY: Used to sign JWT tokens
      - SECRET_ENCRYPTION_KEY: Fernet key for encrypting provider client secrets at rest
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
    )

    # --- Application ---
    APP_NAME: str = "Payments API"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: Literal["development", "test", "production"] = "development"

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    # JSON lines are always used in production; this forces them elsewhere too
    LOG_JSON: bool = False

    # --- Database ---
    # SQLite for development; use postgresql+asyncpg://... in production so
    # row locks, SKIP LOCKED and advisory locks take effect
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/payments.db"

    # --- Authentication ---
    # REQUIRED: No default, forces the operator to set a real secret
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # --- Secret encryption ---
    # REQUIRED: Fernet key for encrypting provider client secrets at rest
    # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    SECRET_ENCRYPTION_KEY: str

    # --- CORS ---
    ALLOWED_ORIGINS: list[str] = ["http://localhost:3000"]

    # --- Payment provider ---
    PAYMENT_PROVIDER: str = "stripe"
    PAYMENT_CURRENCY: str = "USD"
    STRIPE_API_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_API_BASE: str = "https://api.stripe.com"
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    # Signature timestamps older than this (relative to receipt) are rejected
    WEBHOOK_TOLERANCE_SECONDS: int = 300
    MAX_WEBHOOK_BODY_BYTES: int = 256 * 1024

    # --- Processing fee (passed through to the payer) ---
    PROCESSING_FEE_ENABLED: bool = False
    PROCESSING_FEE_PERCENT: float = 2.9
    PROCESSING_FEE_FLAT_CENTS: int = 30
    PROCESSING_FEE_REFUNDABLE: bool = False

    # --- Synchronous intent creation ---
    INTENT_WAIT_TIMEOUT_SECONDS: float = 30.0
    INTENT_POLL_INTERVAL_SECONDS: float = 0.5

    # --- Job store ---
    # Attempt budget for jobs started by API requests. Side-effect jobs
    # enqueued by state transitions keep the job store default.
    JOB_MAX_ATTEMPTS: int = 5
    JOB_BACKOFF_BASE_SECONDS: float = 1.0
    JOB_BACKOFF_MAX_SECONDS: float = 3600.0
    # Fraction of the computed delay added as random jitter (0.1 = up to +10%)
    JOB_BACKOFF_JITTER: float = 0.1

    # --- Workers ---
    WORKER_QUEUES: list[str] = ["default"]
    WORKER_CONCURRENCY: int = 4
    WORKER_POLL_INTERVAL_SECONDS: float = 1.0
    HOUSEKEEPING_INTERVAL_SECONDS: float = 60.0
    # A running job whose attempt started longer ago than this is presumed
    # lost with its worker and is retried; keep it above the slowest handler
    JOB_RESCUE_AFTER_SECONDS: int = 900

    # --- Stale pending_intent transactions ---
    # "fail": move to failed after STALE_INTENT_AFTER_SECONDS
    # "hold": leave untouched for manual intervention, report in the log
    STALE_INTENT_POLICY: Literal["fail", "hold"] = "fail"
    STALE_INTENT_AFTER_SECONDS: int = 3600

    @field_validator("PAYMENT_CURRENCY")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @field_validator("PROCESSING_FEE_PERCENT")
    @classmethod
    def _fee_percent_range(cls, value: float) -> float:
        if not 0 <= value < 100:
            raise ValueError("PROCESSING_FEE_PERCENT must be in [0, 100)")
        return value

    @field_validator("JOB_MAX_ATTEMPTS", "WORKER_CONCURRENCY", "JOB_RESCUE_AFTER_SECONDS")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


def get_settings() -> Settings:
    """Return the process-wide Settings instance (usable as a FastAPI dependency)."""
    return settings


# Singleton: import this instance everywhere instead of creating new Settings()
settings = Settings()
