

# settings.py
from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Literal



class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    # -----------------------
    # DB (empty => in-memory store, sandbox only)
    # -----------------------
    DATABASE_URL: str = Field(default="")

    # -----------------------
    # Admin ops surface
    # -----------------------
    ADMIN_API_KEY: str = ""

    # -----------------------
    # Mobile Money (Mode Switch)
    # -----------------------
    MM_MODE: Literal["sandbox", "real"] = "sandbox"
    MM_HTTP_TIMEOUT_S: float = 20.0
    CASHOUT_ENABLED_PROVIDERS: str = "orange_money,afrimoney"

    # -----------------------
    # Retry engine
    # -----------------------
    CASHOUT_MAX_RETRIES: int = Field(default=3, ge=0)
    CASHOUT_RETRY_INITIAL_DELAY_MS: int = Field(default=30_000, gt=0)
    CASHOUT_RETRY_MAX_DELAY_MS: int = Field(default=3_600_000, gt=0)
    # how long an in-flight retry attempt keeps the record reserved
    CASHOUT_RETRY_CLAIM_LEASE_MS: int = Field(default=300_000, gt=0)
    CASHOUT_RETRYABLE_ERROR_CODES: str = (
        "NETWORK_ERROR,TIMEOUT,PROVIDER_UNAVAILABLE,TEMPORARY_FAILURE,"
        "RATE_LIMIT_EXCEEDED,SERVICE_UNAVAILABLE"
    )

    # -----------------------
    # Reconciliation
    # -----------------------
    RECONCILE_BATCH_SIZE: int = Field(default=100, gt=0)
    RECONCILE_MAX_AGE_DAYS: int = Field(default=7, gt=0)

    # -----------------------
    # Schedulers
    # -----------------------
    SCHEDULERS_ENABLED: bool = False
    RETRY_SWEEP_INTERVAL_MS: int = Field(default=60_000, gt=0)
    RECONCILE_INTERVAL_MS: int = Field(default=3_600_000, gt=0)

    # -----------------------
    # ORANGE MONEY
    # -----------------------
    ORANGE_MONEY_API_URL: str = ""
    ORANGE_MONEY_TOKEN_URL: str = ""
    ORANGE_MONEY_CLIENT_ID: str = ""
    ORANGE_MONEY_CLIENT_SECRET: str = ""
    ORANGE_MONEY_WEBHOOK_SECRET: str = ""

    # -----------------------
    # AFRIMONEY
    # -----------------------
    AFRIMONEY_API_URL: str = ""
    AFRIMONEY_API_KEY: str = ""
    AFRIMONEY_API_SECRET: str = ""
    AFRIMONEY_WEBHOOK_SECRET: str = ""


def _csv(raw: str | None) -> list[str]:
    return [p.strip() for p in (raw or "").split(",") if p.strip()]


def enabled_providers(s: "Settings | None" = None) -> list[str]:
    s = s or settings
    return [p.lower().replace("-", "_") for p in _csv(s.CASHOUT_ENABLED_PROVIDERS)]


def retryable_error_codes(s: "Settings | None" = None) -> frozenset[str]:
    s = s or settings
    return frozenset(c.upper() for c in _csv(s.CASHOUT_RETRYABLE_ERROR_CODES))


_PROVIDER_SECRETS = {
    "orange_money": (
        "ORANGE_MONEY_API_URL",
        "ORANGE_MONEY_TOKEN_URL",
        "ORANGE_MONEY_CLIENT_ID",
        "ORANGE_MONEY_CLIENT_SECRET",
        "ORANGE_MONEY_WEBHOOK_SECRET",
    ),
    "afrimoney": (
        "AFRIMONEY_API_URL",
        "AFRIMONEY_API_KEY",
        "AFRIMONEY_API_SECRET",
        "AFRIMONEY_WEBHOOK_SECRET",
    ),
}


def validate_env_settings(s: "Settings | None" = None) -> None:
    """
    Fail fast outside dev: staging/prod must not boot on the in-memory store
    or with half-configured providers.
    """
    s = s or settings
    env = (s.ENV or "dev").strip().lower()
    if env not in ("staging", "prod", "production"):
        return

    missing: list[str] = []
    if not (s.DATABASE_URL or "").strip():
        missing.append("DATABASE_URL")
    if not (s.ADMIN_API_KEY or "").strip():
        missing.append("ADMIN_API_KEY")

    if s.MM_MODE == "real":
        for provider in enabled_providers(s):
            for key in _PROVIDER_SECRETS.get(provider, ()):
                if not str(getattr(s, key, "") or "").strip():
                    missing.append(key)

    if s.CASHOUT_RETRY_INITIAL_DELAY_MS > s.CASHOUT_RETRY_MAX_DELAY_MS:
        missing.append("CASHOUT_RETRY_INITIAL_DELAY_MS<=CASHOUT_RETRY_MAX_DELAY_MS")

    if missing:
        raise RuntimeError(f"Invalid {env} settings: " + ", ".join(missing))



settings = Settings()
