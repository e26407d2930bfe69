# cashout/providers/mobile_money/config.py
from __future__ import annotations

from dataclasses import dataclass

from settings import settings


def mm_mode() -> str:
    return (settings.MM_MODE or "sandbox").strip().lower()


def normalize_provider(value: str | None) -> str:
    return (value or "").strip().lower().replace("-", "_").replace(" ", "_")


@dataclass(frozen=True)
class OrangeMoneyConfig:
    base_url: str
    token_url: str
    client_id: str
    client_secret: str
    webhook_secret: str
    timeout_s: float

    def missing(self) -> list[str]:
        out = []
        if not self.base_url:
            out.append("ORANGE_MONEY_API_URL")
        if not self.client_id:
            out.append("ORANGE_MONEY_CLIENT_ID")
        if not self.client_secret:
            out.append("ORANGE_MONEY_CLIENT_SECRET")
        return out


@dataclass(frozen=True)
class AfriMoneyConfig:
    base_url: str
    api_key: str
    api_secret: str
    webhook_secret: str
    timeout_s: float

    def missing(self) -> list[str]:
        out = []
        if not self.base_url:
            out.append("AFRIMONEY_API_URL")
        if not self.api_key:
            out.append("AFRIMONEY_API_KEY")
        if not self.api_secret:
            out.append("AFRIMONEY_API_SECRET")
        return out


def orange_money_config() -> OrangeMoneyConfig:
    base = (settings.ORANGE_MONEY_API_URL or "").strip().rstrip("/")
    return OrangeMoneyConfig(
        base_url=base,
        # token endpoint defaults to the API host
        token_url=(settings.ORANGE_MONEY_TOKEN_URL or "").strip() or (f"{base}/oauth/token" if base else ""),
        client_id=(settings.ORANGE_MONEY_CLIENT_ID or "").strip(),
        client_secret=(settings.ORANGE_MONEY_CLIENT_SECRET or "").strip(),
        webhook_secret=(settings.ORANGE_MONEY_WEBHOOK_SECRET or "").strip(),
        timeout_s=float(settings.MM_HTTP_TIMEOUT_S),
    )


def afrimoney_config() -> AfriMoneyConfig:
    return AfriMoneyConfig(
        base_url=(settings.AFRIMONEY_API_URL or "").strip().rstrip("/"),
        api_key=(settings.AFRIMONEY_API_KEY or "").strip(),
        api_secret=(settings.AFRIMONEY_API_SECRET or "").strip(),
        webhook_secret=(settings.AFRIMONEY_WEBHOOK_SECRET or "").strip(),
        timeout_s=float(settings.MM_HTTP_TIMEOUT_S),
    )


def webhook_secret(provider: str) -> str:
    p = normalize_provider(provider)
    if p == "orange_money":
        return orange_money_config().webhook_secret
    if p == "afrimoney":
        return afrimoney_config().webhook_secret
    return ""
