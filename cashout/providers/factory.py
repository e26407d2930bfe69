# cashout/providers/factory.py
from __future__ import annotations

import threading
from typing import Any, Dict, Optional

from cashout.errors import ProviderError, ProviderErrorCode
from cashout.providers.mobile_money.config import mm_mode, normalize_provider

KNOWN_PROVIDERS = ("orange_money", "afrimoney")

_PROVIDER_CACHE: Dict[str, Any] = {}
_lock = threading.Lock()


def get_provider(name: str):
    """
    Resolve an adapter by stored provider name. Returns None for unknown names.
    In sandbox mode every known provider resolves to a MockProvider.
    """
    key = normalize_provider(name)
    if not key:
        return None

    with _lock:
        if key in _PROVIDER_CACHE:
            return _PROVIDER_CACHE[key]

        provider = None
        if mm_mode() != "real":
            if key in KNOWN_PROVIDERS or key == "mock":
                from cashout.providers.mock import MockProvider
                provider = MockProvider(name=key)

        elif key == "orange_money":
            from cashout.providers.mobile_money.orange_money import OrangeMoneyProvider
            provider = OrangeMoneyProvider()

        elif key == "afrimoney":
            from cashout.providers.mobile_money.afrimoney import AfriMoneyProvider
            provider = AfriMoneyProvider()

        if provider is None:
            return None

        _PROVIDER_CACHE[key] = provider
        return provider


def require_provider(name: str, resolver=None):
    provider = (resolver or get_provider)(name)
    if provider is None:
        raise ProviderError(
            f"Unsupported payment provider: {name}",
            ProviderErrorCode.UNSUPPORTED_PROVIDER,
            provider=name,
        )
    return provider


def reset_provider_cache() -> None:
    """Drop cached adapters, closing any that hold an HTTP client."""
    with _lock:
        cached = list(_PROVIDER_CACHE.values())
        _PROVIDER_CACHE.clear()
    for provider in cached:
        close = getattr(provider, "close", None)
        if close is not None:
            close()


def is_known_provider(name: Optional[str]) -> bool:
    key = normalize_provider(name)
    return key in KNOWN_PROVIDERS or (key == "mock" and mm_mode() != "real")
