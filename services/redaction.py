from __future__ import annotations

import re
from typing import Any


_PHONE_RE = re.compile(r"\+\d{6,15}")

_SENSITIVE_KEY_MARKERS = (
    "token",
    "authorization",
    "secret",
    "signature",
    "password",
    "api-key",
    "api_key",
    "apikey",
)

# destination fields kept partially visible for support
_ACCOUNT_KEY_MARKERS = (
    "msisdn",
    "phone",
    "account_id",
    "accountid",
    "partyid",
)


def mask_account(value: str) -> str:
    value = str(value or "")
    if len(value) <= 6:
        return "****"
    return f"{value[:4]}****{value[-2:]}"


def redact_text(value: str) -> str:
    masked = _PHONE_RE.sub(lambda m: mask_account(m.group(0)), value)

    for marker in ("access_token", "refresh_token", "bearer"):
        if marker in masked.lower():
            return "[REDACTED]"

    return masked


def _is_sensitive_key(key: str) -> bool:
    key_l = (key or "").lower()
    return any(marker in key_l for marker in _SENSITIVE_KEY_MARKERS)


def _is_account_key(key: str) -> bool:
    key_l = (key or "").lower().replace("-", "_")
    return any(marker in key_l for marker in _ACCOUNT_KEY_MARKERS)


def redact_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return redact_dict(value)
    if isinstance(value, list):
        return [redact_value(v) for v in value]
    return value


def redact_dict(payload: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in payload.items():
        if _is_sensitive_key(k):
            out[k] = "[REDACTED]"
        elif _is_account_key(k) and isinstance(v, (str, int)):
            out[k] = mask_account(str(v))
        else:
            out[k] = redact_value(v)
    return out
