# routes/webhooks.py
from __future__ import annotations

import hashlib
import hmac
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from cashout.providers.mobile_money import afrimoney, orange_money
from cashout.providers.mobile_money.config import normalize_provider, webhook_secret
from cashout.runtime import CashOutRuntime, get_runtime
from services.metrics import increment_webhook_event
from services.redaction import redact_dict

router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])
logger = logging.getLogger("cashout.webhooks")

_CALLBACK_PARSERS = {
    "orange_money": orange_money.parse_callback,
    "afrimoney": afrimoney.parse_callback,
}


def _verify_signature(*, raw: bytes, signature_header: str | None, secret: str | None) -> tuple[bool, str | None]:
    if not secret or not secret.strip():
        return False, "WEBHOOK_SECRET_NOT_CONFIGURED"

    if not signature_header or not signature_header.strip():
        return False, "MISSING_SIGNATURE"

    sig = signature_header.strip()
    if sig.lower().startswith("sha256="):
        sig = sig.split("=", 1)[1].strip()

    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, sig):
        return False, "INVALID_SIGNATURE"

    return True, None


def _unwrap_payload(payload):
    # some deliveries wrap the event as {"data": {...}}
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict) and "status" not in payload:
        return payload["data"]
    return payload


@router.post("/{provider}")
async def provider_webhook(provider: str, req: Request, rt: CashOutRuntime = Depends(get_runtime)):
    provider = normalize_provider(provider)
    parser = _CALLBACK_PARSERS.get(provider)
    if parser is None:
        raise HTTPException(status_code=404, detail="UNSUPPORTED_PROVIDER")

    raw = await req.body()
    sig_ok, sig_err = _verify_signature(
        raw=raw,
        signature_header=req.headers.get("X-Signature"),
        secret=webhook_secret(provider),
    )
    if sig_err == "WEBHOOK_SECRET_NOT_CONFIGURED":
        logger.error("webhook secret missing provider=%s", provider)
        increment_webhook_event(provider, False, False)
        raise HTTPException(status_code=500, detail=sig_err)
    if not sig_ok:
        logger.warning("webhook rejected provider=%s reason=%s", provider, sig_err)
        increment_webhook_event(provider, False, False)
        raise HTTPException(status_code=401, detail=sig_err)

    try:
        payload = _unwrap_payload(json.loads(raw.decode("utf-8") or "{}"))
    except (UnicodeDecodeError, ValueError):
        increment_webhook_event(provider, True, False)
        raise HTTPException(status_code=400, detail="INVALID_JSON")
    if not isinstance(payload, dict):
        increment_webhook_event(provider, True, False)
        raise HTTPException(status_code=400, detail="INVALID_PAYLOAD")

    callback = parser(payload)
    logger.info(
        "webhook received provider=%s reference=%s status=%s payload=%s",
        provider,
        callback.reference,
        callback.status,
        redact_dict(payload),
    )

    result = await run_in_threadpool(rt.reconciliation.apply_provider_callback, provider, callback)
    increment_webhook_event(provider, True, result.get("result") == "updated")
    return result
