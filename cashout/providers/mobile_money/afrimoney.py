# cashout/providers/mobile_money/afrimoney.py
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Any, Optional

from cashout.errors import ProviderError, ProviderErrorCode
from cashout.providers.base import ProviderCallback, ProviderResult
from cashout.providers.mobile_money.config import AfriMoneyConfig, afrimoney_config
from cashout.providers.mobile_money.http import HttpClient, HttpResponse, error_code_for_http, error_message
from cashout.records.model import CashOutRecord
from services.metrics import increment_provider_call

logger = logging.getLogger("cashout.providers.afrimoney")

STATUS_MAP = {
    "completed": "completed",
    "success": "completed",
    "processing": "processing",
    "pending": "processing",
    "failed": "failed",
    "error": "failed",
    "cancelled": "cancelled",
}


def map_status(raw: Optional[str]) -> str:
    return STATUS_MAP.get((raw or "").strip().lower(), "pending")


def sign(api_key: str, api_secret: str, timestamp: str, subject: str) -> str:
    msg = f"{api_key}{timestamp}{subject}".encode("utf-8")
    return hmac.new(api_secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def parse_callback(payload: dict[str, Any]) -> ProviderCallback:
    status = map_status(payload.get("status"))
    return ProviderCallback(
        reference=payload.get("externalReference"),
        provider_transaction_id=payload.get("transactionId"),
        status=status,
        failure_reason=(payload.get("failureReason") or payload.get("status")) if status in ("failed", "cancelled") else None,
        payload=payload,
    )


class AfriMoneyProvider:
    name = "afrimoney"

    def __init__(self, config: AfriMoneyConfig | None = None, http: HttpClient | None = None) -> None:
        self.config = config or afrimoney_config()
        self.http = http or HttpClient(timeout_s=self.config.timeout_s, provider=self.name)

    def close(self) -> None:
        self.http.close()

    def _require_config(self) -> None:
        missing = self.config.missing()
        if missing:
            raise ProviderError(
                "AfriMoney configuration missing: " + ", ".join(missing),
                ProviderErrorCode.CONFIG_MISSING,
                provider=self.name,
                response={"missing": missing},
            )

    def _headers(self, subject: str) -> dict[str, str]:
        timestamp = str(int(time.time() * 1000))
        return {
            "X-API-Key": self.config.api_key,
            "X-Timestamp": timestamp,
            "X-Signature": sign(self.config.api_key, self.config.api_secret, timestamp, subject),
            "Content-Type": "application/json",
        }

    def _unwrap(self, resp: HttpResponse, *, stage: str) -> dict[str, Any]:
        payload = resp.json or {}
        if resp.status_code != 200:
            raise ProviderError(
                error_message(payload, f"AfriMoney {stage} failed: HTTP {resp.status_code}"),
                error_code_for_http(resp.status_code, payload),
                provider=self.name,
                response={"stage": stage, "http_status": resp.status_code, "body": payload or resp.text[:500]},
            )
        if payload.get("status") != "success":
            # 200 with an error envelope is a rejected request, not an outage
            raise ProviderError(
                error_message(payload, f"AfriMoney {stage} request failed"),
                error_code_for_http(400, payload),
                provider=self.name,
                response={"stage": stage, "http_status": resp.status_code, "body": payload},
            )
        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    def initiate(self, record: CashOutRecord) -> ProviderResult:
        self._require_config()
        body = {
            "amount": str(record.amount),
            "currency": record.currency,
            "recipient": {
                "phoneNumber": record.provider_account_id,
                "name": record.provider_account_name,
            },
            "externalReference": record.reference,
            "description": "Cash out",
        }
        try:
            resp = self.http.post(
                f"{self.config.base_url}/api/v1/disbursements",
                headers=self._headers(record.reference),
                json_body=body,
            )
            data = self._unwrap(resp, stage="initiate")
        except ProviderError:
            increment_provider_call(self.name, "initiate", "error")
            raise

        increment_provider_call(self.name, "initiate", "accepted")
        status = map_status(data.get("status"))
        txid = data.get("transactionId")
        logger.info("afrimoney disbursement accepted reference=%s txid=%s status=%s", record.reference, txid, status)
        return ProviderResult(
            status=status,
            provider_transaction_id=str(txid) if txid else None,
            provider_response=data,
            failure_reason=(data.get("failureReason") or "Unknown error") if status == "failed" else None,
        )

    def check_status(self, provider_transaction_id: str) -> ProviderResult:
        self._require_config()
        try:
            resp = self.http.get(
                f"{self.config.base_url}/api/v1/disbursements/{provider_transaction_id}",
                headers=self._headers(provider_transaction_id),
            )
            data = self._unwrap(resp, stage="status")
        except ProviderError:
            increment_provider_call(self.name, "status", "error")
            raise

        increment_provider_call(self.name, "status", "ok")
        status = map_status(data.get("status"))
        return ProviderResult(
            status=status,
            provider_transaction_id=str(data.get("transactionId") or provider_transaction_id),
            provider_response=data,
            failure_reason=(data.get("failureReason") or "Unknown error") if status == "failed" else None,
        )

    def parse_callback(self, payload: dict[str, Any]) -> ProviderCallback:
        return parse_callback(payload)
