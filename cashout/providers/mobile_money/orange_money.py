# cashout/providers/mobile_money/orange_money.py
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Optional

import requests

from cashout.errors import ProviderError, ProviderErrorCode
from cashout.providers.base import ProviderCallback, ProviderResult
from cashout.providers.mobile_money.config import OrangeMoneyConfig, orange_money_config
from cashout.providers.mobile_money.http import error_code_for_http, error_message
from cashout.records.model import CashOutRecord
from services.metrics import increment_provider_call

TOKEN_SAFETY_BUFFER_S = 60
logger = logging.getLogger("cashout.providers.orange_money")

STATUS_MAP = {
    "SUCCESSFUL": "completed",
    "PENDING": "processing",
    "FAILED": "failed",
    "REJECTED": "failed",
    "CANCELLED": "cancelled",
}


def map_status(raw: Optional[str]) -> str:
    return STATUS_MAP.get((raw or "").strip().upper(), "pending")


def parse_callback(payload: dict[str, Any]) -> ProviderCallback:
    status = map_status(payload.get("status"))
    return ProviderCallback(
        reference=payload.get("externalId"),
        provider_transaction_id=payload.get("transactionId"),
        status=status,
        failure_reason=(payload.get("reason") or payload.get("status")) if status in ("failed", "cancelled") else None,
        payload=payload,
    )


def _safe_json(resp: requests.Response) -> Optional[dict[str, Any]]:
    try:
        payload = resp.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else {"data": payload}


def _response_payload(resp: requests.Response, *, stage: str) -> dict[str, Any]:
    payload = _safe_json(resp)
    return {
        "stage": stage,
        "http_status": resp.status_code,
        "body": payload if payload is not None else (resp.text or "")[:500],
    }


class OrangeMoneyProvider:
    name = "orange_money"

    def __init__(self, config: OrangeMoneyConfig | None = None) -> None:
        self.config = config or orange_money_config()
        self._token: Optional[str] = None
        self._token_exp: float = 0.0
        self._token_lock = threading.Lock()

    # -----------------------
    # transport
    # -----------------------
    def _call(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return requests.request(method, url, timeout=self.config.timeout_s, **kwargs)
        except requests.Timeout as exc:
            raise ProviderError(f"Orange Money timeout: {exc}", ProviderErrorCode.TIMEOUT, provider=self.name) from exc
        except requests.ConnectionError as exc:
            raise ProviderError(
                f"Orange Money network error: {exc}", ProviderErrorCode.NETWORK_ERROR, provider=self.name
            ) from exc

    def _raise_for(self, resp: requests.Response, *, stage: str) -> None:
        payload = _safe_json(resp)
        code = error_code_for_http(resp.status_code, payload)
        raise ProviderError(
            error_message(payload, f"Orange Money {stage} failed: HTTP {resp.status_code}"),
            code,
            provider=self.name,
            response=_response_payload(resp, stage=stage),
        )

    def _require_config(self) -> None:
        missing = self.config.missing()
        if missing:
            raise ProviderError(
                "Orange Money configuration missing: " + ", ".join(missing),
                ProviderErrorCode.CONFIG_MISSING,
                provider=self.name,
                response={"missing": missing},
            )

    def get_access_token(self) -> str:
        with self._token_lock:
            now = time.time()
            if self._token and now < self._token_exp:
                return self._token

            resp = self._call(
                "POST",
                self.config.token_url,
                auth=(self.config.client_id, self.config.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            if resp.status_code != 200:
                self._raise_for(resp, stage="token")

            payload = _safe_json(resp) or {}
            token = payload.get("access_token")
            if not token:
                raise ProviderError(
                    "Orange Money token response missing access_token",
                    ProviderErrorCode.AUTH_FAILED,
                    provider=self.name,
                )
            expires_in = int(payload.get("expires_in") or 3600)
            self._token = token
            self._token_exp = now + max(0, expires_in - TOKEN_SAFETY_BUFFER_S)
            return token

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.get_access_token()}",
            "Content-Type": "application/json",
        }
        headers.update(extra)
        return headers

    # -----------------------
    # adapter surface
    # -----------------------
    def initiate(self, record: CashOutRecord) -> ProviderResult:
        self._require_config()
        body = {
            "amount": {"value": str(record.amount), "currency": record.currency},
            "payee": {"partyIdType": "MSISDN", "partyId": record.provider_account_id},
            "payerMessage": f"Cash out to {record.provider_account_name}",
            "payeeNote": "Cash out",
            "externalId": record.reference,
        }
        resp = self._call(
            "POST",
            f"{self.config.base_url}/v1/cash-out",
            json=body,
            headers=self._headers(**{"X-Reference-Id": record.reference}),
        )
        if resp.status_code not in (200, 201, 202):
            increment_provider_call(self.name, "initiate", "error")
            self._raise_for(resp, stage="initiate")

        increment_provider_call(self.name, "initiate", "accepted")
        payload = _safe_json(resp) or {}
        # the reference doubles as the transaction id until Orange assigns one
        txid = str(payload.get("transactionId") or payload.get("transaction_id") or record.reference)
        status = map_status(payload.get("status") or "PENDING")
        logger.info("orange_money cash-out accepted reference=%s txid=%s status=%s", record.reference, txid, status)
        return ProviderResult(
            status=status,
            provider_transaction_id=txid,
            provider_response=_response_payload(resp, stage="initiate"),
            failure_reason=(payload.get("reason") or "Unknown error") if status == "failed" else None,
        )

    def check_status(self, provider_transaction_id: str) -> ProviderResult:
        self._require_config()
        resp = self._call(
            "GET",
            f"{self.config.base_url}/v1/transactions/{provider_transaction_id}",
            headers=self._headers(),
        )
        if resp.status_code != 200:
            increment_provider_call(self.name, "status", "error")
            self._raise_for(resp, stage="status")

        increment_provider_call(self.name, "status", "ok")
        payload = _safe_json(resp) or {}
        status = map_status(payload.get("status"))
        return ProviderResult(
            status=status,
            provider_transaction_id=str(payload.get("transactionId") or provider_transaction_id),
            provider_response=_response_payload(resp, stage="status"),
            failure_reason=(payload.get("reason") or "Unknown error") if status == "failed" else None,
        )

    def parse_callback(self, payload: dict[str, Any]) -> ProviderCallback:
        return parse_callback(payload)
