
# cashout/providers/mobile_money/http.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from cashout.errors import BUSINESS_CODES, ProviderError, ProviderErrorCode
from services.redaction import redact_dict

logger = logging.getLogger("cashout.providers.http")


@dataclass
class HttpResponse:
    status_code: int
    json: Optional[dict[str, Any]]
    text: str


class HttpClient:
    """
    Thin httpx wrapper. Transport failures come back as ProviderError with
    TIMEOUT / NETWORK_ERROR so the retry engine can classify them.
    """

    def __init__(self, timeout_s: float = 20.0, follow_redirects: bool = True, *, provider: str = ""):
        self._client = httpx.Client(timeout=timeout_s, follow_redirects=follow_redirects)
        self.provider = provider

    def post(
        self,
        url: str,
        *,
        headers: dict[str, str],
        json_body: dict[str, Any] | None = None,
    ) -> HttpResponse:
        try:
            r = self._client.post(url, headers=headers, json=json_body)
        except httpx.TimeoutException as exc:
            raise ProviderError(f"Request timed out: {exc}", ProviderErrorCode.TIMEOUT, provider=self.provider) from exc
        except httpx.TransportError as exc:
            raise ProviderError(f"Network error: {exc}", ProviderErrorCode.NETWORK_ERROR, provider=self.provider) from exc
        self._debug_dump("POST", url, headers, r)
        return self._wrap(r)

    def get(self, url: str, *, headers: dict[str, str]) -> HttpResponse:
        try:
            r = self._client.get(url, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderError(f"Request timed out: {exc}", ProviderErrorCode.TIMEOUT, provider=self.provider) from exc
        except httpx.TransportError as exc:
            raise ProviderError(f"Network error: {exc}", ProviderErrorCode.NETWORK_ERROR, provider=self.provider) from exc
        self._debug_dump("GET", url, headers, r)
        return self._wrap(r)

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _wrap(r: httpx.Response) -> HttpResponse:
        try:
            payload = r.json()
        except ValueError:
            payload = None
        if payload is not None and not isinstance(payload, dict):
            payload = {"data": payload}
        return HttpResponse(status_code=r.status_code, json=payload, text=r.text)

    @staticmethod
    def _debug_dump(method: str, url: str, headers: dict[str, str], r: httpx.Response) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug(
            "%s %s headers=%s -> status=%s text=%s",
            method,
            url,
            redact_dict(dict(headers or {})),
            r.status_code,
            r.text[:300],
        )


_BODY_CODE_KEYS = ("code", "errorCode", "error_code", "error")


def _body_code(payload: Optional[dict[str, Any]]) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for key in _BODY_CODE_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip().upper().replace(" ", "_")
        if isinstance(value, dict):
            nested = _body_code(value)
            if nested:
                return nested
    return None


def error_code_for_http(status_code: int, payload: Optional[dict[str, Any]] = None) -> str:
    if status_code == 408:
        return ProviderErrorCode.TIMEOUT
    if status_code == 429:
        return ProviderErrorCode.RATE_LIMIT_EXCEEDED
    if status_code == 503:
        return ProviderErrorCode.SERVICE_UNAVAILABLE
    if status_code in (502, 504):
        return ProviderErrorCode.PROVIDER_UNAVAILABLE
    if status_code >= 500:
        return ProviderErrorCode.TEMPORARY_FAILURE
    if status_code in (401, 403):
        return ProviderErrorCode.AUTH_FAILED

    code = _body_code(payload)
    if code in BUSINESS_CODES:
        return code
    return ProviderErrorCode.PROVIDER_REQUEST_FAILED


def error_message(payload: Optional[dict[str, Any]], fallback: str) -> str:
    if isinstance(payload, dict):
        for key in ("message", "error_description", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        err = payload.get("error")
        if isinstance(err, dict):
            return error_message(err, fallback)
    return fallback
