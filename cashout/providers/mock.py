
# cashout/providers/mock.py
from __future__ import annotations

import threading
from typing import Any

from cashout.errors import ProviderError, ProviderErrorCode
from cashout.providers.base import ProviderCallback, ProviderResult
from cashout.records.model import CashOutRecord


class MockProvider:
    """
    Sandbox/test provider.

    Deterministic by destination account:
    - an account id containing "timeout" raises a TIMEOUT ProviderError on initiate,
    - an account id containing "fail" is accepted and later reported as failed,
    - anything else is accepted and later reported as completed.

    Accepted requests start out "processing"; check_status reports the
    final outcome. set_status() lets tests move a transaction by hand.
    """

    def __init__(self, name: str = "mock") -> None:
        self.name = name
        self._status: dict[str, str] = {}
        self._lock = threading.Lock()
        self.calls: list[tuple[str, str]] = []

    def set_status(self, provider_transaction_id: str, status: str) -> None:
        with self._lock:
            self._status[provider_transaction_id] = status

    def initiate(self, record: CashOutRecord) -> ProviderResult:
        self.calls.append(("initiate", record.reference))
        account = (record.provider_account_id or "").lower()
        if "timeout" in account:
            raise ProviderError("Mock provider timeout", ProviderErrorCode.TIMEOUT, provider=self.name)

        txid = f"mock-{record.reference}"
        with self._lock:
            self._status.setdefault(txid, "failed" if "fail" in account else "completed")
        return ProviderResult(
            status="processing",
            provider_transaction_id=txid,
            provider_response={"mock": True, "stage": "initiate"},
        )

    def check_status(self, provider_transaction_id: str) -> ProviderResult:
        self.calls.append(("status", provider_transaction_id))
        with self._lock:
            status = self._status.get(provider_transaction_id, "processing")
        return ProviderResult(
            status=status,
            provider_transaction_id=provider_transaction_id,
            provider_response={"mock": True, "stage": "status", "status": status},
            failure_reason="Mock provider rejected the transfer" if status == "failed" else None,
        )

    def parse_callback(self, payload: dict[str, Any]) -> ProviderCallback:
        status = str(payload.get("status") or "pending").lower()
        return ProviderCallback(
            reference=payload.get("reference"),
            provider_transaction_id=payload.get("transactionId"),
            status=status,
            failure_reason=payload.get("reason") if status in ("failed", "cancelled") else None,
            payload=payload,
        )
