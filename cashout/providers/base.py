# cashout/providers/base.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from cashout.records.model import CashOutRecord


@dataclass(frozen=True)
class ProviderResult:
    # cash-out vocabulary: pending | processing | completed | failed | cancelled
    status: str
    provider_transaction_id: Optional[str] = None
    provider_response: dict[str, Any] = field(default_factory=dict)
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class ProviderCallback:
    reference: Optional[str]
    provider_transaction_id: Optional[str]
    status: str
    failure_reason: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)


class CashOutProvider(Protocol):
    name: str

    def initiate(self, record: CashOutRecord) -> ProviderResult: ...
    def check_status(self, provider_transaction_id: str) -> ProviderResult: ...
    def parse_callback(self, payload: dict[str, Any]) -> ProviderCallback: ...
