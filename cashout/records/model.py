
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Any
from datetime import datetime
from decimal import Decimal


PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED)
IN_FLIGHT_STATUSES = (PENDING, PROCESSING)
TERMINAL_STATUSES = (COMPLETED, FAILED, CANCELLED)


@dataclass(frozen=True)
class CashOutRecord:
    id: str
    user_id: str
    wallet_id: str
    amount: Decimal
    currency: str
    fee: Decimal
    provider: str
    provider_account_id: str
    provider_account_name: str
    reference: str
    status: str = PENDING
    provider_transaction_id: Optional[str] = None
    provider_response: dict[str, Any] = field(default_factory=dict)
    failure_reason: Optional[str] = None
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total_amount(self) -> Decimal:
        return self.amount + self.fee


@dataclass(frozen=True)
class CashOutFilter:
    statuses: Optional[tuple[str, ...]] = None
    provider: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    next_retry_before: Optional[datetime] = None
    min_retry_count: Optional[int] = None
    max_retry_count: Optional[int] = None

    def matches(self, record: CashOutRecord) -> bool:
        if self.statuses is not None and record.status not in self.statuses:
            return False
        if self.provider and record.provider != self.provider:
            return False
        if self.created_after and (record.created_at is None or record.created_at < self.created_after):
            return False
        if self.created_before and (record.created_at is None or record.created_at > self.created_before):
            return False
        if self.next_retry_before is not None:
            if record.next_retry_at is None or record.next_retry_at > self.next_retry_before:
                return False
        if self.min_retry_count is not None and record.retry_count < self.min_retry_count:
            return False
        if self.max_retry_count is not None and record.retry_count > self.max_retry_count:
            return False
        return True
