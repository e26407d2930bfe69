# schemas.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from cashout.records.model import CashOutRecord
from services.redaction import mask_account


# -------- CASH OUTS --------
class CashOutOut(BaseModel):
    id: str
    user_id: str
    wallet_id: str
    amount: Decimal
    currency: str
    fee: Decimal
    provider: str
    provider_account_id: str
    provider_account_name: str
    provider_transaction_id: Optional[str] = None
    reference: str
    status: str
    failure_reason: Optional[str] = None
    retry_count: int
    last_retry_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int

    @classmethod
    def from_record(cls, record: CashOutRecord) -> "CashOutOut":
        return cls(
            id=record.id,
            user_id=record.user_id,
            wallet_id=record.wallet_id,
            amount=record.amount,
            currency=record.currency,
            fee=record.fee,
            provider=record.provider,
            provider_account_id=mask_account(record.provider_account_id),
            provider_account_name=record.provider_account_name,
            provider_transaction_id=record.provider_transaction_id,
            reference=record.reference,
            status=record.status,
            failure_reason=record.failure_reason,
            retry_count=record.retry_count,
            last_retry_at=record.last_retry_at,
            next_retry_at=record.next_retry_at,
            completed_at=record.completed_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
            version=record.version,
        )


class CashOutLookupResponse(BaseModel):
    cash_out: CashOutOut
    refresh: Optional[dict[str, Any]] = None


class CancelCashOutRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


# -------- RECONCILIATION --------
class ReconcileRequest(BaseModel):
    provider: Optional[str] = None
    max_age_days: Optional[int] = Field(default=None, gt=0, le=90)
    batch_size: Optional[int] = Field(default=None, gt=0, le=1000)


class ReconcileResponse(BaseModel):
    total: int
    processed: int
    updated: int
    unchanged: int
    failed: int
    details: list[dict[str, Any]]


class RetrySweepResponse(BaseModel):
    total: int
    processed: int
    succeeded: int
    failed: int
    skipped: int
