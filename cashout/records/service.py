# cashout/records/service.py
from __future__ import annotations

import logging
import random
import time
import uuid
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from cashout.errors import CashOutNotFound, DuplicateReference, StaleRecordError, ValidationError
from cashout.providers.factory import is_known_provider
from cashout.providers.mobile_money.config import normalize_provider
from cashout.records.model import PENDING, CashOutRecord
from cashout.records.repository import CashOutStore
from cashout.records.state_machine import mark_cancelled
from services.audit_log import RESOURCE_CASH_OUT, AuditLogger, safe_audit

logger = logging.getLogger("cashout")

CENT = Decimal("0.01")

# provider -> (rate, minimum fee)
FEE_SCHEDULE = {
    "orange_money": (Decimal("0.02"), Decimal("1")),
    "afrimoney": (Decimal("0.015"), Decimal("0.5")),
}
DEFAULT_FEE = (Decimal("0.01"), Decimal("0.5"))


def calculate_fee(amount: Decimal, provider: str) -> Decimal:
    rate, minimum = FEE_SCHEDULE.get(normalize_provider(provider), DEFAULT_FEE)
    return max(minimum, amount * rate).quantize(CENT, rounding=ROUND_HALF_UP)


def generate_reference() -> str:
    return f"CASH-{int(time.time() * 1000)}-{random.randint(1000, 9999)}"


def _to_decimal(value, field_name: str) -> Decimal:
    try:
        out = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid {field_name}: {value!r}", code="INVALID_AMOUNT") from exc
    if not out.is_finite():
        raise ValidationError(f"Invalid {field_name}: {value!r}", code="INVALID_AMOUNT")
    return out


def create_cash_out(
    store: CashOutStore,
    *,
    user_id: str,
    wallet_id: str,
    amount,
    currency: str,
    provider: str,
    provider_account_id: str,
    provider_account_name: str,
    reference: Optional[str] = None,
    fee=None,
) -> CashOutRecord:
    """
    Record a new cash out in `pending`.

    The reference is the idempotency key: a second call with an existing
    reference returns the stored record untouched.
    """
    if reference:
        existing = store.find_by_reference(reference)
        if existing is not None:
            return existing

    amount_d = _to_decimal(amount, "amount")
    if amount_d <= 0:
        raise ValidationError("Amount must be greater than zero", code="INVALID_AMOUNT")

    provider_n = normalize_provider(provider)
    if not is_known_provider(provider_n):
        raise ValidationError(f"Unsupported payment provider: {provider}", code="UNSUPPORTED_PROVIDER")

    if not (provider_account_id or "").strip():
        raise ValidationError("provider_account_id is required", code="INVALID_ACCOUNT")
    if not (currency or "").strip():
        raise ValidationError("currency is required")

    fee_d = calculate_fee(amount_d, provider_n) if fee is None else _to_decimal(fee, "fee")
    if fee_d < 0:
        raise ValidationError("Fee must not be negative", code="INVALID_AMOUNT")

    record = CashOutRecord(
        id=str(uuid.uuid4()),
        user_id=str(user_id),
        wallet_id=str(wallet_id),
        amount=amount_d,
        currency=currency.strip().upper(),
        fee=fee_d,
        provider=provider_n,
        provider_account_id=provider_account_id.strip(),
        provider_account_name=(provider_account_name or "").strip(),
        reference=reference or generate_reference(),
        status=PENDING,
    )
    try:
        created = store.create(record)
    except DuplicateReference:
        if not reference:
            raise
        existing = store.find_by_reference(reference)
        if existing is None:
            raise
        return existing

    logger.info("cash out created id=%s reference=%s provider=%s", created.id, created.reference, created.provider)
    return created


def get_cash_out(store: CashOutStore, cash_out_id: str) -> CashOutRecord:
    record = store.find_by_id(cash_out_id)
    if record is None:
        raise CashOutNotFound(cash_out_id)
    return record


def cancel_cash_out(
    store: CashOutStore,
    cash_out_id: str,
    *,
    reason: Optional[str] = None,
    audit: AuditLogger | None = None,
) -> CashOutRecord:
    """Cancel a pending cash out. Any other state raises InvalidTransition."""
    record = get_cash_out(store, cash_out_id)
    updated = mark_cancelled(record, reason=reason or "Cancelled by request")

    with store.transaction():
        try:
            saved = store.save(updated, record.version)
        except StaleRecordError:
            # someone moved it first; re-check legality against the fresh row
            fresh = get_cash_out(store, cash_out_id)
            saved = store.save(mark_cancelled(fresh, reason=reason or "Cancelled by request"), fresh.version)
        safe_audit(
            audit,
            action="payment.cash_out.cancelled",
            resource_type=RESOURCE_CASH_OUT,
            resource_id=saved.id,
            description="Cash out cancelled",
            metadata={"provider": saved.provider, "reason": saved.failure_reason},
            status="success",
            severity="medium",
        )

    logger.info("cash out cancelled id=%s", saved.id)
    return saved
