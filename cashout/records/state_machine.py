# cashout/records/state_machine.py
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Optional

from cashout.errors import CashOutError
from cashout.records.model import (
    CANCELLED,
    COMPLETED,
    FAILED,
    PENDING,
    PROCESSING,
    CashOutRecord,
)


class InvalidTransition(CashOutError):
    pass


ALLOWED = {
    PENDING: {PROCESSING, CANCELLED},
    PROCESSING: {COMPLETED, FAILED, PROCESSING},  # PROCESSING->PROCESSING allowed for retry scheduling
    COMPLETED: set(),
    FAILED: set(),
    CANCELLED: set(),
}


def assert_transition(old: str, new: str) -> None:
    if new not in ALLOWED.get(old, set()):
        raise InvalidTransition(f"Illegal cash out transition: {old} -> {new}")


def is_allowed(old: str, new: str) -> bool:
    return new in ALLOWED.get(old, set())


def mark_processing(
    record: CashOutRecord,
    *,
    provider_transaction_id: Optional[str] = None,
    provider_response: Optional[dict[str, Any]] = None,
) -> CashOutRecord:
    assert_transition(record.status, PROCESSING)
    return replace(
        record,
        status=PROCESSING,
        provider_transaction_id=record.provider_transaction_id or provider_transaction_id,
        provider_response=provider_response if provider_response is not None else record.provider_response,
    )


def schedule_next_attempt(record: CashOutRecord, *, now: datetime, delay_ms: int) -> CashOutRecord:
    """
    Retry bookkeeping: the only place retry_count moves, and only upwards.
    """
    if record.status == PENDING:
        record = mark_processing(record)
    assert_transition(record.status, PROCESSING)
    return replace(
        record,
        retry_count=record.retry_count + 1,
        last_retry_at=now,
        next_retry_at=now + timedelta(milliseconds=delay_ms),
    )


def mark_completed(
    record: CashOutRecord,
    *,
    now: datetime,
    provider_transaction_id: Optional[str] = None,
    provider_response: Optional[dict[str, Any]] = None,
) -> CashOutRecord:
    assert_transition(record.status, COMPLETED)
    return replace(
        record,
        status=COMPLETED,
        completed_at=now,
        next_retry_at=None,
        failure_reason=None,
        provider_transaction_id=record.provider_transaction_id or provider_transaction_id,
        provider_response=provider_response if provider_response is not None else record.provider_response,
    )


def mark_failed(
    record: CashOutRecord,
    *,
    reason: Optional[str],
    provider_transaction_id: Optional[str] = None,
    provider_response: Optional[dict[str, Any]] = None,
) -> CashOutRecord:
    assert_transition(record.status, FAILED)
    return replace(
        record,
        status=FAILED,
        failure_reason=reason or "Unknown error",
        next_retry_at=None,
        provider_transaction_id=record.provider_transaction_id or provider_transaction_id,
        provider_response=provider_response if provider_response is not None else record.provider_response,
    )


def mark_cancelled(record: CashOutRecord, *, reason: Optional[str] = None) -> CashOutRecord:
    assert_transition(record.status, CANCELLED)
    return replace(
        record,
        status=CANCELLED,
        failure_reason=reason,
        next_retry_at=None,
    )


def advance_to(
    record: CashOutRecord,
    status: str,
    *,
    now: datetime,
    provider_transaction_id: Optional[str] = None,
    provider_response: Optional[dict[str, Any]] = None,
    failure_reason: Optional[str] = None,
) -> CashOutRecord:
    """
    Move a record to a provider-reported status.

    A still-pending record is walked through processing first, so a provider
    that already settled a request we never saw acknowledged still lands on
    a legal path.
    """
    if status == record.status:
        return record

    if record.status == PENDING and status in (COMPLETED, FAILED):
        record = mark_processing(
            record,
            provider_transaction_id=provider_transaction_id,
            provider_response=provider_response,
        )

    if status == PROCESSING:
        return mark_processing(
            record,
            provider_transaction_id=provider_transaction_id,
            provider_response=provider_response,
        )
    if status == COMPLETED:
        return mark_completed(
            record,
            now=now,
            provider_transaction_id=provider_transaction_id,
            provider_response=provider_response,
        )
    if status == FAILED:
        return mark_failed(
            record,
            reason=failure_reason,
            provider_transaction_id=provider_transaction_id,
            provider_response=provider_response,
        )
    if status == CANCELLED:
        return mark_cancelled(record, reason=failure_reason)

    raise InvalidTransition(f"Illegal cash out transition: {record.status} -> {status}")
