# cashout/records/memory.py
from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Optional

from cashout.errors import CashOutNotFound, DuplicateReference, StaleRecordError
from cashout.records.model import CashOutFilter, CashOutRecord


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryCashOutStore:
    """
    Dev/test store with the same contract as PgCashOutStore.

    A single re-entrant lock serialises writers; transaction() snapshots the
    rows and restores them if the block raises.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None):
        self._rows: dict[str, CashOutRecord] = {}
        self._by_reference: dict[str, str] = {}
        self._lock = threading.RLock()
        self._clock = clock or _utcnow

    @contextmanager
    def transaction(self):
        with self._lock:
            rows = dict(self._rows)
            refs = dict(self._by_reference)
            try:
                yield self
            except BaseException:
                self._rows = rows
                self._by_reference = refs
                raise

    def create(self, record: CashOutRecord) -> CashOutRecord:
        with self._lock:
            if record.reference in self._by_reference:
                raise DuplicateReference(record.reference)
            now = self._clock()
            stored = replace(
                record,
                provider_response=copy.deepcopy(record.provider_response or {}),
                created_at=record.created_at or now,
                updated_at=now,
                version=1,
            )
            self._rows[stored.id] = stored
            self._by_reference[stored.reference] = stored.id
            return stored

    def find_by_id(self, cash_out_id: str) -> Optional[CashOutRecord]:
        with self._lock:
            return self._rows.get(str(cash_out_id))

    def find_by_reference(self, reference: str) -> Optional[CashOutRecord]:
        with self._lock:
            cash_out_id = self._by_reference.get(reference)
            return self._rows.get(cash_out_id) if cash_out_id else None

    def find(self, filter: CashOutFilter, limit: Optional[int] = None) -> list[CashOutRecord]:
        with self._lock:
            matched = [r for r in self._rows.values() if filter.matches(r)]
        matched.sort(key=lambda r: r.created_at)
        if limit is not None:
            matched = matched[: int(limit)]
        return matched

    def save(self, record: CashOutRecord, expected_version: int) -> CashOutRecord:
        with self._lock:
            current = self._rows.get(record.id)
            if current is None:
                raise CashOutNotFound(record.id)
            if current.version != expected_version:
                raise StaleRecordError(record.id, expected_version, current.version)

            # identity fields are owned by the row, not the caller
            stored = replace(
                record,
                user_id=current.user_id,
                wallet_id=current.wallet_id,
                amount=current.amount,
                currency=current.currency,
                fee=current.fee,
                provider=current.provider,
                provider_account_id=current.provider_account_id,
                provider_account_name=current.provider_account_name,
                reference=current.reference,
                created_at=current.created_at,
                provider_response=copy.deepcopy(record.provider_response or {}),
                updated_at=self._clock(),
                version=current.version + 1,
            )
            self._rows[stored.id] = stored
            return stored

    def all(self) -> list[CashOutRecord]:
        with self._lock:
            return sorted(self._rows.values(), key=lambda r: r.created_at)
