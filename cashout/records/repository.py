# cashout/records/repository.py
from __future__ import annotations

import uuid
from contextlib import AbstractContextManager
from decimal import Decimal
from typing import Any, Optional, Protocol

import psycopg2
from psycopg2.extras import Json, RealDictCursor

import db
from cashout.errors import CashOutNotFound, DuplicateReference, StaleRecordError
from cashout.records.model import CashOutFilter, CashOutRecord


class CashOutStore(Protocol):
    def create(self, record: CashOutRecord) -> CashOutRecord: ...
    def find_by_id(self, cash_out_id: str) -> Optional[CashOutRecord]: ...
    def find_by_reference(self, reference: str) -> Optional[CashOutRecord]: ...
    def find(self, filter: CashOutFilter, limit: Optional[int] = None) -> list[CashOutRecord]: ...
    def save(self, record: CashOutRecord, expected_version: int) -> CashOutRecord: ...
    def transaction(self) -> AbstractContextManager: ...


_COLUMNS = (
    "id",
    "user_id",
    "wallet_id",
    "amount",
    "currency",
    "fee",
    "provider",
    "provider_account_id",
    "provider_account_name",
    "provider_transaction_id",
    "reference",
    "status",
    "provider_response",
    "failure_reason",
    "retry_count",
    "last_retry_at",
    "next_retry_at",
    "completed_at",
    "created_at",
    "updated_at",
    "version",
)

_SELECT = "SELECT " + ", ".join(
    "id::text AS id" if c == "id" else c for c in _COLUMNS
) + " FROM app.cash_out_requests"


def _row_to_record(row: dict[str, Any]) -> CashOutRecord:
    return CashOutRecord(
        id=row["id"],
        user_id=row["user_id"],
        wallet_id=row["wallet_id"],
        amount=Decimal(row["amount"]),
        currency=row["currency"],
        fee=Decimal(row["fee"]),
        provider=row["provider"],
        provider_account_id=row["provider_account_id"],
        provider_account_name=row["provider_account_name"],
        provider_transaction_id=row["provider_transaction_id"],
        reference=row["reference"],
        status=row["status"],
        provider_response=row["provider_response"] or {},
        failure_reason=row["failure_reason"],
        retry_count=int(row["retry_count"] or 0),
        last_retry_at=row["last_retry_at"],
        next_retry_at=row["next_retry_at"],
        completed_at=row["completed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        version=int(row["version"]),
    )


def _where(filter: CashOutFilter) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []

    if filter.statuses is not None:
        clauses.append("status = ANY(%s)")
        params.append(list(filter.statuses))
    if filter.provider:
        clauses.append("provider = %s")
        params.append(filter.provider)
    if filter.created_after is not None:
        clauses.append("created_at >= %s")
        params.append(filter.created_after)
    if filter.created_before is not None:
        clauses.append("created_at <= %s")
        params.append(filter.created_before)
    if filter.next_retry_before is not None:
        clauses.append("next_retry_at IS NOT NULL AND next_retry_at <= %s")
        params.append(filter.next_retry_before)
    if filter.min_retry_count is not None:
        clauses.append("retry_count >= %s")
        params.append(filter.min_retry_count)
    if filter.max_retry_count is not None:
        clauses.append("retry_count <= %s")
        params.append(filter.max_retry_count)

    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError):
        return False
    return True


class PgCashOutStore:
    """
    app.cash_out_requests backed store.

    Every save is conditional on the row version, which is what keeps the
    retry path and the reconciliation path from overwriting each other.
    """

    def transaction(self):
        return db.transaction()

    def create(self, record: CashOutRecord) -> CashOutRecord:
        with db.get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                try:
                    with db.savepoint(conn, "cash_out_create"):
                        cur.execute(
                            """
                            INSERT INTO app.cash_out_requests (
                              id, user_id, wallet_id, amount, currency, fee,
                              provider, provider_account_id, provider_account_name,
                              provider_transaction_id, reference, status,
                              provider_response, failure_reason, retry_count,
                              last_retry_at, next_retry_at, completed_at,
                              created_at, updated_at, version
                            )
                            VALUES (
                              %s::uuid, %s, %s, %s, %s, %s,
                              %s, %s, %s,
                              %s, %s, %s,
                              %s::jsonb, %s, %s,
                              %s, %s, %s,
                              COALESCE(%s, now()), now(), 1
                            )
                            RETURNING id::text AS id
                            """,
                            (
                                record.id,
                                record.user_id,
                                record.wallet_id,
                                record.amount,
                                record.currency,
                                record.fee,
                                record.provider,
                                record.provider_account_id,
                                record.provider_account_name,
                                record.provider_transaction_id,
                                record.reference,
                                record.status,
                                Json(record.provider_response or {}),
                                record.failure_reason,
                                record.retry_count,
                                record.last_retry_at,
                                record.next_retry_at,
                                record.completed_at,
                                record.created_at,
                            ),
                        )
                except psycopg2.errors.UniqueViolation as exc:
                    raise DuplicateReference(record.reference) from exc

                cur.execute(_SELECT + " WHERE id = %s::uuid", (record.id,))
                return _row_to_record(cur.fetchone())

    def find_by_id(self, cash_out_id: str) -> Optional[CashOutRecord]:
        # ids come straight from URLs; a malformed one is simply absent
        if not _is_uuid(cash_out_id):
            return None
        with db.get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(_SELECT + " WHERE id = %s::uuid", (str(cash_out_id),))
                row = cur.fetchone()
                return _row_to_record(row) if row else None

    def find_by_reference(self, reference: str) -> Optional[CashOutRecord]:
        with db.get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(_SELECT + " WHERE reference = %s", (reference,))
                row = cur.fetchone()
                return _row_to_record(row) if row else None

    def find(self, filter: CashOutFilter, limit: Optional[int] = None) -> list[CashOutRecord]:
        where, params = _where(filter)
        sql = _SELECT + where + " ORDER BY created_at ASC"
        if limit is not None:
            sql += " LIMIT %s"
            params.append(int(limit))

        with db.get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, tuple(params))
                return [_row_to_record(r) for r in cur.fetchall()]

    def save(self, record: CashOutRecord, expected_version: int) -> CashOutRecord:
        with db.get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    UPDATE app.cash_out_requests
                    SET
                      provider_transaction_id = %s,
                      status = %s,
                      provider_response = %s::jsonb,
                      failure_reason = %s,
                      retry_count = %s,
                      last_retry_at = %s,
                      next_retry_at = %s,
                      completed_at = %s,
                      version = version + 1,
                      updated_at = now()
                    WHERE id = %s::uuid
                      AND version = %s
                    RETURNING id::text AS id
                    """,
                    (
                        record.provider_transaction_id,
                        record.status,
                        Json(record.provider_response or {}),
                        record.failure_reason,
                        record.retry_count,
                        record.last_retry_at,
                        record.next_retry_at,
                        record.completed_at,
                        record.id,
                        expected_version,
                    ),
                )
                if cur.rowcount != 1:
                    cur.execute(
                        "SELECT version FROM app.cash_out_requests WHERE id = %s::uuid",
                        (record.id,),
                    )
                    row = cur.fetchone()
                    if not row:
                        raise CashOutNotFound(record.id)
                    raise StaleRecordError(record.id, expected_version, int(row["version"]))

                cur.execute(_SELECT + " WHERE id = %s::uuid", (record.id,))
                return _row_to_record(cur.fetchone())
