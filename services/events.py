from __future__ import annotations

import logging
import threading
from typing import Any, Optional, Protocol

from psycopg2.extras import Json

import db
from cashout.records.model import COMPLETED, FAILED, CashOutRecord

logger = logging.getLogger("cashout.events")

CASH_OUT_COMPLETED = "cash_out.completed"
CASH_OUT_FAILED = "cash_out.failed"


class EventPublisher(Protocol):
    def publish(self, event_name: str, payload: dict[str, Any]) -> None: ...


class OutboxEventPublisher:
    """
    Transactional outbox: the event row lands in app.outbox_events on the
    same connection as the state change, and a relay ships it later.
    """

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        with db.get_conn() as conn:
            with db.savepoint(conn, "outbox_write"):
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO app.outbox_events (event_name, aggregate_id, payload)
                        VALUES (%s, %s, %s::jsonb);
                        """,
                        (event_name, payload.get("cashOutId"), Json(payload)),
                    )


class InMemoryEventPublisher:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self.events.append((event_name, dict(payload)))

    def named(self, event_name: str) -> list[dict[str, Any]]:
        with self._lock:
            return [p for name, p in self.events if name == event_name]


def cash_out_event_payload(record: CashOutRecord) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "cashOutId": record.id,
        "userId": record.user_id,
        "walletId": record.wallet_id,
        "amount": str(record.amount),
        "currency": record.currency,
        "fee": str(record.fee),
        "provider": record.provider,
        "reference": record.reference,
    }
    if record.status == COMPLETED:
        payload["providerTransactionId"] = record.provider_transaction_id
    elif record.status == FAILED:
        payload["failureReason"] = record.failure_reason
    return payload


def publish_terminal_event(publisher: Optional[EventPublisher], record: CashOutRecord) -> None:
    """Publish cash_out.completed / cash_out.failed for a record that just reached that state."""
    if publisher is None:
        return
    if record.status == COMPLETED:
        name = CASH_OUT_COMPLETED
    elif record.status == FAILED:
        name = CASH_OUT_FAILED
    else:
        return
    try:
        publisher.publish(name, cash_out_event_payload(record))
    except Exception as exc:
        logger.warning("event publish failed event=%s cash_out_id=%s err=%s", name, record.id, exc)
