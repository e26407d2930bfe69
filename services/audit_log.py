from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from psycopg2.extras import Json

import db
from services.observability import get_request_id
from services.redaction import redact_dict

logger = logging.getLogger("cashout.audit")

RESOURCE_CASH_OUT = "cash_out"


@dataclass(frozen=True)
class AuditEntry:
    action: str
    resource_type: str
    resource_id: Optional[str]
    description: str
    metadata: dict[str, Any] = field(default_factory=dict)
    status: str = "success"
    severity: str = "info"
    request_id: Optional[str] = None
    created_at: Optional[datetime] = None


class AuditLogger(Protocol):
    def log(
        self,
        *,
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        description: str,
        metadata: dict[str, Any] | None = None,
        status: str = "success",
        severity: str = "info",
    ) -> None: ...


class PgAuditLogger:
    """
    Writes app.audit_log on the current connection. Inside db.transaction()
    the entry commits or rolls back with the record mutation it describes.
    """

    def log(
        self,
        *,
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        description: str,
        metadata: dict[str, Any] | None = None,
        status: str = "success",
        severity: str = "info",
    ) -> None:
        with db.get_conn() as conn:
            with db.savepoint(conn, "audit_log_write"):
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO app.audit_log (
                          action, resource_type, resource_id, description,
                          metadata, status, severity, request_id
                        )
                        VALUES (%s, %s, %s, %s, %s::jsonb, %s, %s, %s);
                        """,
                        (
                            action,
                            resource_type,
                            resource_id,
                            description,
                            Json(redact_dict(metadata or {})),
                            status,
                            severity,
                            get_request_id(),
                        ),
                    )


class InMemoryAuditLogger:
    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []
        self._lock = threading.Lock()

    def log(
        self,
        *,
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        description: str,
        metadata: dict[str, Any] | None = None,
        status: str = "success",
        severity: str = "info",
    ) -> None:
        entry = AuditEntry(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            description=description,
            metadata=redact_dict(metadata or {}),
            status=status,
            severity=severity,
            request_id=get_request_id(),
            created_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self.entries.append(entry)

    def actions(self) -> list[str]:
        with self._lock:
            return [e.action for e in self.entries]

    def for_resource(self, resource_id: str) -> list[AuditEntry]:
        with self._lock:
            return [e for e in self.entries if e.resource_id == resource_id]


def safe_audit(audit: AuditLogger | None, **entry: Any) -> None:
    """Audit is best effort: a failing sink never fails the operation it records."""
    if audit is None:
        return
    try:
        audit.log(**entry)
    except Exception as exc:
        logger.warning("audit write failed action=%s resource_id=%s err=%s", entry.get("action"), entry.get("resource_id"), exc)
