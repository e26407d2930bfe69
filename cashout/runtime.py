# cashout/runtime.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from cashout.reconcile.engine import ReconciliationEngine
from cashout.records.memory import InMemoryCashOutStore
from cashout.records.repository import CashOutStore, PgCashOutStore
from cashout.retry.engine import RetryEngine
from cashout.retry.policy import RetryPolicy
from cashout.workers.supervisor import CashOutSupervisor
from cashout.workers.timers import ThreadingDeferrer
from services.audit_log import AuditLogger, InMemoryAuditLogger, PgAuditLogger
from services.events import EventPublisher, InMemoryEventPublisher, OutboxEventPublisher
from settings import Settings, settings as default_settings

logger = logging.getLogger("cashout")


@dataclass
class CashOutRuntime:
    store: CashOutStore
    audit: AuditLogger
    events: EventPublisher
    retry: RetryEngine
    reconciliation: ReconciliationEngine
    supervisor: CashOutSupervisor


def build_runtime(s: Settings | None = None, **overrides: Any) -> CashOutRuntime:
    """
    Wire store, sinks and engines. With DATABASE_URL set everything is
    Postgres backed; without it the in-memory store is used (dev/sandbox).
    """
    s = s or default_settings
    if (s.DATABASE_URL or "").strip():
        store: CashOutStore = overrides.get("store") or PgCashOutStore()
        audit: AuditLogger = overrides.get("audit") or PgAuditLogger()
        events: EventPublisher = overrides.get("events") or OutboxEventPublisher()
    else:
        logger.warning("DATABASE_URL not set; cash-out records are kept in memory")
        store = overrides.get("store") or InMemoryCashOutStore()
        audit = overrides.get("audit") or InMemoryAuditLogger()
        events = overrides.get("events") or InMemoryEventPublisher()

    deferrer = overrides.get("deferrer") or ThreadingDeferrer()
    engine_kwargs: dict[str, Any] = {}
    if "provider_resolver" in overrides:
        engine_kwargs["provider_resolver"] = overrides["provider_resolver"]
    if "clock" in overrides:
        engine_kwargs["clock"] = overrides["clock"]

    retry = RetryEngine(
        store,
        policy=overrides.get("policy") or RetryPolicy.from_settings(s),
        audit=audit,
        events=events,
        deferrer=deferrer,
        **engine_kwargs,
    )
    reconciliation = ReconciliationEngine(
        store,
        audit=audit,
        events=events,
        batch_size=int(s.RECONCILE_BATCH_SIZE),
        max_age_days=int(s.RECONCILE_MAX_AGE_DAYS),
        **engine_kwargs,
    )
    supervisor = CashOutSupervisor(
        retry,
        reconciliation,
        deferrer=deferrer,
        retry_interval_ms=int(s.RETRY_SWEEP_INTERVAL_MS),
        reconcile_interval_ms=int(s.RECONCILE_INTERVAL_MS),
    )
    return CashOutRuntime(
        store=store,
        audit=audit,
        events=events,
        retry=retry,
        reconciliation=reconciliation,
        supervisor=supervisor,
    )


_runtime: CashOutRuntime | None = None


def get_runtime() -> CashOutRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def reset_runtime() -> None:
    global _runtime
    if _runtime is not None:
        _runtime.supervisor.stop()
    _runtime = None
