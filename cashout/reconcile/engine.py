# cashout/reconcile/engine.py
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

from cashout.errors import CashOutNotFound, StaleRecordError
from cashout.providers.base import ProviderCallback
from cashout.providers.factory import get_provider, require_provider
from cashout.providers.mobile_money.config import normalize_provider
from cashout.records.model import (
    CANCELLED,
    COMPLETED,
    FAILED,
    IN_FLIGHT_STATUSES,
    PENDING,
    PROCESSING,
    CashOutFilter,
    CashOutRecord,
)
from cashout.records.repository import CashOutStore
from cashout.records.state_machine import advance_to, mark_cancelled, mark_processing
from cashout.workers.periodic import PeriodicTask
from services.audit_log import RESOURCE_CASH_OUT, AuditLogger, safe_audit
from services.events import EventPublisher, publish_terminal_event
from services.metrics import increment_reconcile
from settings import enabled_providers, settings

logger = logging.getLogger("cashout.reconcile")

CANCELLED_BY_PROVIDER = "CANCELLED_BY_PROVIDER"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken as UTC; stored timestamps are always aware."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass
class ReconciliationResult:
    total: int = 0
    processed: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def drift_target(record: CashOutRecord, reported: str, failure_reason: Optional[str] = None) -> Optional[tuple[str, Optional[str]]]:
    """
    Map a provider-reported status onto a legal local move.

    Returns (new_status, failure_reason) or None when nothing should change.
    """
    if record.is_terminal or reported == record.status:
        return None

    if reported == CANCELLED:
        # processing -> cancelled is not a legal move; the provider gave up on it
        if record.status == PROCESSING:
            return FAILED, failure_reason or CANCELLED_BY_PROVIDER
        return CANCELLED, failure_reason or CANCELLED_BY_PROVIDER

    if reported in (PENDING, PROCESSING):
        if record.status == PENDING and reported == PROCESSING:
            return PROCESSING, None
        return None

    if reported == FAILED:
        return FAILED, failure_reason or "Unknown error"
    if reported == COMPLETED:
        return COMPLETED, None
    return None


class ReconciliationEngine:
    def __init__(
        self,
        store: CashOutStore,
        *,
        provider_resolver: Callable[[str], Any] = get_provider,
        audit: AuditLogger | None = None,
        events: EventPublisher | None = None,
        clock: Callable[[], datetime] = _utcnow,
        batch_size: int | None = None,
        max_age_days: int | None = None,
    ):
        self.store = store
        self.provider_resolver = provider_resolver
        self.audit = audit
        self.events = events
        self.clock = clock
        self.batch_size = int(settings.RECONCILE_BATCH_SIZE if batch_size is None else batch_size)
        self.max_age_days = int(settings.RECONCILE_MAX_AGE_DAYS if max_age_days is None else max_age_days)

    # -----------------------
    # drift repair
    # -----------------------
    def _apply_status(
        self,
        record: CashOutRecord,
        reported: str,
        *,
        provider_transaction_id: Optional[str],
        provider_response: Optional[dict[str, Any]],
        failure_reason: Optional[str],
        source: str,
    ) -> dict[str, Any]:
        target = drift_target(record, reported, failure_reason)
        if target is None:
            return {"cashOutId": record.id, "result": "unchanged", "status": record.status}

        new_status, reason = target
        now = self.clock()
        if new_status == PROCESSING:
            updated = mark_processing(
                record,
                provider_transaction_id=provider_transaction_id,
                provider_response=provider_response,
            )
        elif new_status == CANCELLED:
            updated = mark_cancelled(record, reason=reason)
        else:
            updated = advance_to(
                record,
                new_status,
                now=now,
                provider_transaction_id=provider_transaction_id,
                provider_response=provider_response,
                failure_reason=reason,
            )

        try:
            with self.store.transaction():
                saved = self.store.save(updated, record.version)
                publish_terminal_event(self.events, saved)
                safe_audit(
                    self.audit,
                    action="payment.reconciliation.updated",
                    resource_type=RESOURCE_CASH_OUT,
                    resource_id=saved.id,
                    description="Reconciliation updated cash out status",
                    metadata={
                        "provider": saved.provider,
                        "previousStatus": record.status,
                        "newStatus": saved.status,
                        "providerTransactionId": saved.provider_transaction_id,
                        "source": source,
                    },
                    status="success",
                    severity="medium",
                )
        except StaleRecordError:
            logger.info("reconciliation lost race cash_out_id=%s", record.id)
            return {"cashOutId": record.id, "result": "skipped", "reason": "concurrent_update"}

        logger.info(
            "reconciliation updated cash_out_id=%s %s -> %s source=%s",
            saved.id,
            record.status,
            saved.status,
            source,
        )
        return {
            "cashOutId": saved.id,
            "result": "updated",
            "previousStatus": record.status,
            "newStatus": saved.status,
        }

    def _reconcile_record(self, record: CashOutRecord) -> dict[str, Any]:
        if not record.provider_transaction_id:
            return {"cashOutId": record.id, "result": "skipped", "reason": "no_provider_transaction_id"}

        provider = require_provider(record.provider, self.provider_resolver)
        result = provider.check_status(record.provider_transaction_id)
        return self._apply_status(
            record,
            result.status,
            provider_transaction_id=result.provider_transaction_id,
            provider_response=result.provider_response,
            failure_reason=result.failure_reason,
            source="reconciliation",
        )

    # -----------------------
    # batch sweep
    # -----------------------
    def reconcile_pending_cash_outs(
        self,
        provider: Optional[str] = None,
        max_age_days: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> ReconciliationResult:
        provider = normalize_provider(provider) or None
        max_age = int(self.max_age_days if max_age_days is None else max_age_days)
        limit = int(self.batch_size if batch_size is None else batch_size)
        label = provider or "all"

        try:
            cutoff = self.clock() - timedelta(days=max_age)
            records = self.store.find(
                CashOutFilter(statuses=IN_FLIGHT_STATUSES, provider=provider, created_after=cutoff),
                limit=limit,
            )
            logger.info("found %s pending cash outs to reconcile provider=%s", len(records), label)

            results = ReconciliationResult(total=len(records))
            for record in records:
                results.processed += 1
                try:
                    detail = self._reconcile_record(record)
                except Exception as exc:
                    results.failed += 1
                    results.details.append({"cashOutId": record.id, "result": "failed", "error": str(exc)})
                    logger.error("reconciliation error cash_out_id=%s err=%s", record.id, exc)
                    continue

                if detail["result"] == "updated":
                    results.updated += 1
                else:
                    results.unchanged += 1
                results.details.append(detail)
        except Exception as exc:
            logger.exception("reconciliation run failed provider=%s", label)
            safe_audit(
                self.audit,
                action="payment.reconciliation.failed",
                resource_type=RESOURCE_CASH_OUT,
                resource_id=None,
                description="Failed to complete cash out reconciliation",
                metadata={"provider": label, "error": str(exc)},
                status="failure",
                severity="high",
            )
            raise

        increment_reconcile(label, "updated", results.updated)
        increment_reconcile(label, "unchanged", results.unchanged)
        increment_reconcile(label, "failed", results.failed)
        logger.info(
            "reconciliation completed provider=%s processed=%s updated=%s unchanged=%s failed=%s",
            label,
            results.processed,
            results.updated,
            results.unchanged,
            results.failed,
        )
        safe_audit(
            self.audit,
            action="payment.reconciliation.completed",
            resource_type=RESOURCE_CASH_OUT,
            resource_id=None,
            description="Completed cash out reconciliation",
            metadata={
                "provider": label,
                "total": results.total,
                "processed": results.processed,
                "updated": results.updated,
                "unchanged": results.unchanged,
                "failed": results.failed,
            },
            status="success",
            severity="low",
        )
        return results

    def reconcile_one(self, cash_out_id: str) -> tuple[CashOutRecord, dict[str, Any]]:
        """On-demand refresh of a single record. Provider errors propagate."""
        record = self.store.find_by_id(cash_out_id)
        if record is None:
            raise CashOutNotFound(cash_out_id)
        if record.is_terminal:
            return record, {"cashOutId": record.id, "result": "unchanged", "status": record.status}

        detail = self._reconcile_record(record)
        return self.store.find_by_id(record.id) or record, detail

    def apply_provider_callback(self, provider: str, callback: ProviderCallback) -> dict[str, Any]:
        provider = normalize_provider(provider)
        record = self.store.find_by_reference(callback.reference) if callback.reference else None
        if record is None or (record.provider != provider and provider != "mock"):
            logger.info("callback for unknown transaction provider=%s reference=%s", provider, callback.reference)
            return {"success": True, "message": "Transaction not found in system"}

        if callback.provider_transaction_id and not record.provider_transaction_id and not record.is_terminal:
            # anchor later status checks even when the status itself did not move
            try:
                record = self.store.save(
                    replace(record, provider_transaction_id=callback.provider_transaction_id),
                    record.version,
                )
            except StaleRecordError:
                record = self.store.find_by_id(record.id) or record

        detail = self._apply_status(
            record,
            callback.status,
            provider_transaction_id=callback.provider_transaction_id,
            provider_response=callback.payload,
            failure_reason=callback.failure_reason,
            source="webhook",
        )
        current = self.store.find_by_id(record.id) or record
        return {
            "success": True,
            "cashOutId": current.id,
            "status": current.status,
            "result": detail["result"],
        }

    # -----------------------
    # reporting
    # -----------------------
    def generate_reconciliation_report(
        self,
        provider: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> dict[str, Any]:
        provider = normalize_provider(provider) or None
        end = as_utc(end_date) or self.clock()
        start = as_utc(start_date) or (end - timedelta(hours=24))

        records = self.store.find(CashOutFilter(provider=provider, created_after=start, created_before=end))

        by_status: dict[str, dict[str, Any]] = {}
        total_amount = Decimal("0")
        total_fees = Decimal("0")
        for r in records:
            group = by_status.setdefault(r.status, {"count": 0, "amount": Decimal("0"), "fees": Decimal("0")})
            group["count"] += 1
            group["amount"] += r.amount
            group["fees"] += r.fee
            total_amount += r.amount
            total_fees += r.fee

        logger.info(
            "generated reconciliation report provider=%s from=%s to=%s",
            provider or "all",
            start.isoformat(),
            end.isoformat(),
        )
        return {
            "period": {"startDate": start, "endDate": end},
            "provider": provider or "all",
            "total": {"count": len(records), "amount": total_amount, "fees": total_fees},
            "byStatus": by_status,
        }

    # -----------------------
    # scheduling
    # -----------------------
    def reconcile_providers(self, providers: Iterable[str] | None = None) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for p in list(providers or enabled_providers()):
            try:
                out[p] = self.reconcile_pending_cash_outs(provider=p).to_dict()
            except Exception as exc:
                logger.error("scheduled reconciliation error provider=%s err=%s", p, exc)
                out[p] = {"error": str(exc)}
        return out

    def start_scheduler(self, interval_ms: int = 3_600_000, providers: Iterable[str] | None = None) -> PeriodicTask:
        providers = list(providers) if providers is not None else None
        return PeriodicTask(
            "reconcile-sweep",
            interval_ms / 1000.0,
            lambda: self.reconcile_providers(providers),
        ).start()
