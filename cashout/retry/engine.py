# cashout/retry/engine.py
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from cashout.errors import CashOutNotFound, ProviderError, StaleRecordError
from cashout.providers.base import ProviderResult
from cashout.providers.factory import get_provider, require_provider
from cashout.records.model import (
    CANCELLED,
    COMPLETED,
    FAILED,
    PENDING,
    PROCESSING,
    CashOutFilter,
    CashOutRecord,
)
from cashout.records.repository import CashOutStore
from cashout.records.state_machine import (
    InvalidTransition,
    mark_completed,
    mark_failed,
    mark_processing,
    schedule_next_attempt,
)
from cashout.retry.policy import RetryPolicy
from cashout.workers.periodic import PeriodicTask
from cashout.workers.timers import Deferrer
from services.audit_log import RESOURCE_CASH_OUT, AuditLogger, safe_audit
from services.events import EventPublisher, publish_terminal_event
from services.metrics import increment_retry

logger = logging.getLogger("cashout.retry")

# timers may fire a little ahead of next_retry_at
DUE_TOLERANCE = timedelta(seconds=1)

CANCELLED_BY_PROVIDER = "CANCELLED_BY_PROVIDER"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AttemptOutcome:
    cash_out_id: str
    # completed | failed | processing | scheduled | skipped
    result: str
    status: Optional[str] = None
    reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.result == "skipped"


class RetryEngine:
    """
    Re-attempts provider calls for in-flight cash outs.

    Every write is conditional on the record version read just before it,
    so a retry racing reconciliation (or another retry) loses cleanly.
    """

    def __init__(
        self,
        store: CashOutStore,
        *,
        policy: RetryPolicy | None = None,
        provider_resolver: Callable[[str], Any] = get_provider,
        audit: AuditLogger | None = None,
        events: EventPublisher | None = None,
        deferrer: Deferrer | None = None,
        clock: Callable[[], datetime] = _utcnow,
        batch_size: int = 100,
    ):
        self.store = store
        self.policy = policy or RetryPolicy.from_settings()
        self.provider_resolver = provider_resolver
        self.audit = audit
        self.events = events
        self.deferrer = deferrer
        self.clock = clock
        self.batch_size = batch_size

    # -----------------------
    # scheduling
    # -----------------------
    def should_retry(self, record: CashOutRecord, error: BaseException) -> bool:
        return self.policy.should_retry(record, error)

    def schedule_retry(self, record: CashOutRecord, error: BaseException) -> bool:
        if not self.policy.should_retry(record, error):
            logger.info(
                "retry declined cash_out_id=%s retry_count=%s code=%s",
                record.id,
                record.retry_count,
                getattr(error, "code", None),
            )
            return False

        delay_ms = self.policy.delay_ms(record.retry_count)
        now = self.clock()
        try:
            updated = schedule_next_attempt(record, now=now, delay_ms=delay_ms)
        except InvalidTransition:
            return False

        try:
            with self.store.transaction():
                saved = self.store.save(updated, record.version)
                safe_audit(
                    self.audit,
                    action="payment.retry.scheduled",
                    resource_type=RESOURCE_CASH_OUT,
                    resource_id=saved.id,
                    description=f"Retry {saved.retry_count} scheduled for cash out",
                    metadata={
                        "provider": saved.provider,
                        "retryCount": saved.retry_count,
                        "nextRetryAt": saved.next_retry_at.isoformat() if saved.next_retry_at else None,
                        "delayMs": delay_ms,
                        "errorCode": getattr(error, "code", None),
                        "errorMessage": str(error),
                    },
                    status="pending",
                    severity="warning",
                )
        except StaleRecordError:
            logger.info("retry scheduling lost race cash_out_id=%s", record.id)
            return False

        increment_retry(saved.provider, "scheduled")
        logger.info(
            "retry scheduled cash_out_id=%s retry_count=%s delay_ms=%s",
            saved.id,
            saved.retry_count,
            delay_ms,
        )
        if self.deferrer is not None:
            self.deferrer.call_later(delay_ms / 1000.0, self._deferred_execute, saved.id)
        return True

    def _deferred_execute(self, cash_out_id: str) -> None:
        try:
            self.execute_retry(cash_out_id)
        except CashOutNotFound:
            logger.warning("deferred retry for missing cash_out_id=%s", cash_out_id)

    # -----------------------
    # execution
    # -----------------------
    def execute_retry(self, cash_out_id: str) -> AttemptOutcome:
        record = self.store.find_by_id(cash_out_id)
        if record is None:
            raise CashOutNotFound(cash_out_id)

        if record.status != PROCESSING:
            return AttemptOutcome(record.id, "skipped", record.status, "not_processing")

        now = self.clock()
        if record.next_retry_at is None or record.next_retry_at > now + DUE_TOLERANCE:
            return AttemptOutcome(record.id, "skipped", record.status, "not_due")

        # claim: a crashed attempt becomes due again once the lease runs out
        lease = replace(record, next_retry_at=now + timedelta(milliseconds=self.policy.claim_lease_ms))
        try:
            claimed = self.store.save(lease, record.version)
        except StaleRecordError:
            logger.info("retry already claimed cash_out_id=%s", record.id)
            return AttemptOutcome(record.id, "skipped", record.status, "claimed_elsewhere")

        logger.info(
            "executing retry cash_out_id=%s retry_count=%s provider=%s",
            claimed.id,
            claimed.retry_count,
            claimed.provider,
        )
        safe_audit(
            self.audit,
            action="payment.retry.executing",
            resource_type=RESOURCE_CASH_OUT,
            resource_id=claimed.id,
            description=f"Executing retry {claimed.retry_count} for cash out",
            metadata={"provider": claimed.provider, "retryCount": claimed.retry_count},
            status="pending",
            severity="info",
        )

        try:
            provider = require_provider(claimed.provider, self.provider_resolver)
            if claimed.provider_transaction_id:
                result = provider.check_status(claimed.provider_transaction_id)
            else:
                result = provider.initiate(claimed)
        except Exception as exc:
            return self._handle_failure(claimed, exc)

        return self._apply_result(claimed, result, audited=True)

    def initiate(self, cash_out_id: str) -> AttemptOutcome:
        """First provider call for a pending record."""
        record = self.store.find_by_id(cash_out_id)
        if record is None:
            raise CashOutNotFound(cash_out_id)
        if record.status != PENDING:
            raise InvalidTransition(f"Cash out {record.id} is {record.status}, expected pending")

        # leased like a retry claim so a crash before the provider answers is recovered by the sweep
        lease_until = self.clock() + timedelta(milliseconds=self.policy.claim_lease_ms)
        try:
            claimed = self.store.save(replace(mark_processing(record), next_retry_at=lease_until), record.version)
        except StaleRecordError:
            return AttemptOutcome(record.id, "skipped", record.status, "concurrent_update")

        try:
            provider = require_provider(claimed.provider, self.provider_resolver)
            result = provider.initiate(claimed)
        except Exception as exc:
            return self._handle_failure(claimed, exc)

        return self._apply_result(claimed, result, audited=False)

    def _apply_result(self, record: CashOutRecord, result: ProviderResult, *, audited: bool) -> AttemptOutcome:
        now = self.clock()
        if result.status == COMPLETED:
            updated = mark_completed(
                record,
                now=now,
                provider_transaction_id=result.provider_transaction_id,
                provider_response=result.provider_response,
            )
        elif result.status in (FAILED, CANCELLED):
            reason = result.failure_reason or (CANCELLED_BY_PROVIDER if result.status == CANCELLED else None)
            updated = mark_failed(
                record,
                reason=reason,
                provider_transaction_id=result.provider_transaction_id,
                provider_response=result.provider_response,
            )
        else:
            # accepted, not settled: reconciliation finishes it
            updated = replace(
                mark_processing(
                    record,
                    provider_transaction_id=result.provider_transaction_id,
                    provider_response=result.provider_response,
                ),
                next_retry_at=None,
            )

        try:
            with self.store.transaction():
                saved = self.store.save(updated, record.version)
                publish_terminal_event(self.events, saved)
                if audited:
                    failed = saved.status == FAILED
                    safe_audit(
                        self.audit,
                        action="payment.retry.failed" if failed else "payment.retry.success",
                        resource_type=RESOURCE_CASH_OUT,
                        resource_id=saved.id,
                        description=(
                            f"Retry {saved.retry_count} failed for cash out"
                            if failed
                            else f"Retry {saved.retry_count} successful for cash out"
                        ),
                        metadata={
                            "provider": saved.provider,
                            "retryCount": saved.retry_count,
                            "newStatus": saved.status,
                            "providerTransactionId": saved.provider_transaction_id,
                            "failureReason": saved.failure_reason,
                        },
                        status="failure" if failed else "success",
                        severity="error" if failed else "info",
                    )
        except StaleRecordError:
            logger.info("attempt result discarded, record moved on cash_out_id=%s", record.id)
            return AttemptOutcome(record.id, "skipped", record.status, "concurrent_update")

        increment_retry(saved.provider, saved.status)
        logger.info(
            "attempt applied cash_out_id=%s status=%s provider_txid=%s",
            saved.id,
            saved.status,
            saved.provider_transaction_id,
        )
        return AttemptOutcome(saved.id, saved.status, saved.status, saved.failure_reason)

    def _handle_failure(self, record: CashOutRecord, error: BaseException) -> AttemptOutcome:
        if isinstance(error, ProviderError):
            logger.warning(
                "provider call failed cash_out_id=%s code=%s retryable_hint=%s err=%s",
                record.id,
                error.code,
                error.retryable_hint,
                error.message,
            )
        else:
            logger.exception("unexpected error calling provider cash_out_id=%s", record.id)

        if self.schedule_retry(record, error):
            return AttemptOutcome(record.id, "scheduled", PROCESSING, str(error))

        return self.fail_record(record, error)

    def fail_record(self, record: CashOutRecord, error: BaseException) -> AttemptOutcome:
        response = getattr(error, "response", None)
        try:
            updated = mark_failed(
                record,
                reason=str(error),
                provider_response=response if isinstance(response, dict) else None,
            )
        except InvalidTransition:
            return AttemptOutcome(record.id, "skipped", record.status, "terminal")

        try:
            with self.store.transaction():
                saved = self.store.save(updated, record.version)
                publish_terminal_event(self.events, saved)
                safe_audit(
                    self.audit,
                    action="payment.retry.failed",
                    resource_type=RESOURCE_CASH_OUT,
                    resource_id=saved.id,
                    description=f"Cash out failed after {saved.retry_count} retries",
                    metadata={
                        "provider": saved.provider,
                        "retryCount": saved.retry_count,
                        "errorCode": getattr(error, "code", None),
                        "failureReason": saved.failure_reason,
                    },
                    status="failure",
                    severity="error",
                )
        except StaleRecordError:
            logger.info("failure not recorded, record moved on cash_out_id=%s", record.id)
            return AttemptOutcome(record.id, "skipped", record.status, "concurrent_update")

        increment_retry(saved.provider, "failed")
        logger.warning("cash out failed cash_out_id=%s reason=%s", saved.id, saved.failure_reason)
        return AttemptOutcome(saved.id, FAILED, FAILED, saved.failure_reason)

    # -----------------------
    # recovery sweep
    # -----------------------
    def process_pending_retries(self) -> dict[str, int]:
        now = self.clock()
        due = self.store.find(
            CashOutFilter(
                statuses=(PROCESSING,),
                next_retry_before=now,
                min_retry_count=1,
                max_retry_count=self.policy.max_retries,
            ),
            limit=self.batch_size,
        )
        # first attempts whose claim lease ran out before the provider answered;
        # once a transaction id exists reconciliation owns the record
        stalled = [
            r
            for r in self.store.find(
                CashOutFilter(statuses=(PROCESSING,), next_retry_before=now, max_retry_count=0),
                limit=self.batch_size,
            )
            if not r.provider_transaction_id
        ]
        if stalled:
            logger.warning("recovering %s stalled first attempts", len(stalled))
        due = due + stalled

        stats = {"total": len(due), "processed": 0, "succeeded": 0, "failed": 0, "skipped": 0}
        for record in due:
            try:
                outcome = self.execute_retry(record.id)
            except Exception:
                logger.exception("retry sweep error cash_out_id=%s", record.id)
                stats["processed"] += 1
                stats["failed"] += 1
                continue

            if outcome.skipped:
                stats["skipped"] += 1
                continue
            stats["processed"] += 1
            if outcome.result == COMPLETED:
                stats["succeeded"] += 1
            elif outcome.result == FAILED:
                stats["failed"] += 1

        if due:
            logger.info("retry sweep done %s", stats)
        return stats

    def start_scheduler(self, interval_ms: int = 60_000) -> PeriodicTask:
        return PeriodicTask("retry-sweep", interval_ms / 1000.0, self.process_pending_retries).start()
