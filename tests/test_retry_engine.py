from datetime import timedelta

import pytest

from cashout.errors import CashOutNotFound, ProviderError, ProviderErrorCode
from cashout.providers.base import ProviderResult
from cashout.providers.mock import MockProvider
from cashout.records.state_machine import InvalidTransition
from services.metrics import counter_value
from tests.conftest import T0, ScriptedProvider, in_processing, new_cash_out, put


def _timeout():
    return ProviderError("Provider timed out", ProviderErrorCode.TIMEOUT, provider="orange_money")


def test_schedule_retry_increments_count_and_backs_off(retry_engine, store, audit, deferrer):
    record = in_processing(store, retry_count=2, provider_transaction_id="tx-1")
    error = ProviderError("Connection reset", ProviderErrorCode.NETWORK_ERROR)

    assert retry_engine.schedule_retry(record, error) is True

    saved = store.find_by_id(record.id)
    assert saved.status == "processing"
    assert saved.retry_count == 3
    assert saved.last_retry_at == T0
    assert saved.next_retry_at == T0 + timedelta(milliseconds=120_000)

    assert len(deferrer.calls) == 1
    delay_s, _, args = deferrer.calls[0]
    assert delay_s == 120.0
    assert args == (record.id,)

    entry = audit.for_resource(record.id)[-1]
    assert entry.action == "payment.retry.scheduled"
    assert entry.metadata["retryCount"] == 3
    assert entry.metadata["errorCode"] == "NETWORK_ERROR"
    assert counter_value("cashout_retries_total", {"provider": "orange_money", "result": "scheduled"}) == 1


def test_schedule_retry_declined_when_budget_exhausted(retry_engine, store, deferrer):
    record = in_processing(store, retry_count=3)

    assert retry_engine.schedule_retry(record, _timeout()) is False
    assert store.find_by_id(record.id).retry_count == 3
    assert deferrer.calls == []


def test_exhausted_retry_fails_record_with_error_message(retry_engine, provider, store, events):
    record = in_processing(store, retry_count=3, next_retry_at=T0)
    provider.initiate_results.append(_timeout())

    outcome = retry_engine.execute_retry(record.id)

    assert outcome.result == "failed"
    saved = store.find_by_id(record.id)
    assert saved.status == "failed"
    assert saved.failure_reason == "Provider timed out"
    assert saved.retry_count == 3
    assert saved.next_retry_at is None

    failed = events.named("cash_out.failed")
    assert len(failed) == 1
    assert failed[0]["failureReason"] == "Provider timed out"


def test_business_failure_is_not_retried(retry_engine, provider, store, deferrer):
    record = in_processing(store, retry_count=0, next_retry_at=T0)
    provider.initiate_results.append(
        ProviderError("Account not found", ProviderErrorCode.ACCOUNT_NOT_FOUND, response={"code": "ACCOUNT_NOT_FOUND"})
    )

    outcome = retry_engine.execute_retry(record.id)

    assert outcome.result == "failed"
    saved = store.find_by_id(record.id)
    assert saved.status == "failed"
    assert saved.retry_count == 0
    assert saved.provider_response == {"code": "ACCOUNT_NOT_FOUND"}
    assert deferrer.calls == []


def test_execute_retry_checks_status_when_transaction_known(retry_engine, provider, store, events, audit):
    record = in_processing(store, retry_count=1, next_retry_at=T0, provider_transaction_id="tx-42")
    provider.status_results.append(ProviderResult(status="completed", provider_transaction_id="tx-42"))

    outcome = retry_engine.execute_retry(record.id)

    assert outcome.result == "completed"
    assert provider.calls == [("status", "tx-42")]
    saved = store.find_by_id(record.id)
    assert saved.status == "completed"
    assert saved.completed_at == T0
    assert len(events.named("cash_out.completed")) == 1
    assert audit.actions()[-2:] == ["payment.retry.executing", "payment.retry.success"]


def test_execute_retry_claims_record_for_lease(retry_engine, providers, store):
    record = in_processing(store, retry_count=1, next_retry_at=T0, provider_transaction_id="tx-7")
    seen = {}

    class LeaseProbe(MockProvider):
        def check_status(self, provider_transaction_id):
            seen["next_retry_at"] = store.find_by_id(record.id).next_retry_at
            return super().check_status(provider_transaction_id)

    providers["orange_money"] = LeaseProbe("orange_money")
    retry_engine.execute_retry(record.id)

    assert seen["next_retry_at"] == T0 + timedelta(milliseconds=300_000)


def test_accepted_but_unsettled_result_clears_schedule(retry_engine, provider, store):
    record = in_processing(store, retry_count=1, next_retry_at=T0)

    outcome = retry_engine.execute_retry(record.id)

    assert outcome.result == "processing"
    saved = store.find_by_id(record.id)
    assert saved.status == "processing"
    assert saved.next_retry_at is None
    assert saved.provider_transaction_id == f"tx-{record.reference}"


def test_provider_cancelled_maps_to_failed(retry_engine, provider, store, events):
    record = in_processing(store, retry_count=1, next_retry_at=T0, provider_transaction_id="tx-c")
    provider.status_results.append(ProviderResult(status="cancelled", provider_transaction_id="tx-c"))

    retry_engine.execute_retry(record.id)

    saved = store.find_by_id(record.id)
    assert saved.status == "failed"
    assert saved.failure_reason == "CANCELLED_BY_PROVIDER"
    assert len(events.named("cash_out.failed")) == 1


def test_execute_retry_skips_when_not_due(retry_engine, provider, store):
    record = in_processing(store, retry_count=1, next_retry_at=T0 + timedelta(minutes=5))

    outcome = retry_engine.execute_retry(record.id)

    assert outcome.skipped
    assert outcome.reason == "not_due"
    assert provider.calls == []


def test_execute_retry_tolerates_timer_firing_early(retry_engine, provider, store):
    record = in_processing(store, retry_count=1, next_retry_at=T0 + timedelta(milliseconds=500))

    outcome = retry_engine.execute_retry(record.id)

    assert not outcome.skipped


def test_concurrent_execute_only_one_attempt_reaches_provider(retry_engine, provider, store, monkeypatch):
    record = in_processing(store, retry_count=1, next_retry_at=T0)
    stale = store.find_by_id(record.id)

    first = retry_engine.execute_retry(record.id)
    assert not first.skipped

    # second worker read the row before the first one claimed it
    monkeypatch.setattr(store, "find_by_id", lambda _id: stale)
    second = retry_engine.execute_retry(record.id)

    assert second.skipped
    assert second.reason == "claimed_elsewhere"
    assert [c for c in provider.calls if c[0] == "initiate"] == [("initiate", record.reference)]


def test_retry_count_is_monotonic_until_failure(retry_engine, provider, store, clock, deferrer):
    record = in_processing(store, retry_count=0, next_retry_at=T0)
    provider.initiate_results.extend([_timeout(), _timeout(), _timeout(), _timeout()])

    counts = []
    for delay_ms in (30_000, 60_000, 120_000, None):
        outcome = retry_engine.execute_retry(record.id)
        counts.append(store.find_by_id(record.id).retry_count)
        if delay_ms is not None:
            assert outcome.result == "scheduled"
            clock.advance(milliseconds=delay_ms)

    assert counts == [1, 2, 3, 3]
    assert [c[0] for c in deferrer.calls] == [30.0, 60.0, 120.0]
    assert store.find_by_id(record.id).status == "failed"


def test_terminal_record_is_never_touched(retry_engine, provider, store):
    record = in_processing(store, retry_count=1, next_retry_at=T0, provider_transaction_id="tx-1")
    record = put(store, record, status="completed", completed_at=T0)

    assert retry_engine.execute_retry(record.id).reason == "not_processing"
    assert retry_engine.schedule_retry(record, _timeout()) is False
    assert retry_engine.fail_record(record, _timeout()).reason == "terminal"

    saved = store.find_by_id(record.id)
    assert saved.status == "completed"
    assert saved.version == record.version
    assert provider.calls == []


def test_execute_retry_unknown_id(retry_engine):
    with pytest.raises(CashOutNotFound):
        retry_engine.execute_retry("00000000-0000-0000-0000-000000000000")


def test_deferred_retry_runs_when_due(retry_engine, provider, store, clock, deferrer):
    record = in_processing(store, retry_count=0, provider_transaction_id="tx-d")
    retry_engine.schedule_retry(record, _timeout())
    provider.status_results.append(ProviderResult(status="completed", provider_transaction_id="tx-d"))

    clock.advance(seconds=30)
    assert deferrer.run_all() == 1

    assert store.find_by_id(record.id).status == "completed"


def test_initiate_pending_record(retry_engine, provider, store, audit):
    record = new_cash_out(store)

    outcome = retry_engine.initiate(record.id)

    assert outcome.result == "processing"
    saved = store.find_by_id(record.id)
    assert saved.status == "processing"
    assert saved.provider_transaction_id == f"tx-{record.reference}"
    assert saved.retry_count == 0
    assert "payment.retry.success" not in audit.actions()


def test_initiate_timeout_schedules_first_retry(retry_engine, provider, store, deferrer):
    record = new_cash_out(store)
    provider.initiate_results.append(_timeout())

    outcome = retry_engine.initiate(record.id)

    assert outcome.result == "scheduled"
    saved = store.find_by_id(record.id)
    assert saved.status == "processing"
    assert saved.retry_count == 1
    assert saved.next_retry_at == T0 + timedelta(seconds=30)


def test_initiate_rejects_non_pending(retry_engine, store):
    record = in_processing(store)
    with pytest.raises(InvalidTransition):
        retry_engine.initiate(record.id)


def test_unknown_provider_fails_record(retry_engine, store, providers):
    record = in_processing(store, retry_count=1, next_retry_at=T0)
    providers.pop("orange_money")

    outcome = retry_engine.execute_retry(record.id)

    assert outcome.result == "failed"
    assert "Unsupported payment provider" in store.find_by_id(record.id).failure_reason


def test_process_pending_retries_stats(retry_engine, providers, store, events):
    mock = MockProvider("orange_money")
    providers["orange_money"] = mock

    ok = in_processing(store, retry_count=1, next_retry_at=T0, provider_transaction_id="tx-ok")
    bad = in_processing(store, retry_count=2, next_retry_at=T0, provider_transaction_id="tx-bad")
    in_processing(store, retry_count=1, next_retry_at=T0 + timedelta(hours=1), provider_transaction_id="tx-later")
    in_processing(store, retry_count=0, next_retry_at=T0, provider_transaction_id="tx-fresh")
    mock.set_status("tx-ok", "completed")
    mock.set_status("tx-bad", "failed")

    stats = retry_engine.process_pending_retries()

    assert stats == {"total": 2, "processed": 2, "succeeded": 1, "failed": 1, "skipped": 0}
    assert store.find_by_id(ok.id).status == "completed"
    assert store.find_by_id(bad.id).failure_reason == "Mock provider rejected the transfer"
    assert len(events.named("cash_out.completed")) == 1
    assert len(events.named("cash_out.failed")) == 1


def test_audit_failure_does_not_fail_retry(retry_engine, provider, store):
    class BrokenAudit:
        def log(self, **entry):
            raise RuntimeError("audit db down")

    retry_engine.audit = BrokenAudit()
    record = in_processing(store, retry_count=1, next_retry_at=T0, provider_transaction_id="tx-a")
    provider.status_results.append(ProviderResult(status="completed", provider_transaction_id="tx-a"))

    outcome = retry_engine.execute_retry(record.id)

    assert outcome.result == "completed"


class _Crash(BaseException):
    """Stands in for the worker process dying mid-call."""


def test_retry_result_discarded_when_reconciliation_settles_first(
    retry_engine, reconciliation_engine, providers, store, events
):
    record = in_processing(store, retry_count=1, next_retry_at=T0, provider_transaction_id="tx-race")

    class ReconciledMidCall(ScriptedProvider):
        def check_status(self, provider_transaction_id):
            if self.calls:
                # reconciliation's own status check
                self.calls.append(("status", provider_transaction_id))
                return ProviderResult(status="completed", provider_transaction_id=provider_transaction_id)
            self.calls.append(("status", provider_transaction_id))
            reconciliation_engine.reconcile_pending_cash_outs()
            return ProviderResult(status="failed", provider_transaction_id=provider_transaction_id, failure_reason="late")

    providers["orange_money"] = ReconciledMidCall("orange_money")

    outcome = retry_engine.execute_retry(record.id)

    assert outcome.skipped
    assert outcome.reason == "concurrent_update"
    saved = store.find_by_id(record.id)
    assert saved.status == "completed"
    assert saved.failure_reason is None
    assert len(events.named("cash_out.completed")) == 1
    assert events.named("cash_out.failed") == []


def test_forced_failure_discarded_when_record_moved_on(retry_engine, providers, store, events):
    record = in_processing(store, retry_count=3, next_retry_at=T0)

    class SettledElsewhere(ScriptedProvider):
        def initiate(self, rec):
            self.calls.append(("initiate", rec.reference))
            put(store, store.find_by_id(rec.id), status="completed", completed_at=T0)
            raise ProviderError("Provider timed out", ProviderErrorCode.TIMEOUT)

    providers["orange_money"] = SettledElsewhere("orange_money")

    outcome = retry_engine.execute_retry(record.id)

    assert outcome.skipped
    assert outcome.reason == "concurrent_update"
    saved = store.find_by_id(record.id)
    assert saved.status == "completed"
    assert saved.failure_reason is None
    assert events.named("cash_out.failed") == []


def test_initiate_claim_holds_lease_until_provider_answers(retry_engine, providers, store):
    record = new_cash_out(store)
    seen = {}

    class LeaseCheck(ScriptedProvider):
        def initiate(self, rec):
            seen["next_retry_at"] = store.find_by_id(rec.id).next_retry_at
            return super().initiate(rec)

    providers["orange_money"] = LeaseCheck("orange_money")
    retry_engine.initiate(record.id)

    assert seen["next_retry_at"] == T0 + timedelta(milliseconds=300_000)
    assert store.find_by_id(record.id).next_retry_at is None


def test_sweep_recovers_first_attempt_after_crash(retry_engine, provider, store, clock):
    record = new_cash_out(store)
    provider.initiate_results.append(_Crash())

    with pytest.raises(_Crash):
        retry_engine.initiate(record.id)

    stuck = store.find_by_id(record.id)
    assert (stuck.status, stuck.retry_count, stuck.provider_transaction_id) == ("processing", 0, None)
    assert retry_engine.process_pending_retries()["total"] == 0

    clock.advance(minutes=5)
    stats = retry_engine.process_pending_retries()

    assert stats == {"total": 1, "processed": 1, "succeeded": 0, "failed": 0, "skipped": 0}
    assert provider.calls == [("initiate", record.reference), ("initiate", record.reference)]
    saved = store.find_by_id(record.id)
    assert saved.provider_transaction_id == f"tx-{record.reference}"
    assert saved.retry_count == 0
    assert saved.next_retry_at is None
