# tests/conftest.py

import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient

from cashout.errors import TRANSIENT_CODES
from cashout.providers.base import ProviderCallback, ProviderResult
from cashout.reconcile.engine import ReconciliationEngine
from cashout.records.memory import InMemoryCashOutStore
from cashout.records.model import CashOutRecord
from cashout.records.service import create_cash_out
from cashout.retry.engine import RetryEngine
from cashout.retry.policy import RetryPolicy
from cashout.runtime import CashOutRuntime, get_runtime
from cashout.workers.supervisor import CashOutSupervisor
from cashout.workers.timers import ManualDeferrer
from services.audit_log import InMemoryAuditLogger
from services.events import InMemoryEventPublisher
from services.metrics import reset_metrics
from settings import settings


ADMIN_KEY = "test-admin-key"
T0 = datetime(2026, 1, 12, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedProvider:
    """
    Provider double: queued results (ProviderResult or an exception to raise)
    are consumed in order; when a queue is empty the default applies.
    """

    def __init__(self, name: str = "orange_money"):
        self.name = name
        self.initiate_results: list[Any] = []
        self.status_results: list[Any] = []
        self.default_status = "processing"
        self.calls: list[tuple[str, str]] = []

    def _next(self, queue: list[Any], default: ProviderResult) -> ProviderResult:
        item = queue.pop(0) if queue else default
        if isinstance(item, BaseException):
            raise item
        return item

    def initiate(self, record: CashOutRecord) -> ProviderResult:
        self.calls.append(("initiate", record.reference))
        return self._next(
            self.initiate_results,
            ProviderResult(status="processing", provider_transaction_id=f"tx-{record.reference}"),
        )

    def check_status(self, provider_transaction_id: str) -> ProviderResult:
        self.calls.append(("status", provider_transaction_id))
        return self._next(
            self.status_results,
            ProviderResult(status=self.default_status, provider_transaction_id=provider_transaction_id),
        )

    def parse_callback(self, payload: dict[str, Any]) -> ProviderCallback:
        return ProviderCallback(
            reference=payload.get("reference"),
            provider_transaction_id=payload.get("transactionId"),
            status=payload.get("status", "pending"),
            payload=payload,
        )


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryCashOutStore:
    return InMemoryCashOutStore(clock=clock)


@pytest.fixture
def audit() -> InMemoryAuditLogger:
    return InMemoryAuditLogger()


@pytest.fixture
def events() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()


@pytest.fixture
def deferrer() -> ManualDeferrer:
    return ManualDeferrer()


@pytest.fixture
def providers() -> dict[str, ScriptedProvider]:
    return {
        "orange_money": ScriptedProvider("orange_money"),
        "afrimoney": ScriptedProvider("afrimoney"),
    }


@pytest.fixture
def provider(providers) -> ScriptedProvider:
    return providers["orange_money"]


@pytest.fixture
def resolver(providers):
    return lambda name: providers.get(name)


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(
        max_retries=3,
        initial_delay_ms=30_000,
        max_delay_ms=3_600_000,
        retryable_codes=frozenset(TRANSIENT_CODES),
        claim_lease_ms=300_000,
    )


@pytest.fixture
def retry_engine(store, policy, resolver, audit, events, deferrer, clock) -> RetryEngine:
    return RetryEngine(
        store,
        policy=policy,
        provider_resolver=resolver,
        audit=audit,
        events=events,
        deferrer=deferrer,
        clock=clock,
    )


@pytest.fixture
def reconciliation_engine(store, resolver, audit, events, clock) -> ReconciliationEngine:
    return ReconciliationEngine(
        store,
        provider_resolver=resolver,
        audit=audit,
        events=events,
        clock=clock,
        batch_size=100,
        max_age_days=7,
    )


@pytest.fixture
def supervisor(retry_engine, reconciliation_engine, deferrer) -> CashOutSupervisor:
    return CashOutSupervisor(
        retry_engine,
        reconciliation_engine,
        deferrer=deferrer,
        retry_interval_ms=60_000,
        reconcile_interval_ms=3_600_000,
        providers=["orange_money", "afrimoney"],
    )


@pytest.fixture
def runtime(store, audit, events, retry_engine, reconciliation_engine, supervisor) -> CashOutRuntime:
    return CashOutRuntime(
        store=store,
        audit=audit,
        events=events,
        retry=retry_engine,
        reconciliation=reconciliation_engine,
        supervisor=supervisor,
    )


@pytest.fixture
def client(runtime, monkeypatch) -> TestClient:
    from main import app

    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY, raising=False)
    app.dependency_overrides[get_runtime] = lambda: runtime
    # raise_server_exceptions=False so tests can assert 500s
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Key": ADMIN_KEY}


# ---------------------------
# Record helpers
# ---------------------------

def new_cash_out(store, *, provider: str = "orange_money", amount: str = "100.00", **kwargs) -> CashOutRecord:
    params = {
        "user_id": "user-1",
        "wallet_id": "wallet-1",
        "amount": amount,
        "currency": "XOF",
        "provider": provider,
        "provider_account_id": "+22890000001",
        "provider_account_name": "Ama Mensah",
        "reference": f"CASH-T-{uuid.uuid4().hex[:12]}",
    }
    params.update(kwargs)
    return create_cash_out(store, **params)


def put(store, record: CashOutRecord, **changes) -> CashOutRecord:
    """Force a stored record into a given shape (bypasses the state machine)."""
    return store.save(replace(record, **changes), record.version)


def in_processing(
    store,
    *,
    retry_count: int = 0,
    next_retry_at: Optional[datetime] = None,
    provider_transaction_id: Optional[str] = None,
    **kwargs,
) -> CashOutRecord:
    record = new_cash_out(store, **kwargs)
    return put(
        store,
        record,
        status="processing",
        retry_count=retry_count,
        next_retry_at=next_retry_at,
        provider_transaction_id=provider_transaction_id,
    )
