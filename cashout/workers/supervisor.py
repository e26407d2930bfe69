# cashout/workers/supervisor.py
from __future__ import annotations

import logging
import threading
from typing import Any, Iterable, Optional

from cashout.reconcile.engine import ReconciliationEngine
from cashout.retry.engine import RetryEngine
from cashout.workers.periodic import PeriodicTask
from cashout.workers.timers import Deferrer
from settings import enabled_providers, settings

logger = logging.getLogger("cashout.workers")


class CashOutSupervisor:
    """
    Owns the long-lived work: the retry sweep, the reconciliation sweep and
    the per-record retry timers. Tests call tick_*() instead of start().
    """

    def __init__(
        self,
        retry_engine: RetryEngine,
        reconciliation_engine: ReconciliationEngine,
        *,
        deferrer: Deferrer | None = None,
        retry_interval_ms: int | None = None,
        reconcile_interval_ms: int | None = None,
        providers: Iterable[str] | None = None,
    ):
        self.retry_engine = retry_engine
        self.reconciliation_engine = reconciliation_engine
        self.deferrer = deferrer or retry_engine.deferrer
        self.retry_interval_ms = int(retry_interval_ms or settings.RETRY_SWEEP_INTERVAL_MS)
        self.reconcile_interval_ms = int(reconcile_interval_ms or settings.RECONCILE_INTERVAL_MS)
        self.providers = list(providers) if providers is not None else enabled_providers()
        self._tasks: list[PeriodicTask] = []
        self._stopped = threading.Event()

    @property
    def running(self) -> bool:
        return any(t.running for t in self._tasks)

    def tick_retries(self) -> dict[str, int]:
        return self.retry_engine.process_pending_retries()

    def tick_reconciliation(self) -> dict[str, Any]:
        return self.reconciliation_engine.reconcile_providers(self.providers)

    def start(self) -> "CashOutSupervisor":
        if self.running:
            return self
        self._stopped.clear()
        self._tasks = [
            PeriodicTask("retry-sweep", self.retry_interval_ms / 1000.0, self.tick_retries, run_immediately=True).start(),
            PeriodicTask("reconcile-sweep", self.reconcile_interval_ms / 1000.0, self.tick_reconciliation).start(),
        ]
        logger.info(
            "cash-out supervisor started retry_interval_ms=%s reconcile_interval_ms=%s providers=%s",
            self.retry_interval_ms,
            self.reconcile_interval_ms,
            ",".join(self.providers),
        )
        return self

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        for task in self._tasks:
            task.stop(timeout)
        self._tasks = []
        cancel = getattr(self.deferrer, "cancel_all", None)
        if cancel is not None:
            cancel()
        self._stopped.set()
        logger.info("cash-out supervisor stopped")

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stopped.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("cash-out supervisor interrupted")
        finally:
            if not self._stopped.is_set():
                self.stop()
