# scripts/cashout_worker.py
from __future__ import annotations

import logging
import signal

from cashout.runtime import build_runtime
from settings import settings, validate_env_settings


logger = logging.getLogger("cashout.worker")


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO),
        format="%(levelname)s %(name)s: %(message)s",
    )
    validate_env_settings()
    runtime = build_runtime()
    supervisor = runtime.supervisor

    def _shutdown(signum, _frame):
        logger.info("cash-out worker received signal=%s, stopping", signum)
        supervisor.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    logger.info(
        "cash-out worker starting retry_interval_ms=%s reconcile_interval_ms=%s",
        settings.RETRY_SWEEP_INTERVAL_MS,
        settings.RECONCILE_INTERVAL_MS,
    )
    supervisor.run_forever()


if __name__ == "__main__":
    main()
