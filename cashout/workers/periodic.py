# cashout/workers/periodic.py
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from services.observability import new_request_id, request_context

logger = logging.getLogger("cashout.workers")


class PeriodicTask:
    """
    Runs `fn` every `interval_s` on a daemon thread until stop().

    A failing tick is logged and the next tick runs on schedule.
    """

    def __init__(self, name: str, interval_s: float, fn: Callable[[], Any], *, run_immediately: bool = False):
        self.name = name
        self.interval_s = float(interval_s)
        self.fn = fn
        self.run_immediately = run_immediately
        self.ticks = 0
        self.last_result: Any = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "PeriodicTask":
        if self.running:
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"cashout-{self.name}", daemon=True)
        self._thread.start()
        logger.info("periodic task started name=%s interval_s=%s", self.name, self.interval_s)
        return self

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("periodic task stopped name=%s ticks=%s", self.name, self.ticks)

    def tick(self) -> Any:
        try:
            with request_context(new_request_id(self.name)):
                self.last_result = self.fn()
            return self.last_result
        except Exception:
            logger.exception("periodic task tick failed name=%s", self.name)
            return None
        finally:
            self.ticks += 1

    def _loop(self) -> None:
        if self.run_immediately:
            self.tick()
        while not self._stop.wait(self.interval_s):
            self.tick()
