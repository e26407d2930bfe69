# cashout/workers/timers.py
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Protocol

logger = logging.getLogger("cashout.workers")


class Deferrer(Protocol):
    def call_later(self, delay_s: float, fn: Callable[..., Any], *args: Any) -> None: ...


def _guarded(fn: Callable[..., Any], *args: Any) -> None:
    try:
        fn(*args)
    except Exception:
        logger.exception("deferred call failed fn=%s args=%s", getattr(fn, "__name__", fn), args)


class ThreadingDeferrer:
    """
    Per-record retry timers on threading.Timer. Timers are daemonic and are
    lost on restart; the retry sweep picks those records up again.
    """

    def __init__(self) -> None:
        self._timers: set[threading.Timer] = set()
        self._lock = threading.Lock()

    def call_later(self, delay_s: float, fn: Callable[..., Any], *args: Any) -> None:
        timer: threading.Timer

        def _run() -> None:
            with self._lock:
                self._timers.discard(timer)
            _guarded(fn, *args)

        timer = threading.Timer(max(0.0, float(delay_s)), _run)
        timer.daemon = True
        with self._lock:
            self._timers.add(timer)
        timer.start()

    def pending(self) -> int:
        with self._lock:
            return len(self._timers)

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers)
            self._timers.clear()
        for t in timers:
            t.cancel()


class ManualDeferrer:
    """Collects deferred calls; tests fire them explicitly."""

    def __init__(self) -> None:
        self.calls: list[tuple[float, Callable[..., Any], tuple[Any, ...]]] = []

    def call_later(self, delay_s: float, fn: Callable[..., Any], *args: Any) -> None:
        self.calls.append((float(delay_s), fn, args))

    def run_all(self) -> int:
        calls, self.calls = self.calls, []
        for _, fn, args in calls:
            _guarded(fn, *args)
        return len(calls)

    def cancel_all(self) -> None:
        self.calls.clear()
