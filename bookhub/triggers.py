from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from .log import get_logger

log = get_logger(__name__)

TimerFactory = Callable[[float, Callable[[], None]], threading.Timer]


def daemon_timer(delay_s: float, fn: Callable[[], None]) -> threading.Timer:
    t = threading.Timer(delay_s, fn)
    t.daemon = True
    return t


class Debouncer:
    """Runs ``callback`` once ``delay_s`` after the last :meth:`trigger` call.

    Each trigger while a call is pending restarts the delay, so a burst of
    events collapses into a single call.
    """

    def __init__(self, delay_s: float, callback: Callable[[], None], *, timer_factory: TimerFactory = daemon_timer):
        self.delay_s = max(0.0, float(delay_s))
        self.callback = callback
        self._timer_factory = timer_factory
        self._timer: Optional[threading.Timer] = None
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def trigger(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            generation = self._generation
            self._timer = self._timer_factory(self.delay_s, lambda: self._fire(generation))
            self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _fire(self, generation: int) -> None:
        with self._lock:
            # A timer that was replaced or cancelled after it started running.
            if generation != self._generation:
                return
            self._timer = None
        self.callback()


class PeriodicTimer:
    """Calls ``callback`` every ``interval_s`` seconds on a daemon thread until stopped."""

    def __init__(self, interval_s: float, callback: Callable[[], None], *, name: str = "bookhub-periodic"):
        self.interval_s = max(1.0, float(interval_s))
        self.callback = callback
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        log.info("Periodic sync every %d minute(s).", max(1, int(self.interval_s // 60)))

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                self.callback()
            except Exception:
                log.exception("Periodic sync callback failed")


class FocusTrigger:
    """Fires ``callback`` on focus, at most once per ``cooldown_s``."""

    def __init__(self, cooldown_s: float, callback: Callable[[], None], *, clock: Callable[[], float] = time.monotonic):
        self.cooldown_s = max(0.0, float(cooldown_s))
        self.callback = callback
        self._clock = clock
        self._last: Optional[float] = None

    def fire(self) -> bool:
        now = self._clock()
        if self._last is not None and now - self._last < self.cooldown_s:
            log.debug("Focus sync skipped (cooldown %.0fs).", self.cooldown_s)
            return False
        self._last = now
        self.callback()
        return True
