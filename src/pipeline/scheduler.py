"""Cancellable periodic task on a background thread."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

log = logging.getLogger("scheduler")


class PeriodicTask:
    """Calls ``fn`` every ``interval_sec`` until stopped.

    ``run_now()`` invokes the task synchronously on the caller's thread and
    never overlaps with a scheduled tick.  Exceptions from ``fn`` are logged;
    the schedule keeps going.
    """

    def __init__(self, name: str, interval_sec: float, fn: Callable[[], Any],
                 run_on_start: bool = False):
        if interval_sec <= 0:
            raise ValueError("interval_sec must be positive")
        self.name = name
        self.interval_sec = interval_sec
        self.fn = fn
        self.run_on_start = run_on_start
        self.runs = 0
        self.last_result: Any = None
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"periodic-{self.name}", daemon=True)
        self._thread.start()
        log.info("Scheduled %s every %.0fs", self.name, self.interval_sec)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        log.info("Stopped %s", self.name)

    def run_now(self) -> Any:
        with self._lock:
            try:
                self.last_result = self.fn()
            except Exception as e:
                log.error("%s run failed: %s", self.name, e)
                self.last_result = None
            self.runs += 1
            return self.last_result

    def _loop(self) -> None:
        if self.run_on_start and not self._stop.is_set():
            self.run_now()
        while not self._stop.wait(self.interval_sec):
            self.run_now()
