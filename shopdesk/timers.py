"""Periodic background tasks.

Each PeriodicTask runs its callback on a daemon thread every ``interval``
seconds.  A failing tick is logged and the loop carries on; ``stop()``
wakes the thread immediately and joins it with a bounded wait.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run ``fn`` every ``interval`` seconds on a background thread."""

    def __init__(self, name: str, interval: float, fn: Callable[[], object]):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self._fn = fn
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.ticks = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, daemon=True, name=f"shopdesk-{self.name}",
        )
        self._thread.start()
        logger.info("Periodic task started: %s (every %.1fs)", self.name, self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Periodic task %s did not stop within %.1fs", self.name, timeout)
        self._thread = None
        logger.info("Periodic task stopped: %s", self.name)

    def run_once(self) -> bool:
        """Run one tick in the calling thread. Returns False if it failed."""
        self.ticks += 1
        try:
            self._fn()
            return True
        except Exception:
            self.failures += 1
            logger.warning("Periodic task %s tick failed", self.name, exc_info=True)
            return False

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once()
