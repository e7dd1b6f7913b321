# backend/escrowbook/core/periodic.py
"""
Owned background loop with an explicit start/stop lifecycle.

Used when the scheduler tick or the ledger monitor runs in-process
instead of under Celery beat.
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicRunner:
    """Run ``target`` every ``interval_seconds`` on a daemon thread until stopped."""

    def __init__(self, name: str, target: Callable[[], object], interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self._target = target
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=self.name)
        self._thread.start()
        logger.info("Periodic runner started", extra={"runner": self.name})

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
        self._thread = None
        logger.info("Periodic runner stopped", extra={"runner": self.name})

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._target()
            except Exception as exc:
                # One failed iteration must not kill the loop
                logger.error(
                    "Periodic runner iteration failed",
                    extra={"runner": self.name, "error": str(exc), "error_type": type(exc).__name__},
                    exc_info=True,
                )
            self._stop_event.wait(self.interval_seconds)
