"""
Background stale-job sweeper.

Runs ``JobTracker.sweep_stale`` periodically on a daemon thread, and once
on demand without blocking the caller. Sweep failures go to the log and to
``last_error``; they never reach the code that triggered the sweep.
"""

import logging
import threading
from datetime import timedelta
from typing import Optional

from .jobs import JobTracker, SweepReport

logger = logging.getLogger(__name__)


class StaleJobSweeper:
    """Periodic, fire-and-forget stale-job reclamation."""

    def __init__(self, tracker: JobTracker, stale_after: timedelta, interval: timedelta):
        if stale_after <= timedelta(0):
            raise ValueError("stale_after must be positive")
        if interval <= timedelta(0):
            raise ValueError("interval must be positive")
        self.tracker = tracker
        self.stale_after = stale_after
        self.interval = interval
        self.last_report: Optional[SweepReport] = None
        self.last_error: Optional[BaseException] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep_once(self) -> Optional[SweepReport]:
        """Run one sweep; returns None if it failed."""
        try:
            report = self.tracker.sweep_stale(self.stale_after)
        except Exception as e:
            self.last_error = e
            logger.warning("Stale job sweep failed: %s", e, exc_info=True)
            return None
        self.last_report = report
        self.last_error = None
        return report

    def run_once_in_background(self) -> threading.Thread:
        """Start a single sweep on its own thread and return immediately."""
        thread = threading.Thread(target=self.sweep_once, name="stale-sweep-once", daemon=True)
        thread.start()
        return thread

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Begin sweeping every ``interval`` until ``stop`` is called."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="stale-sweeper", daemon=True)
        self._thread.start()
        logger.info(
            "Stale sweeper started (every %ss, threshold %ss)",
            int(self.interval.total_seconds()), int(self.stale_after.total_seconds()),
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval.total_seconds()):
            self.sweep_once()
