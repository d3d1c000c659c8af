"""
Conviction Scheduler
====================
Background tick that keeps conviction scores fresh: every interval it runs a
sweep followed by a threshold check.

A tick that is still running when the next one comes due causes that next
tick to be skipped rather than queued.
"""

from __future__ import annotations

import os
import threading
import time
from datetime import datetime
from typing import Callable, Dict, Optional

import structlog
from prometheus_client import Counter, Gauge

from conviction_engine import ConvictionEngine

log = structlog.get_logger()

SWEEP_INTERVAL_MINUTES = float(os.environ.get("CONVICTION_SWEEP_MINUTES", "15"))

TICKS_RUN     = Counter("conviction_ticks_total", "Scheduler ticks", ["outcome"])
TICKS_SKIPPED = Counter("conviction_ticks_skipped_total", "Ticks skipped because one was still running")
LAST_TICK     = Gauge("conviction_last_tick_timestamp", "Unix time the last tick finished")


class SweepScheduler:
    """Owns the periodic sweep + evaluate loop for one process."""

    def __init__(
        self,
        engine: ConvictionEngine,
        interval_seconds: float = SWEEP_INTERVAL_MINUTES * 60,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"Interval must be > 0 seconds: {interval_seconds}")
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.clock = clock or engine.clock
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_result: Optional[Dict] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            raise RuntimeError("Scheduler already running")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="conviction-sweep", daemon=True)
        self._thread.start()
        log.info("scheduler_started", interval_seconds=self.interval_seconds)

    def stop(self, timeout: float = 5.0):
        if not self.running:
            return
        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None
        log.info("scheduler_stopped")

    def _loop(self):
        # First tick fires one interval after start.
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception as e:
                TICKS_RUN.labels(outcome="error").inc()
                log.error("tick_failed", error=str(e))

    def run_once(self, now: Optional[datetime] = None) -> Optional[Dict]:
        """
        Run one sweep + threshold check. Returns None if another tick holds
        the lock.
        """
        if not self._tick_lock.acquire(blocking=False):
            TICKS_SKIPPED.inc()
            log.warning("tick_skipped", reason="previous tick still running")
            return None
        try:
            now = now if now is not None else self.clock()
            started = time.monotonic()
            sweep = self.engine.sweep(now)
            evaluation = self.engine.check_thresholds(now)
            self.last_result = {
                "ran_at": now.isoformat(),
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
                "sweep": sweep,
                "evaluation": evaluation,
            }
            TICKS_RUN.labels(outcome="ok").inc()
            LAST_TICK.set_to_current_time()
            return self.last_result
        finally:
            self._tick_lock.release()

    def status(self) -> Dict:
        return {
            "status": "running" if self.running else "stopped",
            "interval_seconds": self.interval_seconds,
            "last_run": self.last_result["ran_at"] if self.last_result else None,
        }
