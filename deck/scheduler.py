from __future__ import annotations

import logging
import threading
from typing import Optional

from deck.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, interval_seconds: int) -> None:
        self.sync_engine = sync_engine
        self.interval_seconds = max(30, int(interval_seconds))
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="deck-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def run_once(self, trigger: str = "scheduled") -> int:
        try:
            results = self.sync_engine.sync_all_users(trigger=trigger)
        except Exception:
            logger.exception("scheduled sync pass failed")
            return 0
        failures = sum(1 for outcomes in results.values() for outcome in outcomes if not outcome.ok)
        if failures:
            logger.warning("%s sync pass finished with %d failed accounts", trigger, failures)
        return len(results)

    def _loop(self) -> None:
        while not self._stop_event.wait(timeout=self.interval_seconds):
            self.run_once()
