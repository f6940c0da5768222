"""Daily budget for upstream weather API calls."""

import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class ApiCallBudget:
    """
    Counts upstream API calls per UTC day.

    The counter resets the first time it is touched on a new UTC day. Calls
    refused for being over the limit are still counted, so used_today()
    reports every attempt made.
    """

    def __init__(self, daily_limit: int, clock: Callable[[], float] = time.time):
        self.daily_limit = daily_limit
        self._clock = clock
        self._lock = threading.Lock()
        self._calls = 0
        self._day = self._today()

    def _today(self) -> int:
        return int(self._clock()) // SECONDS_PER_DAY

    def _maybe_reset(self) -> None:
        today = self._today()
        if today != self._day:
            if self._calls:
                logger.info(f"API call budget reset, {self._calls} call(s) used on previous day")
            self._day = today
            self._calls = 0

    def record_call(self) -> bool:
        """Count one call; True if it was within the daily limit."""
        with self._lock:
            self._maybe_reset()
            allowed = self._calls < self.daily_limit
            self._calls += 1
        return allowed

    def remaining(self) -> int:
        with self._lock:
            self._maybe_reset()
            return max(0, self.daily_limit - self._calls)

    def used_today(self) -> int:
        with self._lock:
            self._maybe_reset()
            return self._calls
