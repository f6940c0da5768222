"""
Read-through weather cache with single-flight fetches.

Records are served from weather history when one lies within the staleness
window of the requested instant. On a miss exactly one upstream fetch runs
per (city, units); concurrent callers for the same key wait on the same
in-flight future and receive its result or its exception.
"""

import logging
import threading
import time
from concurrent.futures import Future
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple, Union

from .database import Database
from .errors import BudgetExhaustedError, TransientFetchError
from .models import WeatherRecord, normalize_city

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


class WeatherCache:
    """Weather history backed cache in front of the weather provider."""

    def __init__(
        self,
        database: Database,
        provider,
        staleness_window_seconds: int,
        serve_stale_on_error: bool = False,
        clock: Callable[[], float] = time.time
    ):
        self.database = database
        self.provider = provider
        self.staleness_window_seconds = staleness_window_seconds
        self.serve_stale_on_error = serve_stale_on_error
        self._clock = clock
        self._lock = threading.Lock()
        self._inflight: Dict[CacheKey, Future] = {}
        self._hits = 0
        self._misses = 0
        self._upstream_calls = 0

    def get_or_fetch(
        self,
        city: str,
        units: str,
        as_of: Union[datetime, int, None] = None
    ) -> WeatherRecord:
        """
        Return weather for (city, units) valid at as_of.

        Raises a FetchError subclass when the provider fails and no record
        may be served, StorageError when the history table cannot be read or
        written. Transient failures and an exhausted call budget fall back to
        the latest stored record when serve_stale_on_error is set.
        """
        as_of_ts = self._to_timestamp(as_of)

        cached = self._lookup(city, units, as_of_ts)
        if cached is not None:
            return cached

        key = (normalize_city(city), units)
        with self._lock:
            future = self._inflight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[key] = future

        if not leader:
            logger.debug(f"Joining in-flight fetch for {key}")
            return future.result()

        try:
            record = self._load(city, units, as_of_ts)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(record)
            return record
        finally:
            with self._lock:
                self._inflight.pop(key, None)

    def _to_timestamp(self, as_of: Union[datetime, int, None]) -> int:
        if as_of is None:
            return int(self._clock())
        if isinstance(as_of, datetime):
            return int(as_of.timestamp())
        return int(as_of)

    def _lookup(self, city: str, units: str, as_of_ts: int) -> Optional[WeatherRecord]:
        record = self.database.get_latest_weather(
            city, units, as_of=as_of_ts, max_age_seconds=self.staleness_window_seconds
        )
        with self._lock:
            if record is not None:
                self._hits += 1
            else:
                self._misses += 1
        return record

    def _load(self, city: str, units: str, as_of_ts: int) -> WeatherRecord:
        # A previous leader may have stored the key between our miss and now
        record = self.database.get_latest_weather(
            city, units, as_of=as_of_ts, max_age_seconds=self.staleness_window_seconds
        )
        if record is not None:
            return record

        with self._lock:
            self._upstream_calls += 1
        try:
            record = self.provider.fetch(city, units)
        except (TransientFetchError, BudgetExhaustedError) as e:
            stale = self._stale_fallback(city, units)
            if stale is None:
                raise
            logger.warning(f"Serving stale weather for {city} ({units}) after fetch error: {e}")
            return stale

        record.fetched_at = int(self._clock())
        self.database.upsert_weather(record)
        logger.info(f"Cached weather for {city} ({units}) at {record.timestamp}")
        return record

    def _stale_fallback(self, city: str, units: str) -> Optional[WeatherRecord]:
        if not self.serve_stale_on_error:
            return None
        return self.database.get_latest_weather(city, units)

    def in_flight(self) -> int:
        with self._lock:
            return len(self._inflight)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "hits": self._hits,
                "misses": self._misses,
                "upstream_calls": self._upstream_calls,
                "in_flight": len(self._inflight),
            }
