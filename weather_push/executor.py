"""
Job executor for the weather push engine.

Runs one job for one due instant through
pending -> fetching -> resolving -> notifying -> completed | failed.
The One Call forecast is fetched while resolving; losing it only drops the
outlook and alerts from the message.
Executions of the same job are serialized by a per-job lock; different jobs
run concurrently. Every failure is caught here and recorded as the job's
outcome so it can never reach the scheduler loop.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, TypeVar

from .cache import WeatherCache
from .database import Database
from .errors import FetchError, PushServiceUnavailable, StorageError
from .models import (
    ExecutionOutcome,
    ExecutionState,
    Forecast,
    OutcomeReason,
    SchedulerJob,
    WeatherRecord,
)
from .notifier import NotificationFanout, build_message, needs_forecast, should_notify

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobExecutor:
    """
    Executes scheduled forecast jobs.

    Per-job locks are created lazily and kept for the lifetime of the
    process, so their number is bounded by the number of jobs.
    """

    def __init__(
        self,
        database: Database,
        cache: WeatherCache,
        fanout: NotificationFanout,
        fetch_max_attempts: int = 3,
        fetch_backoff_seconds: float = 1.0,
        fetch_backoff_max_seconds: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow
    ):
        self.database = database
        self.cache = cache
        self.fanout = fanout
        self.fetch_max_attempts = fetch_max_attempts
        self.fetch_backoff_seconds = fetch_backoff_seconds
        self.fetch_backoff_max_seconds = fetch_backoff_max_seconds
        self._sleep = sleep
        self._clock = clock

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._running: Set[str] = set()
        self._running_guard = threading.Lock()

    def _job_lock(self, job_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = self._locks[job_id] = threading.Lock()
            return lock

    def running_jobs(self) -> List[str]:
        """Ids of jobs currently executing."""
        with self._running_guard:
            return sorted(self._running)

    def execute(self, job: SchedulerJob, due_at: Optional[datetime] = None) -> ExecutionOutcome:
        """Run a job for one due instant and record its outcome."""
        due_at = due_at or self._clock()
        outcome = ExecutionOutcome(job_id=job.id, due_at=due_at)
        outcome.transitions.append(ExecutionState.PENDING)

        with self._job_lock(job.id):
            with self._running_guard:
                self._running.add(job.id)
            outcome.started_at = self._clock()
            logger.info(f"Running job {job.id} ({job.name}) for {job.city} due {due_at.isoformat()}")
            try:
                self._run(job, outcome)
            except StorageError as e:
                logger.error(f"Job {job.id} storage error: {e}")
                self._fail(outcome, OutcomeReason.STORAGE_ERROR, str(e))
            except Exception as e:
                logger.exception(f"Job {job.id} crashed")
                self._fail(outcome, OutcomeReason.INTERNAL_ERROR, str(e))
            finally:
                outcome.finished_at = self._clock()
                with self._running_guard:
                    self._running.discard(job.id)

            self._record(outcome)

        logger.info(
            f"Job {job.id} {outcome.state.value} ({outcome.reason.value if outcome.reason else '-'}): "
            f"{outcome.notified} notified, {outcome.failed} failed"
        )
        return outcome

    def _transition(self, outcome: ExecutionOutcome, state: ExecutionState) -> None:
        outcome.state = state
        outcome.transitions.append(state)
        logger.debug(f"Job {outcome.job_id} -> {state.value}")

    def _fail(self, outcome: ExecutionOutcome, reason: OutcomeReason, error: str) -> None:
        self._transition(outcome, ExecutionState.FAILED)
        outcome.reason = reason
        outcome.error = error

    def _complete(self, outcome: ExecutionOutcome, reason: OutcomeReason) -> None:
        self._transition(outcome, ExecutionState.COMPLETED)
        outcome.reason = reason

    def _run(self, job: SchedulerJob, outcome: ExecutionOutcome) -> None:
        self._transition(outcome, ExecutionState.FETCHING)
        try:
            record = self._fetch(job, outcome.due_at)
        except FetchError as e:
            self._fail(outcome, OutcomeReason.UPSTREAM_FETCH_FAILED, str(e))
            return

        self._transition(outcome, ExecutionState.RESOLVING)
        devices = []
        if job.enabled:
            devices = [d for d in self.database.get_notification_targets(job.city)
                       if d.is_target_for(job.city)]
        if not devices:
            logger.info(f"Job {job.id}: no devices subscribed to {job.city}")
            self._complete(outcome, OutcomeReason.NO_TARGETS)
            return

        forecast = self._fetch_forecast(job, record) if needs_forecast(job) else None
        if not should_notify(record, job, forecast):
            logger.info(f"Job {job.id}: notification suppressed by notify rules")
            self._complete(outcome, OutcomeReason.SUPPRESSED)
            return

        self._transition(outcome, ExecutionState.NOTIFYING)
        try:
            result = self.fanout.dispatch(build_message(job, record, forecast), devices)
        except PushServiceUnavailable as e:
            outcome.failed = len(devices)
            self._fail(outcome, OutcomeReason.PUSH_SERVICE_UNAVAILABLE, str(e))
            return

        outcome.deliveries = result.deliveries
        outcome.notified = result.notified
        outcome.failed = result.failed
        outcome.permanent_failures = result.permanent_failures
        self._complete(outcome, OutcomeReason.DELIVERED)

    def _fetch(self, job: SchedulerJob, as_of: datetime) -> WeatherRecord:
        """Fetch through the cache, retrying transient failures with backoff."""
        return self._with_retries(
            job, "fetch", lambda: self.cache.get_or_fetch(job.city, job.units, as_of)
        )

    def _fetch_forecast(self, job: SchedulerJob, record: WeatherRecord) -> Optional[Forecast]:
        """
        Fetch the outlook for the record's coordinates.

        A failure here degrades the notification to current conditions
        instead of failing the execution.
        """
        try:
            return self._with_retries(job, "forecast", lambda: self.cache.provider.fetch_forecast(
                record.lat, record.lon, job.units,
                include_daily=job.include_daily,
                include_hourly=job.include_hourly,
                city=job.city,
            ))
        except FetchError as e:
            logger.warning(f"Job {job.id}: forecast unavailable, notifying with current conditions: {e}")
            return None

    def _with_retries(self, job: SchedulerJob, what: str, call: Callable[[], T]) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return call()
            except FetchError as e:
                if not e.transient:
                    logger.error(f"Job {job.id}: {what} failed for {job.city}, not retrying: {e}")
                    raise
                if attempt >= self.fetch_max_attempts:
                    logger.error(f"Job {job.id}: {what} failed after {attempt} attempts: {e}")
                    raise
                delay = min(
                    self.fetch_backoff_seconds * (2 ** (attempt - 1)),
                    self.fetch_backoff_max_seconds
                )
                logger.warning(f"Job {job.id}: transient {what} failure ({e}), retrying in {delay:.1f}s")
                self._sleep(delay)

    def _record(self, outcome: ExecutionOutcome) -> None:
        try:
            self.database.record_job_run(outcome)
        except StorageError as e:
            logger.error(f"Failed to record outcome for job {outcome.job_id}: {e}")
