"""
Engine module for the weather push application.

Wires the cron scheduler, job executor, weather cache and notification
fan-out together and drives them:
- A tick job (APScheduler interval trigger) turns due instants into executions
- A refresh job replaces the job snapshot on a bounded interval
- A daily cleanup job prunes weather history past its retention period
- Executions run on a bounded worker pool, one task per job
  draining that job's backlog, and drain on shutdown
"""

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .budget import ApiCallBudget
from .cache import WeatherCache
from .config import Settings
from .database import Database
from .errors import StorageError
from .executor import JobExecutor, utcnow
from .models import ExecutionOutcome, SchedulerJob
from .notifier import NotificationFanout
from .provider import OpenWeatherMapClient
from .push import ExpoPushClient
from .scheduler import CATCH_UP_LATEST, CronScheduler, Trigger

logger = logging.getLogger(__name__)


class ForecastEngine:
    """
    Runs scheduled forecast jobs.

    Due jobs are identified once per tick and executed on a pool of at most
    max_concurrent_executions workers. Job-set changes become visible on the
    next refresh, at most job_refresh_seconds later.
    """

    def __init__(
        self,
        database: Database,
        cron: CronScheduler,
        executor: JobExecutor,
        tick_seconds: float = 60.0,
        job_refresh_seconds: float = 300.0,
        max_concurrent_executions: int = 4,
        shutdown_grace_seconds: float = 30.0,
        history_retention_days: int = 30,
        budget: Optional[ApiCallBudget] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.database = database
        self.cron = cron
        self.executor = executor
        self.tick_seconds = tick_seconds
        self.job_refresh_seconds = job_refresh_seconds
        self.max_concurrent_executions = max_concurrent_executions
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.history_retention_days = history_retention_days
        self.budget = budget
        self._clock = clock

        self._driver = BackgroundScheduler(timezone=timezone.utc)
        self._workers: Optional[ThreadPoolExecutor] = None
        self._in_flight: Set[Future] = set()
        self._in_flight_lock = threading.Lock()
        # Per-job backlog; a job id in _active has exactly one worker task draining it
        self._pending: Dict[str, Deque[Trigger]] = {}
        self._active: Set[str] = set()
        self._is_running = False
        self._last_tick_at: Optional[datetime] = None

    @classmethod
    def from_settings(cls, settings: Settings, database: Database) -> "ForecastEngine":
        """Build an engine and its collaborators from settings."""
        budget = ApiCallBudget(settings.daily_call_budget)
        provider = OpenWeatherMapClient(
            api_key=settings.openweathermap_api_key,
            url=settings.openweathermap_url,
            timeout=settings.http_timeout_seconds,
            onecall_url=settings.openweathermap_onecall_url,
            budget=budget,
        )
        push_client = ExpoPushClient(
            url=settings.expo_push_url,
            timeout=settings.delivery_timeout_seconds,
        )
        cache = WeatherCache(
            database=database,
            provider=provider,
            staleness_window_seconds=settings.staleness_window_seconds,
            serve_stale_on_error=settings.serve_stale_on_error,
        )
        fanout = NotificationFanout(
            push_client=push_client,
            parallelism=settings.fanout_parallelism,
            delivery_timeout=settings.delivery_timeout_seconds,
            max_attempts=settings.delivery_max_attempts,
            backoff_seconds=settings.delivery_backoff_seconds,
        )
        executor = JobExecutor(
            database=database,
            cache=cache,
            fanout=fanout,
            fetch_max_attempts=settings.fetch_max_attempts,
            fetch_backoff_seconds=settings.fetch_backoff_seconds,
            fetch_backoff_max_seconds=settings.fetch_backoff_max_seconds,
        )
        cron = CronScheduler(catch_up=settings.catch_up, max_catch_up=settings.max_catch_up)
        return cls(
            database=database,
            cron=cron,
            executor=executor,
            tick_seconds=settings.tick_seconds,
            job_refresh_seconds=settings.job_refresh_seconds,
            max_concurrent_executions=settings.max_concurrent_executions,
            shutdown_grace_seconds=settings.shutdown_grace_seconds,
            history_retention_days=settings.history_retention_days,
            budget=budget,
        )

    # =========================================================================
    # Driver Jobs
    # =========================================================================

    def refresh_jobs(self, now: Optional[datetime] = None) -> int:
        """Replace the job snapshot from the job store; returns its size."""
        now = now or self._clock()
        try:
            jobs = self.database.get_enabled_jobs()
            last_due = self.database.get_last_due_instants()
        except StorageError as e:
            logger.error(f"Job refresh failed, keeping previous snapshot: {e}")
            return len(self.cron.snapshot)
        self.cron.refresh(jobs, now, last_due)
        return len(self.cron.snapshot)

    def cleanup_history(self, now: Optional[datetime] = None) -> int:
        """Delete weather history older than the retention period."""
        now = now or self._clock()
        cutoff = int(now.timestamp()) - self.history_retention_days * 86400
        try:
            deleted = self.database.cleanup_weather(cutoff)
        except StorageError as e:
            logger.error(f"Weather history cleanup failed: {e}")
            return 0
        if deleted:
            logger.info(f"Cleaned up {deleted} weather record(s) older than {self.history_retention_days} days")
        return deleted

    def run_tick(self, now: Optional[datetime] = None) -> List[Future]:
        """
        Submit due triggers, one worker task per job.

        Triggers of a job that is already queued or running join its backlog
        instead of occupying another worker.
        """
        now = now or self._clock()
        self._last_tick_at = now
        by_job: Dict[str, List[Trigger]] = {}
        for trigger in self.cron.tick(now):
            by_job.setdefault(trigger.job.id, []).append(trigger)

        futures = []
        for job_id, triggers in by_job.items():
            future = self._submit(job_id, triggers)
            if future is not None:
                futures.append(future)
        if by_job:
            logger.info(f"Tick {now.isoformat()}: {len(by_job)} job(s) due, {len(futures)} submitted")
        return futures

    def _submit(self, job_id: str, triggers: List[Trigger]) -> Optional[Future]:
        with self._in_flight_lock:
            backlog = self._pending.setdefault(job_id, deque())
            backlog.extend(triggers)
            limit = 1 if self.cron.catch_up == CATCH_UP_LATEST else self.cron.max_catch_up
            dropped = 0
            while len(backlog) > limit:
                backlog.popleft()
                dropped += 1
            if dropped:
                logger.warning(f"Job {job_id} backlog full, dropped {dropped} older instant(s)")
            if job_id in self._active:
                return None
            self._active.add(job_id)

        workers = self._ensure_workers()
        try:
            future = workers.submit(self._drain, job_id)
        except RuntimeError:
            logger.warning(f"Engine shutting down, dropping triggers for job {job_id}")
            with self._in_flight_lock:
                self._active.discard(job_id)
                self._pending.pop(job_id, None)
            return None
        with self._in_flight_lock:
            self._in_flight.add(future)
        future.add_done_callback(self._discard)
        return future

    def _discard(self, future: Future) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(future)

    def _drain(self, job_id: str) -> List[ExecutionOutcome]:
        """Execute a job's backlog in due order until it is empty."""
        outcomes = []
        try:
            while True:
                with self._in_flight_lock:
                    backlog = self._pending.get(job_id)
                    if not backlog:
                        self._active.discard(job_id)
                        self._pending.pop(job_id, None)
                        return outcomes
                    trigger = backlog.popleft()
                outcomes.append(self.executor.execute(trigger.job, trigger.due_at))
        except Exception:
            with self._in_flight_lock:
                self._active.discard(job_id)
                self._pending.pop(job_id, None)
            raise

    def _ensure_workers(self) -> ThreadPoolExecutor:
        if self._workers is None:
            self._workers = ThreadPoolExecutor(
                max_workers=self.max_concurrent_executions,
                thread_name_prefix="job"
            )
        return self._workers

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the driver loop."""
        if self._is_running:
            logger.warning("Engine already running")
            return

        self.refresh_jobs()
        self._ensure_workers()

        self._driver.add_job(
            self.run_tick,
            trigger=IntervalTrigger(seconds=self.tick_seconds),
            id='tick_job',
            name='Cron tick',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._driver.add_job(
            self.refresh_jobs,
            trigger=IntervalTrigger(seconds=self.job_refresh_seconds),
            id='refresh_job',
            name='Job snapshot refresh',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._driver.add_job(
            self.cleanup_history,
            trigger=IntervalTrigger(hours=24),
            id='cleanup_job',
            name='Weather history cleanup',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        self._driver.start()
        self._is_running = True

        logger.info(f"Engine started: tick every {self.tick_seconds}s, "
                    f"jobs refreshed every {self.job_refresh_seconds}s, "
                    f"{self.max_concurrent_executions} workers")

    def stop(self) -> None:
        """
        Stop issuing ticks and drain in-flight executions.

        Executions still running after the grace period are abandoned and
        their outcome is not recorded.
        """
        if self._is_running:
            self._driver.shutdown(wait=True)
            self._is_running = False

        with self._in_flight_lock:
            queued = sum(len(backlog) for backlog in self._pending.values())
            self._pending.clear()
            in_flight = set(self._in_flight)
        if queued:
            logger.warning(f"Dropping {queued} queued trigger(s) on shutdown")
        if in_flight:
            logger.info(f"Draining {len(in_flight)} execution(s) for up to {self.shutdown_grace_seconds}s")
            _, not_done = wait(in_flight, timeout=self.shutdown_grace_seconds)
            if not_done:
                logger.warning(f"Abandoning {len(not_done)} execution(s) after grace period")

        if self._workers is not None:
            self._workers.shutdown(wait=False, cancel_futures=True)
            self._workers = None
        with self._in_flight_lock:
            self._active.clear()
        logger.info("Engine stopped")

    def run_now(self, job: SchedulerJob) -> ExecutionOutcome:
        """Run a job immediately, serialized with its scheduled executions."""
        return self.executor.execute(job, self._clock())

    def in_flight(self) -> int:
        with self._in_flight_lock:
            return len(self._in_flight)

    def get_status(self) -> Dict[str, Any]:
        """Get engine status information."""
        tick_job = self._driver.get_job('tick_job') if self._is_running else None
        return {
            "is_running": self._is_running,
            "tick_seconds": self.tick_seconds,
            "job_refresh_seconds": self.job_refresh_seconds,
            "catch_up": self.cron.catch_up,
            "scheduled_jobs": len(self.cron.snapshot),
            "invalid_jobs": self.cron.invalid_jobs,
            "running_jobs": self.executor.running_jobs(),
            "in_flight": self.in_flight(),
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "next_tick_at": tick_job.next_run_time.isoformat() if tick_job and tick_job.next_run_time else None,
            "snapshot_at": self.cron.snapshot_at.isoformat() if self.cron.snapshot_at else None,
            "cache": self.executor.cache.stats(),
            "api_budget": {
                "daily_limit": self.budget.daily_limit,
                "used_today": self.budget.used_today(),
                "remaining": self.budget.remaining(),
            } if self.budget else None,
        }

    @property
    def is_running(self) -> bool:
        return self._is_running
