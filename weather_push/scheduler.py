"""
Cron scheduling for forecast jobs.

Due instants are computed per job in the job's own timezone using
APScheduler's CronTrigger, so daylight saving transitions are handled per
job. The scheduler works on an immutable snapshot of enabled jobs that is
replaced on a bounded refresh interval; each tick advances a job's
last-evaluated instant before returning its triggers, so a slow execution
is never re-triggered for the same instant.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Deque, Dict, Iterable, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from .errors import ValidationError
from .models import VALID_UNITS, SchedulerJob

logger = logging.getLogger(__name__)

CATCH_UP_LATEST = "latest"  # fire only the most recent missed instant
CATCH_UP_ALL = "all"        # fire every missed instant, capped
CATCH_UP_POLICIES = (CATCH_UP_LATEST, CATCH_UP_ALL)

# Crontab weekday numbering: 0 and 7 are Sunday
DOW_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
MAX_SCAN_INSTANTS = 100000
# Backward windows searched for the most recent due instant, in seconds
LOOKBACK_WINDOWS = (60, 3600, 86400, 7 * 86400, 31 * 86400, 366 * 86400)
MAX_ADVANCE_ATTEMPTS = 24


@dataclass(frozen=True)
class Trigger:
    """One due instant of one job."""
    job: SchedulerJob
    due_at: datetime


# =============================================================================
# Cron Expressions
# =============================================================================

def _parse_weekday(token: str) -> int:
    token = token.strip().lower()
    if token.isdigit():
        value = int(token)
        if value > 7:
            raise ValueError(f"day of week out of range: {token}")
        return value % 7
    if token[:3] in DOW_NAMES:
        return DOW_NAMES.index(token[:3])
    raise ValueError(f"invalid day of week: {token}")


def _convert_day_of_week(field: str) -> str:
    """Translate a crontab day-of-week field to APScheduler weekday names."""
    if field in ("*", "?"):
        return "*"

    days = set()
    for part in field.split(","):
        span, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if step < 1:
            raise ValueError(f"invalid step in day of week: {part}")
        if span == "*":
            first, last = 0, 6
        elif "-" in span:
            start, end = span.split("-", 1)
            first = _parse_weekday(start)
            last = 7 if end.strip() == "7" else _parse_weekday(end)
            if last < first:
                raise ValueError(f"invalid day of week range: {span}")
        else:
            first = _parse_weekday(span)
            last = 6 if step_text else first
        days.update(day % 7 for day in range(first, last + 1, step))

    return ",".join(DOW_NAMES[day] for day in sorted(days))


def _load_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"Invalid timezone: {name}") from e


@lru_cache(maxsize=512)
def build_trigger(cron: str, timezone: str) -> CronTrigger:
    """
    Build a CronTrigger from a 5-field crontab or 6-field (seconds first)
    expression.
    """
    tz = _load_timezone(timezone)
    fields = (cron or "").split()
    if len(fields) == 5:
        second = "0"
        minute, hour, day, month, day_of_week = fields
    elif len(fields) == 6:
        second, minute, hour, day, month, day_of_week = fields
    else:
        raise ValidationError(
            f"Invalid cron expression {cron!r}: expected 5 or 6 fields, got {len(fields)}"
        )

    try:
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_convert_day_of_week(day_of_week),
            timezone=tz,
        )
    except ValueError as e:
        raise ValidationError(f"Invalid cron expression {cron!r}: {e}") from e


def next_fire_time(cron: str, timezone: str, after: datetime) -> Optional[datetime]:
    """
    First instant strictly after `after` at which the cron expression fires
    in the given timezone. Returns None if the expression never fires again.
    """
    if after.tzinfo is None:
        raise ValueError("after must be timezone-aware")
    trigger = build_trigger(cron, timezone)
    start = after + timedelta(microseconds=1)
    step = timedelta(seconds=1)
    for _ in range(MAX_ADVANCE_ATTEMPTS):
        fire = trigger.get_next_fire_time(None, start)
        if fire is None or fire > after:
            return fire
        # Repeated wall-clock hour after a DST fall-back can map back onto after
        start = max(fire, after) + step
        step *= 2
    raise ValidationError(f"Cron expression {cron!r} does not advance past {after.isoformat()}")


def validate_job(job: SchedulerJob) -> None:
    """Admission-time validation; raises ValidationError."""
    if not job.name or not job.name.strip():
        raise ValidationError("Job name must not be empty")
    if not job.city or not job.city.strip():
        raise ValidationError("Job city must not be empty")
    if job.units not in VALID_UNITS:
        raise ValidationError(f"Invalid units: {job.units}")
    build_trigger(job.cron, job.timezone)


# =============================================================================
# Scheduler
# =============================================================================

class CronScheduler:
    """
    Computes due instants for a snapshot of enabled jobs.

    The snapshot is replaced wholesale by refresh(); tick() never reads live
    job state. Jobs that fail validation are skipped and reported through
    invalid_jobs instead of raising out of the tick.
    """

    def __init__(self, catch_up: str = CATCH_UP_LATEST, max_catch_up: int = 10):
        if catch_up not in CATCH_UP_POLICIES:
            raise ValidationError(f"Invalid catch-up policy: {catch_up}")
        self.catch_up = catch_up
        self.max_catch_up = max_catch_up
        self._lock = threading.Lock()
        self._snapshot: Tuple[SchedulerJob, ...] = ()
        self._snapshot_at: Optional[datetime] = None
        self._last_evaluated: Dict[str, datetime] = {}
        self._signatures: Dict[str, Tuple[str, str]] = {}
        # Ids ever installed; a persisted baseline only applies before first sight
        self._seen: Set[str] = set()
        self._invalid: Dict[str, str] = {}

    def refresh(
        self,
        jobs: Iterable[SchedulerJob],
        now: datetime,
        last_due: Optional[Dict[str, datetime]] = None
    ) -> None:
        """
        Install a new snapshot of jobs.

        Jobs seen for the first time start from their persisted last due
        instant when available. Re-enabled jobs and jobs whose schedule
        changed start from now, so instants inside a disabled period never
        fire.
        """
        last_due = last_due or {}
        enabled = tuple(job for job in jobs if job.enabled)

        with self._lock:
            invalid = {}
            for job in enabled:
                try:
                    validate_job(job)
                except ValidationError as e:
                    invalid[job.id] = str(e)
                    continue
                signature = (job.cron, job.timezone)
                if self._signatures.get(job.id) != signature:
                    baseline = None if job.id in self._seen else last_due.get(job.id)
                    if baseline is None:
                        baseline = now
                    self._last_evaluated[job.id] = baseline
                    self._signatures[job.id] = signature
                    self._seen.add(job.id)

            live = {job.id for job in enabled}
            for job_id in list(self._last_evaluated):
                if job_id not in live:
                    del self._last_evaluated[job_id]
                    self._signatures.pop(job_id, None)

            for job_id, reason in invalid.items():
                if job_id not in self._invalid:
                    logger.error(f"Skipping job {job_id}: {reason}")

            self._invalid = invalid
            self._snapshot = enabled
            self._snapshot_at = now

        logger.debug(f"Job snapshot refreshed: {len(enabled)} enabled, {len(invalid)} invalid")

    def tick(self, now: datetime) -> List[Trigger]:
        """Return one trigger per due instant at or before now."""
        triggers = []
        with self._lock:
            for job in self._snapshot:
                if not job.enabled or job.id in self._invalid:
                    continue
                last = self._last_evaluated.get(job.id, now)
                try:
                    due = self._due_instants(job, last, now)
                except ValidationError as e:
                    self._invalid[job.id] = str(e)
                    logger.error(f"Skipping job {job.id}: {e}")
                    continue
                if not due:
                    continue
                self._last_evaluated[job.id] = due[-1]
                triggers.extend(Trigger(job=job, due_at=instant) for instant in due)
        return triggers

    def _due_instants(self, job: SchedulerJob, last: datetime, now: datetime) -> List[datetime]:
        """
        Due instants in (last, now], keeping the most recent ones allowed by
        the catch-up policy.

        Windows ending at now are widened until they hold enough instants or
        reach last, so a long outage never walks every missed instant.
        """
        limit = 1 if self.catch_up == CATCH_UP_LATEST else self.max_catch_up
        due: Deque[datetime] = deque(maxlen=limit)
        start = last
        scanned = 0
        for window in LOOKBACK_WINDOWS + (None,):
            start = last if window is None else max(last, now - timedelta(seconds=window))
            due.clear()
            scanned = 0
            fire = next_fire_time(job.cron, job.timezone, start)
            while fire is not None and fire <= now and scanned < MAX_SCAN_INSTANTS:
                due.append(fire)
                scanned += 1
                fire = next_fire_time(job.cron, job.timezone, fire)
            if len(due) == limit or start == last:
                break

        if due and start > last:
            logger.warning(
                f"Job {job.id} missed instants since {last.isoformat()}, "
                f"firing {len(due)} (catch-up: {self.catch_up})"
            )
        elif scanned > len(due):
            logger.warning(
                f"Job {job.id} missed {scanned} instants, "
                f"firing {len(due)} (catch-up: {self.catch_up})"
            )
        return list(due)

    def next_run(self, job_id: str) -> Optional[datetime]:
        """Next instant the job will fire, if it is in the snapshot."""
        with self._lock:
            job = next((j for j in self._snapshot if j.id == job_id), None)
            last = self._last_evaluated.get(job_id)
        if job is None or last is None or job_id in self._invalid:
            return None
        return next_fire_time(job.cron, job.timezone, last)

    @property
    def invalid_jobs(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._invalid)

    @property
    def snapshot(self) -> Tuple[SchedulerJob, ...]:
        with self._lock:
            return self._snapshot

    @property
    def snapshot_at(self) -> Optional[datetime]:
        with self._lock:
            return self._snapshot_at
