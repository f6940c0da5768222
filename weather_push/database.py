"""
Database module for the weather push engine.

Handles SQLite persistence with:
- Device registrations (unique push token, subscribed cities)
- Scheduler jobs and their last execution outcome
- Weather history, unique per (city, timestamp, units)
"""

import json
import sqlite3
import threading
import logging
import time
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone

from .errors import StorageError
from .models import (
    Device,
    ExecutionOutcome,
    NotifyConfig,
    SchedulerJob,
    WeatherRecord,
    normalize_city,
)

logger = logging.getLogger(__name__)

WEATHER_COLUMNS = (
    "city", "lat", "lon", "timestamp", "temperature", "feels_like", "humidity",
    "pressure", "wind_speed", "wind_direction", "clouds", "visibility",
    "description", "icon", "rain_1h", "snow_1h", "units", "fetched_at",
)


class Database:
    """
    SQLite database wrapper with thread-safe operations.

    All sqlite3 errors surface as StorageError so callers can fail the one
    execution that hit them.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = None
        self._connect()
        self._init_schema()
        logger.info(f"Database initialized at {self._db_path}")

    def _connect(self) -> None:
        """Establish database connection with WAL mode."""
        try:
            self._conn = sqlite3.connect(
                self._db_path,
                check_same_thread=False,
                isolation_level=None
            )
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {self._db_path}: {e}") from e
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")

    def _init_schema(self) -> None:
        """Initialize database schema."""
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS devices (
                    id TEXT PRIMARY KEY,
                    token TEXT UNIQUE NOT NULL,
                    platform TEXT NOT NULL,
                    device_name TEXT,
                    app_version TEXT,
                    cities TEXT NOT NULL DEFAULT '[]',
                    units TEXT NOT NULL DEFAULT 'metric',
                    enabled INTEGER NOT NULL DEFAULT 1,
                    registered_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)

            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS scheduler_jobs (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    city TEXT NOT NULL,
                    units TEXT NOT NULL DEFAULT 'metric',
                    cron TEXT NOT NULL,
                    timezone TEXT NOT NULL DEFAULT 'UTC',
                    include_daily INTEGER NOT NULL DEFAULT 1,
                    include_hourly INTEGER NOT NULL DEFAULT 0,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    notify_config TEXT NOT NULL DEFAULT '{}'
                )
            """)

            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS weather_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    city TEXT NOT NULL,
                    lat REAL NOT NULL,
                    lon REAL NOT NULL,
                    timestamp INTEGER NOT NULL,
                    temperature REAL NOT NULL,
                    feels_like REAL NOT NULL,
                    humidity INTEGER NOT NULL,
                    pressure INTEGER NOT NULL,
                    wind_speed REAL NOT NULL,
                    wind_direction INTEGER,
                    clouds INTEGER,
                    visibility INTEGER,
                    description TEXT,
                    icon TEXT,
                    rain_1h REAL,
                    snow_1h REAL,
                    units TEXT NOT NULL DEFAULT 'metric',
                    fetched_at INTEGER NOT NULL,
                    UNIQUE(city, timestamp, units)
                )
            """)

            # Derived state owned by the engine
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS job_runs (
                    job_id TEXT PRIMARY KEY,
                    last_run_at TEXT NOT NULL,
                    last_due_at TEXT NOT NULL,
                    last_status TEXT NOT NULL,
                    last_reason TEXT,
                    notified_count INTEGER NOT NULL DEFAULT 0,
                    failed_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    permanent_failures TEXT NOT NULL DEFAULT '[]',
                    run_count INTEGER NOT NULL DEFAULT 0
                )
            """)

            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_devices_enabled
                ON devices(enabled)
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_enabled
                ON scheduler_jobs(enabled)
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_history_city_units
                ON weather_history(city, units, timestamp)
            """)

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if self._conn is None:
            raise StorageError("Database connection is closed")
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            logger.error(f"Database error: {e}")
            raise StorageError(str(e)) from e

    # =========================================================================
    # Device Operations
    # =========================================================================

    @staticmethod
    def _row_to_device(row: sqlite3.Row) -> Device:
        return Device(
            id=row["id"],
            token=row["token"],
            platform=row["platform"],
            device_name=row["device_name"],
            app_version=row["app_version"],
            cities=json.loads(row["cities"] or "[]"),
            units=row["units"],
            enabled=bool(row["enabled"]),
            registered_at=row["registered_at"],
            updated_at=row["updated_at"],
        )

    def upsert_device(self, device: Device) -> Device:
        """Register a device or update the one already holding its token."""
        now = int(time.time())
        with self._lock:
            existing = self._execute(
                "SELECT id, registered_at FROM devices WHERE token = ?",
                (device.token,)
            ).fetchone()
            if existing:
                device.id = existing["id"]
                device.registered_at = existing["registered_at"]
            else:
                device.registered_at = device.registered_at or now
            device.updated_at = now

            self._execute("""
                INSERT INTO devices
                (id, token, platform, device_name, app_version, cities,
                 units, enabled, registered_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(token) DO UPDATE SET
                    platform = excluded.platform,
                    device_name = excluded.device_name,
                    app_version = excluded.app_version,
                    cities = excluded.cities,
                    units = excluded.units,
                    enabled = excluded.enabled,
                    updated_at = excluded.updated_at
            """, (device.id, device.token, device.platform, device.device_name,
                  device.app_version, json.dumps(device.cities), device.units,
                  1 if device.enabled else 0, device.registered_at,
                  device.updated_at))
        return device

    def get_device_by_token(self, token: str) -> Optional[Device]:
        with self._lock:
            row = self._execute(
                "SELECT * FROM devices WHERE token = ?", (token,)
            ).fetchone()
        return self._row_to_device(row) if row else None

    def get_all_devices(self) -> List[Device]:
        with self._lock:
            rows = self._execute(
                "SELECT * FROM devices ORDER BY registered_at ASC"
            ).fetchall()
        return [self._row_to_device(row) for row in rows]

    def delete_device(self, token: str) -> bool:
        with self._lock:
            cursor = self._execute("DELETE FROM devices WHERE token = ?", (token,))
            return cursor.rowcount > 0

    def get_notification_targets(self, city: str) -> List[Device]:
        """Get enabled devices subscribed to a city."""
        with self._lock:
            rows = self._execute("""
                SELECT * FROM devices
                WHERE enabled = 1
                AND EXISTS (
                    SELECT 1 FROM json_each(devices.cities)
                    WHERE lower(trim(json_each.value)) = ?
                )
                ORDER BY registered_at ASC
            """, (normalize_city(city),)).fetchall()
        return [self._row_to_device(row) for row in rows]

    # =========================================================================
    # Job Operations
    # =========================================================================

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> SchedulerJob:
        return SchedulerJob(
            id=row["id"],
            name=row["name"],
            city=row["city"],
            units=row["units"],
            cron=row["cron"],
            timezone=row["timezone"],
            include_daily=bool(row["include_daily"]),
            include_hourly=bool(row["include_hourly"]),
            enabled=bool(row["enabled"]),
            notify=NotifyConfig.from_dict(json.loads(row["notify_config"] or "{}")),
        )

    def upsert_job(self, job: SchedulerJob) -> SchedulerJob:
        """Insert or replace a scheduler job."""
        with self._lock:
            self._execute("""
                INSERT INTO scheduler_jobs
                (id, name, city, units, cron, timezone, include_daily,
                 include_hourly, enabled, notify_config)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    city = excluded.city,
                    units = excluded.units,
                    cron = excluded.cron,
                    timezone = excluded.timezone,
                    include_daily = excluded.include_daily,
                    include_hourly = excluded.include_hourly,
                    enabled = excluded.enabled,
                    notify_config = excluded.notify_config
            """, (job.id, job.name, job.city, job.units, job.cron, job.timezone,
                  1 if job.include_daily else 0, 1 if job.include_hourly else 0,
                  1 if job.enabled else 0, json.dumps(job.notify.to_dict())))
        return job

    def get_job(self, job_id: str) -> Optional[SchedulerJob]:
        with self._lock:
            row = self._execute(
                "SELECT * FROM scheduler_jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return self._row_to_job(row) if row else None

    def get_all_jobs(self) -> List[SchedulerJob]:
        with self._lock:
            rows = self._execute(
                "SELECT * FROM scheduler_jobs ORDER BY name ASC"
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def get_enabled_jobs(self) -> List[SchedulerJob]:
        """Get all enabled jobs (the schedulable set)."""
        with self._lock:
            rows = self._execute(
                "SELECT * FROM scheduler_jobs WHERE enabled = 1 ORDER BY id ASC"
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def delete_job(self, job_id: str) -> bool:
        with self._lock:
            cursor = self._execute("DELETE FROM scheduler_jobs WHERE id = ?", (job_id,))
            self._execute("DELETE FROM job_runs WHERE job_id = ?", (job_id,))
            return cursor.rowcount > 0

    # =========================================================================
    # Weather History Operations
    # =========================================================================

    def upsert_weather(self, record: WeatherRecord) -> None:
        """Store a weather record; an existing (city, timestamp, units) row is overwritten."""
        record.city = normalize_city(record.city)
        if not record.fetched_at:
            record.fetched_at = int(time.time())
        values = tuple(getattr(record, col) for col in WEATHER_COLUMNS)
        updates = ", ".join(
            f"{col} = excluded.{col}" for col in WEATHER_COLUMNS
            if col not in ("city", "timestamp", "units")
        )
        with self._lock:
            self._execute(f"""
                INSERT INTO weather_history ({", ".join(WEATHER_COLUMNS)})
                VALUES ({", ".join("?" for _ in WEATHER_COLUMNS)})
                ON CONFLICT(city, timestamp, units) DO UPDATE SET {updates}
            """, values)

    def get_latest_weather(
        self,
        city: str,
        units: str,
        as_of: Optional[int] = None,
        max_age_seconds: Optional[int] = None
    ) -> Optional[WeatherRecord]:
        """
        Get the freshest record for (city, units).

        With as_of and max_age_seconds, only records whose timestamp lies
        within max_age_seconds of as_of are considered.
        """
        sql = "SELECT * FROM weather_history WHERE city = ? AND units = ?"
        params: list = [normalize_city(city), units]
        if as_of is not None and max_age_seconds is not None:
            sql += " AND timestamp BETWEEN ? AND ?"
            params += [as_of - max_age_seconds, as_of + max_age_seconds]
        sql += " ORDER BY timestamp DESC, fetched_at DESC LIMIT 1"

        with self._lock:
            row = self._execute(sql, tuple(params)).fetchone()
        if not row:
            return None
        return WeatherRecord(**{col: row[col] for col in WEATHER_COLUMNS})

    def count_weather(self, city: str, units: str) -> int:
        with self._lock:
            return self._execute(
                "SELECT COUNT(*) FROM weather_history WHERE city = ? AND units = ?",
                (normalize_city(city), units)
            ).fetchone()[0]

    def cleanup_weather(self, before_ts: int) -> int:
        """Delete weather records observed before the given timestamp."""
        with self._lock:
            cursor = self._execute(
                "DELETE FROM weather_history WHERE timestamp < ?", (before_ts,)
            )
            return cursor.rowcount

    # =========================================================================
    # Job Run Operations
    # =========================================================================

    def record_job_run(self, outcome: ExecutionOutcome) -> None:
        """Record an execution outcome as the job's last status."""
        finished = outcome.finished_at or datetime.now(timezone.utc)
        with self._lock:
            self._execute("""
                INSERT INTO job_runs
                (job_id, last_run_at, last_due_at, last_status, last_reason,
                 notified_count, failed_count, last_error, permanent_failures,
                 run_count)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                ON CONFLICT(job_id) DO UPDATE SET
                    last_run_at = excluded.last_run_at,
                    last_due_at = excluded.last_due_at,
                    last_status = excluded.last_status,
                    last_reason = excluded.last_reason,
                    notified_count = excluded.notified_count,
                    failed_count = excluded.failed_count,
                    last_error = excluded.last_error,
                    permanent_failures = excluded.permanent_failures,
                    run_count = run_count + 1
            """, (
                outcome.job_id, finished.isoformat(), outcome.due_at.isoformat(),
                outcome.state.value,
                outcome.reason.value if outcome.reason else None,
                outcome.notified, outcome.failed, outcome.error,
                json.dumps(outcome.permanent_failures)
            ))

    def get_job_run(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._execute(
                "SELECT * FROM job_runs WHERE job_id = ?", (job_id,)
            ).fetchone()
        if not row:
            return None
        run = dict(row)
        run["permanent_failures"] = json.loads(run["permanent_failures"] or "[]")
        return run

    def get_last_due_instants(self) -> Dict[str, datetime]:
        """Get the last due instant recorded for every job that has run."""
        with self._lock:
            rows = self._execute("SELECT job_id, last_due_at FROM job_runs").fetchall()
        return {row["job_id"]: datetime.fromisoformat(row["last_due_at"]) for row in rows}

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
                logger.info("Database connection closed")
