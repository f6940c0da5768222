"""
Weather Push Backend

Scheduled weather forecasts delivered as push notifications:
- Cron-scheduled forecast jobs with per-job timezones
- Weather history cache with single-flight upstream fetches
- One Call forecasts and weather alerts under a daily API call budget
- Notification fan-out to subscribed devices with partial-failure tolerance
- SQLite persistence for devices, jobs and weather history
- REST API for registration and job management
"""

from .budget import ApiCallBudget
from .cache import WeatherCache
from .database import Database
from .engine import ForecastEngine
from .errors import (
    BudgetExhaustedError,
    FetchError,
    PermanentFetchError,
    PushServiceUnavailable,
    StorageError,
    TransientFetchError,
    ValidationError,
)
from .executor import JobExecutor
from .models import Device, ExecutionOutcome, Forecast, SchedulerJob, WeatherRecord
from .notifier import NotificationFanout
from .scheduler import CronScheduler, next_fire_time, validate_job

__version__ = "1.0.0"

__all__ = [
    "ApiCallBudget",
    "WeatherCache",
    "Database",
    "ForecastEngine",
    "BudgetExhaustedError",
    "FetchError",
    "PermanentFetchError",
    "PushServiceUnavailable",
    "StorageError",
    "TransientFetchError",
    "ValidationError",
    "JobExecutor",
    "Device",
    "ExecutionOutcome",
    "Forecast",
    "SchedulerJob",
    "WeatherRecord",
    "NotificationFanout",
    "CronScheduler",
    "next_fire_time",
    "validate_job",
]
