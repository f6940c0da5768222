"""
Domain models for the weather push engine.

Devices and scheduler jobs are owned by the registration layer and are
read-only from the engine's point of view. Weather records are written by
the cache; execution outcomes are produced by the job executor.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

DEFAULT_UNITS = "metric"
DEFAULT_TIMEZONE = "UTC"
VALID_UNITS = ("metric", "imperial", "standard")
VALID_PLATFORMS = ("ios", "android")


def normalize_city(city: str) -> str:
    """Normalize a city name for cache keys and subscription matching."""
    return (city or "").strip().lower()


class ExecutionState(Enum):
    """Lifecycle of a single job execution."""
    PENDING = "pending"
    FETCHING = "fetching"
    RESOLVING = "resolving"
    NOTIFYING = "notifying"
    COMPLETED = "completed"
    FAILED = "failed"


class OutcomeReason(Enum):
    """Why an execution ended the way it did."""
    DELIVERED = "delivered"
    NO_TARGETS = "no_targets"
    SUPPRESSED = "suppressed"
    UPSTREAM_FETCH_FAILED = "upstream_fetch_failed"
    PUSH_SERVICE_UNAVAILABLE = "push_service_unavailable"
    STORAGE_ERROR = "storage_error"
    INTERNAL_ERROR = "internal_error"


class DeliveryStatus(Enum):
    """Per-device push delivery classification."""
    OK = "ok"
    TRANSIENT = "transient"   # network, timeout, rate limit: retry
    PERMANENT = "permanent"   # invalid or expired token: do not retry


@dataclass
class Device:
    """A device registered for push notifications."""
    id: str
    token: str
    platform: str
    cities: List[str] = field(default_factory=list)
    units: str = DEFAULT_UNITS
    enabled: bool = True
    device_name: Optional[str] = None
    app_version: Optional[str] = None
    registered_at: int = 0
    updated_at: int = 0

    def subscribes_to(self, city: str) -> bool:
        key = normalize_city(city)
        return any(normalize_city(c) == key for c in self.cities)

    def is_target_for(self, city: str) -> bool:
        """A device is a notification target iff enabled and subscribed."""
        return self.enabled and self.subscribes_to(city)


@dataclass
class NotifyConfig:
    """Rules deciding whether a job run produces a notification."""
    on_run: bool = True
    on_alert: bool = True
    on_precipitation: bool = False
    cold_threshold: Optional[float] = None
    heat_threshold: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "NotifyConfig":
        data = data or {}
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SchedulerJob:
    """A scheduled forecast job."""
    id: str
    name: str
    city: str
    cron: str
    units: str = DEFAULT_UNITS
    timezone: str = DEFAULT_TIMEZONE
    include_daily: bool = True
    include_hourly: bool = False
    enabled: bool = True
    notify: NotifyConfig = field(default_factory=NotifyConfig)

    @classmethod
    def new(cls, name: str, city: str, cron: str, **kwargs) -> "SchedulerJob":
        return cls(id=str(uuid.uuid4()), name=name, city=city, cron=cron, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["notify"] = self.notify.to_dict()
        return data


@dataclass
class WeatherRecord:
    """One fetched observation for (city, timestamp, units)."""
    city: str
    timestamp: int          # Observation time, unix seconds
    units: str
    temperature: float
    feels_like: float
    humidity: int
    pressure: int
    wind_speed: float
    lat: float = 0.0
    lon: float = 0.0
    wind_direction: Optional[int] = None
    clouds: Optional[int] = None
    visibility: Optional[int] = None
    description: Optional[str] = None
    icon: Optional[str] = None
    rain_1h: Optional[float] = None
    snow_1h: Optional[float] = None
    fetched_at: int = 0

    @property
    def precipitation(self) -> float:
        return (self.rain_1h or 0.0) + (self.snow_1h or 0.0)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DailyForecast:
    """One day of a One Call forecast."""
    timestamp: int
    temp_min: float
    temp_max: float
    precipitation_probability: float = 0.0  # 0..1
    summary: Optional[str] = None
    description: Optional[str] = None


@dataclass
class HourlyForecast:
    timestamp: int
    temperature: float
    precipitation_probability: float = 0.0
    description: Optional[str] = None


@dataclass
class WeatherAlert:
    """Government weather alert attached to a forecast."""
    sender: str
    event: str
    start: int
    end: int
    description: str = ""


@dataclass
class Forecast:
    """Daily and hourly outlook plus active alerts for a location."""
    lat: float
    lon: float
    units: str
    timezone: Optional[str] = None
    daily: List[DailyForecast] = field(default_factory=list)
    hourly: List[HourlyForecast] = field(default_factory=list)
    alerts: List[WeatherAlert] = field(default_factory=list)


@dataclass
class DeliveryResult:
    """Outcome of delivering one notification to one device."""
    token: str
    status: DeliveryStatus
    attempts: int = 1
    error: Optional[str] = None
    ticket_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is DeliveryStatus.OK


@dataclass
class ExecutionOutcome:
    """Summary of one job execution, recorded as the job's last status."""
    job_id: str
    due_at: datetime
    state: ExecutionState = ExecutionState.PENDING
    reason: Optional[OutcomeReason] = None
    notified: int = 0
    failed: int = 0
    error: Optional[str] = None
    deliveries: List[DeliveryResult] = field(default_factory=list)
    permanent_failures: List[str] = field(default_factory=list)
    transitions: List[ExecutionState] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.state is ExecutionState.COMPLETED
