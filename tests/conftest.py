"""Pytest configuration and fixtures."""

import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from weather_push.database import Database
from weather_push.errors import PushServiceUnavailable
from weather_push.models import (
    DeliveryResult,
    DeliveryStatus,
    Device,
    Forecast,
    NotifyConfig,
    SchedulerJob,
    WeatherRecord,
)

T0 = int(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc).timestamp())


def make_record(city="Paris", timestamp=T0, units="metric", temperature=5.2, **kwargs) -> WeatherRecord:
    fields = dict(
        city=city,
        timestamp=timestamp,
        units=units,
        temperature=temperature,
        feels_like=temperature - 2,
        humidity=80,
        pressure=1012,
        wind_speed=3.5,
        description="light rain",
        icon="10d",
    )
    fields.update(kwargs)
    return WeatherRecord(**fields)


def make_device(token=None, cities=("Paris",), enabled=True, platform="ios") -> Device:
    return Device(
        id=str(uuid.uuid4()),
        token=token or f"ExponentPushToken[{uuid.uuid4().hex[:12]}]",
        platform=platform,
        cities=list(cities),
        enabled=enabled,
    )


def make_job(city="Paris", cron="0 * * * *", tz="UTC", enabled=True, job_id=None, **kwargs) -> SchedulerJob:
    return SchedulerJob(
        id=job_id or str(uuid.uuid4()),
        name=f"{city} forecast",
        city=city,
        cron=cron,
        timezone=tz,
        enabled=enabled,
        notify=kwargs.pop("notify", NotifyConfig()),
        **kwargs,
    )


class FakeProvider:
    """Weather provider double: returns queued results, counts calls."""

    def __init__(self, record: Optional[WeatherRecord] = None):
        self.record = record or make_record()
        self.forecast = Forecast(lat=48.85, lon=2.35, units="metric")
        self.errors: List[Exception] = []
        self.forecast_errors: List[Exception] = []
        self.calls = 0
        self.forecast_calls: List[Dict] = []
        self.gate: Optional[threading.Event] = None
        self.gates: Dict[str, threading.Event] = {}
        self.entered = threading.Event()
        self._lock = threading.Lock()

    def fetch(self, city, units):
        with self._lock:
            self.calls += 1
            error = self.errors.pop(0) if self.errors else None
        self.entered.set()
        gate = self.gates.get(city, self.gate)
        if gate is not None:
            gate.wait(timeout=5)
        if error is not None:
            raise error
        return make_record(**{**self.record.to_dict(), "city": city, "units": units})

    def fetch_forecast(self, lat, lon, units, include_daily=True, include_hourly=False, city=None):
        with self._lock:
            self.forecast_calls.append(dict(lat=lat, lon=lon, units=units, city=city,
                                            include_daily=include_daily,
                                            include_hourly=include_hourly))
            error = self.forecast_errors.pop(0) if self.forecast_errors else None
        if error is not None:
            raise error
        return self.forecast


class FakePushClient:
    """Push client double with per-token scripted outcomes."""

    def __init__(self):
        self.outcomes: Dict[str, List] = {}
        self.calls: List[str] = []
        self.messages: List = []
        self.delay: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def script(self, token, *outcomes):
        self.outcomes[token] = list(outcomes)

    def calls_for(self, token) -> int:
        with self._lock:
            return self.calls.count(token)

    def send(self, token, platform, message):
        with self._lock:
            self.calls.append(token)
            self.messages.append(message)
            queue = self.outcomes.get(token)
            outcome = queue.pop(0) if queue and len(queue) > 1 else (queue[0] if queue else DeliveryStatus.OK)
        if token in self.delay:
            self.delay[token].wait(timeout=5)
        if outcome is PushServiceUnavailable:
            raise PushServiceUnavailable("connection refused")
        return DeliveryResult(token=token, status=outcome,
                              error=None if outcome is DeliveryStatus.OK else outcome.value)


@pytest.fixture
def db(tmp_path):
    """Temporary SQLite database."""
    database = Database(str(tmp_path / "weather_push_test.db"))
    yield database
    database.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def push_client():
    return FakePushClient()
