"""Tests for the engine driving scheduler and executor."""

import threading
from concurrent.futures import FIRST_COMPLETED, wait
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from conftest import T0, make_device, make_job, make_record
from weather_push.cache import WeatherCache
from weather_push.config import Settings
from weather_push.engine import ForecastEngine
from weather_push.errors import PermanentFetchError, StorageError
from weather_push.executor import JobExecutor
from weather_push.models import ExecutionState, OutcomeReason
from weather_push.notifier import NotificationFanout
from weather_push.scheduler import CATCH_UP_ALL, CronScheduler

UTC = timezone.utc


def at(hour, minute=0, second=0):
    return datetime(2024, 1, 1, hour, minute, second, tzinfo=UTC)


@pytest.fixture
def engine(db, provider, push_client):
    cache = WeatherCache(db, provider, staleness_window_seconds=1800, clock=lambda: T0)
    fanout = NotificationFanout(push_client, delivery_timeout=2.0, sleep=lambda s: None)
    executor = JobExecutor(db, cache, fanout, sleep=lambda s: None)
    engine = ForecastEngine(db, CronScheduler(), executor, max_concurrent_executions=2,
                            shutdown_grace_seconds=5, clock=lambda: at(12))
    yield engine
    engine.stop()


class TestTick:
    """Due instants become executions."""

    def test_hourly_job_runs_once_per_instant(self, db, engine, push_client):
        """Paris hourly: one execution at 12:00:00, none at 12:00:30."""
        db.upsert_device(make_device(cities=["Paris"]))
        db.upsert_device(make_device(cities=["Paris"]))
        job = db.upsert_job(make_job(city="Paris", cron="0 * * * *"))
        engine.refresh_jobs(at(11, 59, 30))

        futures = engine.run_tick(at(12))
        outcomes = [o for f in futures for o in f.result(timeout=5)]

        assert engine.run_tick(at(12, 0, 30)) == []
        assert len(outcomes) == 1
        assert outcomes[0].job_id == job.id
        assert outcomes[0].due_at == at(12)
        assert outcomes[0].notified == 2
        assert len(push_client.calls) == 2

    def test_disabled_job_never_runs(self, db, engine):
        db.upsert_job(make_job(cron="* * * * *", enabled=False))
        engine.refresh_jobs(at(11))

        for minute in range(1, 5):
            assert engine.run_tick(at(11, minute)) == []

    def test_refresh_sees_new_jobs(self, db, engine):
        engine.refresh_jobs(at(11))
        assert engine.run_tick(at(11, 30)) == []

        db.upsert_job(make_job(cron="* * * * *"))
        assert engine.refresh_jobs(at(11, 30)) == 1
        assert len(engine.run_tick(at(11, 31))) == 1

    def test_refresh_failure_keeps_snapshot(self, db, engine):
        db.upsert_job(make_job(cron="* * * * *"))
        engine.refresh_jobs(at(11))

        engine.database = MagicMock()
        engine.database.get_enabled_jobs.side_effect = StorageError("database is locked")

        assert engine.refresh_jobs(at(11, 5)) == 1
        assert len(engine.run_tick(at(11, 6))) == 1

    def test_failing_job_does_not_affect_others(self, db, engine, provider):
        db.upsert_device(make_device(cities=["Lyon"]))
        atlantis = db.upsert_job(make_job(city="Atlantis", cron="0 12 * * *"))
        provider.errors = [PermanentFetchError("City not found: Atlantis")]
        engine.refresh_jobs(at(11))

        [bad] = engine.run_tick(at(12))[0].result(timeout=5)
        lyon = db.upsert_job(make_job(city="Lyon", cron="0 13 * * *"))
        engine.refresh_jobs(at(12, 30))
        [good] = engine.run_tick(at(13))[0].result(timeout=5)

        assert bad.job_id == atlantis.id
        assert bad.reason is OutcomeReason.UPSTREAM_FETCH_FAILED
        assert good.job_id == lyon.id
        assert good.state is ExecutionState.COMPLETED

    def test_slow_job_does_not_starve_others(self, db, provider, push_client):
        """A blocked job keeps one worker; its later instants queue behind it."""
        cache = WeatherCache(db, provider, staleness_window_seconds=1800, clock=lambda: T0)
        fanout = NotificationFanout(push_client, delivery_timeout=2.0, sleep=lambda s: None)
        executor = JobExecutor(db, cache, fanout, sleep=lambda s: None)
        engine = ForecastEngine(db, CronScheduler(catch_up=CATCH_UP_ALL), executor,
                                max_concurrent_executions=2, shutdown_grace_seconds=5)
        paris = db.upsert_job(make_job(city="Paris", cron="* * * * *"))
        lyon = db.upsert_job(make_job(city="Lyon", cron="* * * * *"))
        provider.gates["Paris"] = threading.Event()
        engine.refresh_jobs(at(11))
        try:
            first = engine.run_tick(at(11, 3))
            assert len(first) == 2

            done, pending = wait(first, timeout=5, return_when=FIRST_COMPLETED)
            assert len(done) == 1
            lyon_outcomes = done.pop().result()
            assert [o.job_id for o in lyon_outcomes] == [lyon.id] * 3
            assert [o.due_at for o in lyon_outcomes] == [at(11, 1), at(11, 2), at(11, 3)]

            second = engine.run_tick(at(11, 4))
            assert [o.job_id for o in second[0].result(timeout=5)] == [lyon.id]
            assert len(second) == 1

            provider.gates["Paris"].set()
            paris_outcomes = pending.pop().result(timeout=5)
            assert [o.job_id for o in paris_outcomes] == [paris.id] * 4
            assert [o.due_at for o in paris_outcomes] == [at(11, 1), at(11, 2), at(11, 3), at(11, 4)]
        finally:
            provider.gates["Paris"].set()
            engine.stop()

    def test_latest_policy_keeps_only_newest_queued_instant(self, db, engine, provider):
        job = db.upsert_job(make_job(city="Paris", cron="* * * * *"))
        provider.gate = threading.Event()
        engine.refresh_jobs(at(11))
        try:
            first = engine.run_tick(at(11, 1))
            assert provider.entered.wait(timeout=5)
            assert engine.run_tick(at(11, 2)) == []
            assert engine.run_tick(at(11, 3)) == []
        finally:
            provider.gate.set()

        outcomes = first[0].result(timeout=5)
        assert [o.due_at for o in outcomes] == [at(11, 1), at(11, 3)]
        assert all(o.job_id == job.id for o in outcomes)

    def test_run_now(self, db, engine):
        db.upsert_device(make_device(cities=["Paris"]))
        job = db.upsert_job(make_job())

        outcome = engine.run_now(job)

        assert outcome.reason is OutcomeReason.DELIVERED
        assert outcome.due_at == at(12)


class TestLifecycle:

    def test_stop_drains_in_flight_executions(self, db, engine, provider):
        job = db.upsert_job(make_job(cron="0 * * * *"))
        engine.refresh_jobs(at(11, 30))
        provider.gate = threading.Event()

        futures = engine.run_tick(at(12))
        assert provider.entered.wait(timeout=5)
        assert engine.in_flight() == 1

        threading.Timer(0.2, provider.gate.set).start()
        engine.stop()

        assert futures[0].done()
        assert db.get_job_run(job.id) is not None

    def test_cleanup_history_applies_retention(self, db, engine):
        engine.history_retention_days = 1
        now_ts = int(at(12).timestamp())
        db.upsert_weather(make_record(timestamp=now_ts - 2 * 86400))
        db.upsert_weather(make_record(timestamp=now_ts - 3600, temperature=8.0))

        assert engine.cleanup_history(at(12)) == 1
        assert engine.cleanup_history(at(12)) == 0
        assert db.get_latest_weather("Paris", "metric").temperature == 8.0

    def test_cleanup_history_storage_error_is_contained(self, engine):
        engine.database = MagicMock()
        engine.database.cleanup_weather.side_effect = StorageError("disk I/O error")

        assert engine.cleanup_history(at(12)) == 0

    def test_start_and_stop(self, db, engine):
        db.upsert_job(make_job())

        engine.start()
        try:
            status = engine.get_status()
            assert engine.is_running
            assert status["scheduled_jobs"] == 1
            assert status["next_tick_at"] is not None
            assert status["cache"]["upstream_calls"] == 0
            assert engine._driver.get_job("cleanup_job") is not None
        finally:
            engine.stop()
        assert not engine.is_running

    def test_from_settings(self, db):
        settings = Settings(openweathermap_api_key="key", catch_up="all", max_catch_up=3,
                            tick_seconds=30)

        engine = ForecastEngine.from_settings(settings, db)

        assert engine.cron.catch_up == "all"
        assert engine.cron.max_catch_up == 3
        assert engine.tick_seconds == 30
        assert engine.executor.cache.provider.api_key == "key"
        assert engine.executor.cache.provider.budget is engine.budget
        assert engine.get_status()["api_budget"]["remaining"] == settings.daily_call_budget
