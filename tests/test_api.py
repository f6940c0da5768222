"""Tests for the REST API."""

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import T0
from weather_push import api
from weather_push.cache import WeatherCache
from weather_push.engine import ForecastEngine
from weather_push.executor import JobExecutor
from weather_push.notifier import NotificationFanout
from weather_push.scheduler import CronScheduler

TOKEN = "ExponentPushToken[device-1]"


@pytest.fixture
def client(db, provider, push_client, monkeypatch):
    """API client bound to a test database and an engine that is not started."""
    cache = WeatherCache(db, provider, staleness_window_seconds=1800, clock=lambda: T0)
    fanout = NotificationFanout(push_client, delivery_timeout=2.0, sleep=lambda s: None)
    executor = JobExecutor(db, cache, fanout, sleep=lambda s: None)
    engine = ForecastEngine(db, CronScheduler(), executor)
    monkeypatch.setattr(api, "db", db)
    monkeypatch.setattr(api, "engine", engine)
    yield TestClient(api.app)
    engine.stop()


def job_body(**overrides):
    body = {"name": "Paris morning", "city": "Paris", "cron": "30 5 * * *",
            "timezone": "Europe/Paris"}
    body.update(overrides)
    return body


class TestDevices:

    def test_register_and_list(self, client):
        response = client.post("/devices", json={"token": TOKEN, "platform": "ios",
                                                 "cities": ["Paris", " "]})

        assert response.status_code == 200
        assert response.json()["cities"] == ["Paris"]
        assert [d["token"] for d in client.get("/devices").json()] == [TOKEN]

    def test_reregister_updates_same_device(self, client):
        first = client.post("/devices", json={"token": TOKEN, "platform": "ios", "cities": ["Paris"]})
        second = client.post("/devices", json={"token": TOKEN, "platform": "ios", "cities": ["Lyon"]})

        assert first.json()["id"] == second.json()["id"]
        assert len(client.get("/devices").json()) == 1

    def test_invalid_platform(self, client):
        response = client.post("/devices", json={"token": TOKEN, "platform": "blackberry"})
        assert response.status_code == 422

    def test_invalid_units(self, client):
        response = client.post("/devices", json={"token": TOKEN, "platform": "ios", "units": "kelvinish"})

        assert response.status_code == 422
        assert client.get("/devices").json() == []

    def test_unregister(self, client):
        client.post("/devices", json={"token": TOKEN, "platform": "android"})

        assert client.delete(f"/devices/{TOKEN}").status_code == 200
        assert client.delete(f"/devices/{TOKEN}").status_code == 404


class TestJobs:

    def test_create_and_get(self, client):
        response = client.post("/jobs", json=job_body())

        assert response.status_code == 201
        job = response.json()
        assert job["timezone"] == "Europe/Paris"
        assert job["notify"]["on_run"] is True
        assert client.get(f"/jobs/{job['id']}").json()["name"] == "Paris morning"

    @pytest.mark.parametrize("overrides", [
        {"cron": "61 * * * *"},
        {"cron": "every morning"},
        {"timezone": "Nowhere/Special"},
        {"units": "furlongs"},
    ])
    def test_invalid_job_rejected(self, client, overrides):
        response = client.post("/jobs", json=job_body(**overrides))

        assert response.status_code == 422
        assert client.get("/jobs").json() == []

    def test_update(self, client):
        job_id = client.post("/jobs", json=job_body()).json()["id"]

        response = client.put(f"/jobs/{job_id}", json=job_body(cron="0 7 * * 1-5", enabled=False))

        assert response.status_code == 200
        assert response.json()["cron"] == "0 7 * * 1-5"
        assert response.json()["enabled"] is False

    def test_update_missing(self, client):
        assert client.put("/jobs/nope", json=job_body()).status_code == 404

    def test_delete(self, client):
        job_id = client.post("/jobs", json=job_body()).json()["id"]

        assert client.delete(f"/jobs/{job_id}").status_code == 200
        assert client.get(f"/jobs/{job_id}").status_code == 404

    def test_run_and_status(self, client):
        client.post("/devices", json={"token": TOKEN, "platform": "ios", "cities": ["Paris"]})
        job_id = client.post("/jobs", json=job_body()).json()["id"]

        assert client.get(f"/jobs/{job_id}/status").json()["run_count"] == 0

        run = client.post(f"/jobs/{job_id}/run").json()
        assert run["state"] == "completed"
        assert run["reason"] == "delivered"
        assert run["notified"] == 1

        status = client.get(f"/jobs/{job_id}/status").json()
        assert status["last_status"] == "completed"
        assert status["run_count"] == 1


class TestHealth:

    def test_degraded_when_engine_not_running(self, client):
        body = client.get("/health").json()

        assert body["status"] == "degraded"
        assert body["database"] == "connected"
        assert body["engine"] == "stopped"

    def test_reports_uptime(self, client, monkeypatch):
        monkeypatch.setattr(api, "start_time", datetime.utcnow() - timedelta(hours=2, minutes=5))

        assert client.get("/health").json()["uptime"].startswith("2h 5m")

    def test_uptime_unknown_before_startup(self, client, monkeypatch):
        monkeypatch.setattr(api, "start_time", None)
        assert client.get("/health").json()["uptime"] == "N/A"

    def test_status(self, client):
        body = client.get("/status").json()

        assert body["is_running"] is False
        assert body["catch_up"] == "latest"
