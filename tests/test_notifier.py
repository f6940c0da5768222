"""Tests for notification rules and fan-out."""

import threading

import pytest

from conftest import T0, make_device, make_job, make_record
from weather_push.errors import PushServiceUnavailable
from weather_push.models import (
    DailyForecast,
    DeliveryStatus,
    Forecast,
    HourlyForecast,
    NotifyConfig,
    WeatherAlert,
)
from weather_push.notifier import NotificationFanout, build_message, should_notify
from weather_push.push import NotificationMessage, Priority


ALERT = WeatherAlert(sender="NWS Chicago", event="Heat Advisory", start=T0, end=T0 + 3600)


def forecast(daily=(), hourly=(), alerts=()):
    return Forecast(lat=48.85, lon=2.35, units="metric",
                    daily=list(daily), hourly=list(hourly), alerts=list(alerts))


def day(temp_min=2.0, temp_max=8.0, pop=0.0, summary=None):
    return DailyForecast(timestamp=T0, temp_min=temp_min, temp_max=temp_max,
                         precipitation_probability=pop, summary=summary)


@pytest.fixture
def message():
    return NotificationMessage(title="Paris weather", body="Now: 5.2°C")


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fanout(push_client, sleeps):
    return NotificationFanout(push_client, parallelism=4, delivery_timeout=2.0,
                              max_attempts=2, backoff_seconds=0.5, sleep=sleeps.append)


class TestShouldNotify:
    """Notify rules per job."""

    def test_on_run_always_notifies(self):
        assert should_notify(make_record(), make_job()) is True

    def test_nothing_enabled_suppresses(self):
        job = make_job(notify=NotifyConfig(on_run=False, on_alert=False))
        assert should_notify(make_record(), job) is False

    def test_alert_requires_forecast_alerts(self):
        job = make_job(notify=NotifyConfig(on_run=False, on_alert=True))
        assert should_notify(make_record(), job, forecast(alerts=[ALERT])) is True
        assert should_notify(make_record(), job, forecast()) is False
        assert should_notify(make_record(icon="11d"), job) is False

    def test_precipitation(self):
        job = make_job(notify=NotifyConfig(on_run=False, on_alert=False, on_precipitation=True))
        assert should_notify(make_record(rain_1h=0.4), job) is True
        assert should_notify(make_record(), job) is False

    def test_likely_rain_in_daily_outlook(self):
        job = make_job(notify=NotifyConfig(on_run=False, on_alert=False, on_precipitation=True))
        assert should_notify(make_record(), job, forecast(daily=[day(pop=0.6)])) is True
        assert should_notify(make_record(), job, forecast(daily=[day(pop=0.5)])) is False

    def test_temperature_thresholds(self):
        job = make_job(notify=NotifyConfig(on_run=False, on_alert=False,
                                           cold_threshold=0.0, heat_threshold=30.0))
        assert should_notify(make_record(temperature=-3.0), job) is True
        assert should_notify(make_record(temperature=33.0), job) is True
        assert should_notify(make_record(temperature=15.0), job) is False


class TestBuildMessage:

    def test_contents(self):
        job = make_job(city="Paris", include_hourly=True)
        msg = build_message(job, make_record(temperature=5.2, rain_1h=1.5))

        assert msg.title == "Paris weather"
        assert "Now: 5.2°C" in msg.body
        assert "Light rain" in msg.body
        assert "Precipitation: 1.5 mm" in msg.body
        assert msg.priority is Priority.DEFAULT
        assert msg.data["jobId"] == job.id
        assert msg.data["includeHourly"] is True

    def test_imperial_units(self):
        msg = build_message(make_job(), make_record(units="imperial", temperature=41.0))
        assert "41.0°F" in msg.body
        assert "mph" in msg.body

    def test_alerts_are_urgent(self):
        msg = build_message(make_job(), make_record(), forecast(alerts=[ALERT]))

        assert msg.priority is Priority.URGENT
        assert "WEATHER ALERTS:\n- Heat Advisory" in msg.body
        assert msg.data["alerts"] == 1

    def test_no_forecast_is_default_priority(self):
        msg = build_message(make_job(), make_record(icon="11n"))
        assert msg.priority is Priority.DEFAULT
        assert "WEATHER ALERTS" not in msg.body

    def test_daily_outlook(self):
        outlook = forecast(daily=[day(temp_min=1.4, temp_max=7.6, pop=0.35,
                                      summary="Rain in the afternoon")])
        msg = build_message(make_job(include_daily=True), make_record(), outlook)

        assert "Today: 1 - 8°C" in msg.body
        assert "Rain: 35% chance" in msg.body
        assert "Rain in the afternoon" in msg.body

    def test_daily_outlook_omitted_when_not_requested(self):
        outlook = forecast(daily=[day()])
        msg = build_message(make_job(include_daily=False), make_record(), outlook)
        assert "Today:" not in msg.body

    def test_hourly_outlook_in_job_timezone(self):
        """T0 is 12:00 UTC, 13:00 in Paris in January."""
        hours = [HourlyForecast(timestamp=T0 + i * 3600, temperature=5.0 + i) for i in range(5)]
        job = make_job(tz="Europe/Paris", include_hourly=True)

        msg = build_message(job, make_record(), forecast(hourly=hours))

        assert "Next hours: 13:00 5°C, 14:00 6°C, 15:00 7°C" in msg.body
        assert "16:00" not in msg.body


class TestFanout:
    """Per-device isolation of deliveries."""

    def test_all_delivered(self, fanout, message):
        devices = [make_device() for _ in range(3)]

        result = fanout.dispatch(message, devices)

        assert result.notified == 3
        assert result.failed == 0

    def test_no_devices(self, fanout, push_client, message):
        result = fanout.dispatch(message, [])
        assert result.deliveries == []
        assert push_client.calls == []

    def test_partial_failures_do_not_abort(self, fanout, push_client, message):
        """Three failing devices out of five leave two delivered."""
        devices = [make_device() for _ in range(5)]
        push_client.script(devices[0].token, DeliveryStatus.PERMANENT)
        push_client.script(devices[1].token, DeliveryStatus.TRANSIENT)
        push_client.script(devices[2].token, PushServiceUnavailable)

        result = fanout.dispatch(message, devices)

        assert result.notified == 2
        assert result.failed == 3
        assert result.permanent_failures == [devices[0].token]

    def test_permanent_failure_not_retried(self, fanout, push_client, sleeps, message):
        device = make_device()
        push_client.script(device.token, DeliveryStatus.PERMANENT)

        result = fanout.dispatch(message, [device])

        assert push_client.calls_for(device.token) == 1
        assert result.deliveries[0].attempts == 1
        assert sleeps == []

    def test_transient_failure_retried(self, fanout, push_client, sleeps, message):
        device = make_device()
        push_client.script(device.token, DeliveryStatus.TRANSIENT, DeliveryStatus.OK)

        result = fanout.dispatch(message, [device])

        assert result.notified == 1
        assert result.deliveries[0].attempts == 2
        assert push_client.calls_for(device.token) == 2
        assert sleeps == [0.5]

    def test_transient_retries_are_bounded(self, fanout, push_client, message):
        device = make_device()
        push_client.script(device.token, DeliveryStatus.TRANSIENT)

        result = fanout.dispatch(message, [device])

        assert result.failed == 1
        assert push_client.calls_for(device.token) == 2

    def test_hung_delivery_is_abandoned(self, push_client, message):
        """A device exceeding the per-device timeout counts as failed."""
        fanout = NotificationFanout(push_client, parallelism=4, delivery_timeout=0.2,
                                    max_attempts=1, sleep=lambda s: None)
        slow, fast = make_device(), make_device()
        release = threading.Event()
        push_client.delay[slow.token] = release
        try:
            result = fanout.dispatch(message, [slow, fast])
        finally:
            release.set()

        by_token = {d.token: d for d in result.deliveries}
        assert by_token[fast.token].ok
        assert by_token[slow.token].status is DeliveryStatus.TRANSIENT
        assert "timed out" in by_token[slow.token].error

    def test_unreachable_for_all_devices_raises(self, fanout, push_client, message):
        devices = [make_device() for _ in range(3)]
        for device in devices:
            push_client.script(device.token, PushServiceUnavailable)

        with pytest.raises(PushServiceUnavailable):
            fanout.dispatch(message, devices)

    def test_unexpected_error_isolated(self, fanout, push_client, message):
        bad, good = make_device(), make_device()
        real_send = push_client.send

        def send(token, platform, msg):
            if token == bad.token:
                raise RuntimeError("boom")
            return real_send(token, platform, msg)

        push_client.send = send
        result = fanout.dispatch(message, [bad, good])

        assert result.notified == 1
        assert result.failed == 1
