"""
Notification fan-out for the weather push engine.

Delivers one notification per resolved device on a bounded thread pool.
Each device is isolated: transient failures are retried a bounded number of
times, permanent failures (invalid or expired tokens) are reported back and
never retried, and a delivery that exceeds the per-device timeout is
abandoned and counted as failed. The fan-out as a whole only fails when the
push service itself is unreachable for every device in the batch.
"""

import logging
import math
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from .errors import PushServiceUnavailable
from .models import (
    DeliveryResult,
    DeliveryStatus,
    Device,
    Forecast,
    SchedulerJob,
    WeatherRecord,
)
from .push import NotificationMessage, Priority

logger = logging.getLogger(__name__)

# Daily precipitation probability above which rain counts as likely
RAIN_LIKELY = 0.5
HOURLY_PREVIEW = 3

UNIT_SYMBOLS = {
    "metric": ("°C", "m/s"),
    "imperial": ("°F", "mph"),
    "standard": ("K", "m/s"),
}


@dataclass
class FanoutResult:
    """Per-device results of one fan-out."""
    deliveries: List[DeliveryResult] = field(default_factory=list)

    @property
    def notified(self) -> int:
        return sum(1 for d in self.deliveries if d.ok)

    @property
    def failed(self) -> int:
        return sum(1 for d in self.deliveries if not d.ok)

    @property
    def permanent_failures(self) -> List[str]:
        """Tokens the registry should deactivate."""
        return [d.token for d in self.deliveries if d.status is DeliveryStatus.PERMANENT]


# =============================================================================
# Message Construction
# =============================================================================

def needs_forecast(job: SchedulerJob) -> bool:
    """Whether a run of the job uses the One Call forecast."""
    return (job.include_daily or job.include_hourly
            or job.notify.on_alert or job.notify.on_precipitation)


def should_notify(
    record: WeatherRecord,
    job: SchedulerJob,
    forecast: Optional[Forecast] = None
) -> bool:
    """Decide whether this observation warrants a notification for the job."""
    config = job.notify
    if config.on_run:
        return True
    if config.on_alert and forecast is not None and forecast.alerts:
        return True
    if config.on_precipitation:
        if record.precipitation > 0:
            return True
        if forecast is not None and any(
            day.precipitation_probability > RAIN_LIKELY for day in forecast.daily
        ):
            return True
    if config.cold_threshold is not None and record.temperature < config.cold_threshold:
        return True
    if config.heat_threshold is not None and record.temperature > config.heat_threshold:
        return True
    return False


def build_message(
    job: SchedulerJob,
    record: WeatherRecord,
    forecast: Optional[Forecast] = None
) -> NotificationMessage:
    """Build the notification shared by every device of one job run."""
    temp_unit, speed_unit = UNIT_SYMBOLS.get(record.units, UNIT_SYMBOLS["metric"])

    lines = [f"Now: {record.temperature:.1f}{temp_unit} (feels {record.feels_like:.1f}{temp_unit})"]
    if record.description:
        lines.append(record.description.capitalize())
    lines.append(f"Humidity {record.humidity}%, wind {record.wind_speed:.1f} {speed_unit}")
    if record.precipitation > 0:
        lines.append(f"Precipitation: {record.precipitation:.1f} mm in the last hour")

    alerts = []
    if forecast is not None:
        if job.include_daily and forecast.daily:
            today = forecast.daily[0]
            lines.append(f"Today: {today.temp_min:.0f} - {today.temp_max:.0f}{temp_unit}")
            if today.precipitation_probability > 0:
                lines.append(f"Rain: {today.precipitation_probability * 100:.0f}% chance")
            if today.summary:
                lines.append(today.summary)
        if job.include_hourly and forecast.hourly:
            tz = ZoneInfo(job.timezone)
            hours = ", ".join(
                f"{datetime.fromtimestamp(hour.timestamp, tz):%H:%M} {hour.temperature:.0f}{temp_unit}"
                for hour in forecast.hourly[:HOURLY_PREVIEW]
            )
            lines.append(f"Next hours: {hours}")
        alerts = forecast.alerts

    if alerts:
        lines.append("")
        lines.append("WEATHER ALERTS:")
        lines.extend(f"- {alert.event}" for alert in alerts)

    return NotificationMessage(
        title=f"{job.city} weather",
        body="\n".join(lines),
        priority=Priority.URGENT if alerts else Priority.DEFAULT,
        data={
            "city": job.city,
            "units": record.units,
            "jobId": job.id,
            "timestamp": record.timestamp,
            "includeDaily": job.include_daily,
            "includeHourly": job.include_hourly,
            "alerts": len(alerts),
        },
    )


# =============================================================================
# Fan-out
# =============================================================================

class NotificationFanout:
    """Dispatches a notification to many devices with bounded parallelism."""

    def __init__(
        self,
        push_client,
        parallelism: int = 8,
        delivery_timeout: float = 10.0,
        max_attempts: int = 2,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.push_client = push_client
        self.parallelism = parallelism
        self.delivery_timeout = delivery_timeout
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def dispatch(self, message: NotificationMessage, devices: Sequence[Device]) -> FanoutResult:
        """
        Deliver the message to every device.

        Raises PushServiceUnavailable if the push service could not be
        reached for any device of the batch.
        """
        result = FanoutResult()
        if not devices:
            return result

        started: Dict[str, float] = {}
        started_lock = threading.Lock()
        unavailable = set()

        def run(device: Device) -> Tuple[DeliveryResult, bool]:
            with started_lock:
                started[device.token] = time.monotonic()
            return self._deliver(device, message)

        pool = ThreadPoolExecutor(
            max_workers=min(self.parallelism, len(devices)),
            thread_name_prefix="fanout"
        )
        futures: Dict[Future, Device] = {}
        try:
            for device in devices:
                futures[pool.submit(run, device)] = device

            waves = math.ceil(len(devices) / max(1, min(self.parallelism, len(devices))))
            overall_deadline = time.monotonic() + self.delivery_timeout * (waves + 1)
            poll = min(self.delivery_timeout / 10, 0.5)

            pending = set(futures)
            while pending:
                done, pending = wait(pending, timeout=poll, return_when=FIRST_COMPLETED)
                for future in done:
                    delivery, service_down = future.result()
                    result.deliveries.append(delivery)
                    if service_down:
                        unavailable.add(delivery.token)

                now = time.monotonic()
                for future in list(pending):
                    device = futures[future]
                    with started_lock:
                        began = started.get(device.token)
                    hung = began is not None and now - began > self.delivery_timeout
                    if hung or now > overall_deadline:
                        future.cancel()
                        pending.discard(future)
                        logger.warning(f"Delivery to device {device.id} abandoned after timeout")
                        result.deliveries.append(DeliveryResult(
                            token=device.token,
                            status=DeliveryStatus.TRANSIENT,
                            error=f"Delivery timed out after {self.delivery_timeout}s",
                        ))
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        if len(unavailable) == len(devices):
            raise PushServiceUnavailable(
                f"Push service unreachable for all {len(devices)} devices"
            )

        logger.info(
            f"Fan-out complete: {result.notified} notified, {result.failed} failed, "
            f"{len(result.permanent_failures)} permanent"
        )
        return result

    def _deliver(self, device: Device, message: NotificationMessage) -> Tuple[DeliveryResult, bool]:
        """Deliver to one device with bounded retries on transient failures."""
        delivery: Optional[DeliveryResult] = None
        service_down = False
        for attempt in range(1, self.max_attempts + 1):
            service_down = False
            try:
                delivery = self.push_client.send(device.token, device.platform, message)
            except PushServiceUnavailable as e:
                service_down = True
                delivery = DeliveryResult(token=device.token, status=DeliveryStatus.TRANSIENT,
                                          error=str(e))
            except Exception as e:
                logger.exception(f"Unexpected error delivering to device {device.id}")
                delivery = DeliveryResult(token=device.token, status=DeliveryStatus.TRANSIENT,
                                          error=f"Unexpected delivery error: {e}")

            delivery.attempts = attempt
            if delivery.status is not DeliveryStatus.TRANSIENT:
                break
            if attempt < self.max_attempts:
                self._sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        if delivery.status is DeliveryStatus.PERMANENT:
            logger.info(f"Device {device.id} rejected permanently: {delivery.error}")
        elif not delivery.ok:
            logger.warning(f"Delivery to device {device.id} failed after {delivery.attempts} attempts: {delivery.error}")
        return delivery, service_down
