"""
Weather provider client for the weather push engine.

Fetches current conditions for a city and the One Call forecast for its
coordinates from OpenWeatherMap. Every call is counted against an optional
daily budget, and every failure is classified as transient (worth retrying)
or permanent (unknown city, bad API key, malformed payload).
"""

import logging
import time
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .budget import ApiCallBudget
from .errors import BudgetExhaustedError, PermanentFetchError, TransientFetchError
from .models import (
    VALID_UNITS,
    DailyForecast,
    Forecast,
    HourlyForecast,
    WeatherAlert,
    WeatherRecord,
)

logger = logging.getLogger(__name__)

# Configuration constants
DEFAULT_TIMEOUT = 15  # seconds
MAX_RETRIES = 2
RETRY_BACKOFF = 0.5
USER_AGENT = "WeatherPush/1.0"
OPENWEATHERMAP_URL = "https://api.openweathermap.org/data/2.5/weather"
OPENWEATHERMAP_ONECALL_URL = "https://api.openweathermap.org/data/3.0/onecall"

TRANSIENT_STATUSES = (408, 425, 429, 500, 502, 503, 504)


class OpenWeatherMapClient:
    """
    Client for the OpenWeatherMap current-weather and One Call endpoints.

    The HTTP session retries idempotent GETs on gateway errors; whatever
    survives that is raised as TransientFetchError or PermanentFetchError.
    A call over the daily budget raises BudgetExhaustedError without
    touching the network.
    """

    def __init__(
        self,
        api_key: Optional[str],
        url: str = OPENWEATHERMAP_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
        onecall_url: str = OPENWEATHERMAP_ONECALL_URL,
        budget: Optional[ApiCallBudget] = None
    ):
        self.api_key = api_key
        self.url = url
        self.onecall_url = onecall_url
        self.budget = budget
        self.timeout = timeout
        self._session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create HTTP session with retry strategy for availability."""
        session = requests.Session()

        retry_strategy = Retry(
            total=MAX_RETRIES,
            backoff_factor=RETRY_BACKOFF,
            status_forcelist=[502, 503, 504],
            allowed_methods=["GET"],
            raise_on_status=False
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        session.headers.update({
            "User-Agent": USER_AGENT,
            "Accept": "application/json"
        })

        return session

    def fetch(self, city: str, units: str) -> WeatherRecord:
        """Fetch current weather for a city."""
        params = {"q": city, "units": units, "appid": self.api_key}
        payload = self._get(self.url, params, city=city)
        record = self._parse(city, units, payload)
        logger.info(f"Fetched weather for {city} ({units}): {record.temperature}")
        return record

    def fetch_forecast(
        self,
        lat: float,
        lon: float,
        units: str,
        include_daily: bool = True,
        include_hourly: bool = False,
        city: Optional[str] = None
    ) -> Forecast:
        """
        Fetch the One Call outlook for a location.

        Minutely data and current conditions are always excluded; hourly and
        daily blocks are requested only when asked for. Alerts are always
        included.
        """
        exclude = ["minutely", "current"]
        if not include_hourly:
            exclude.append("hourly")
        if not include_daily:
            exclude.append("daily")

        params = {
            "lat": lat,
            "lon": lon,
            "units": units,
            "exclude": ",".join(exclude),
            "appid": self.api_key,
        }
        payload = self._get(self.onecall_url, params, city=city)
        forecast = self._parse_forecast(lat, lon, units, payload, city)
        logger.info(
            f"Fetched forecast for {city or f'{lat},{lon}'}: {len(forecast.daily)} day(s), "
            f"{len(forecast.hourly)} hour(s), {len(forecast.alerts)} alert(s)"
        )
        return forecast

    def _get(self, url: str, params: Dict[str, Any], city: Optional[str] = None) -> Dict[str, Any]:
        """GET a provider endpoint and classify every failure."""
        if params.get("units") not in VALID_UNITS:
            raise PermanentFetchError(f"Unsupported units: {params.get('units')}", city=city)
        if not self.api_key:
            raise PermanentFetchError("OpenWeatherMap API key is not configured", city=city)
        if self.budget is not None and not self.budget.record_call():
            raise BudgetExhaustedError(
                f"Daily API call budget of {self.budget.daily_limit} exhausted", city=city
            )

        try:
            response = self._session.get(url, params=params, timeout=self.timeout)
        except requests.Timeout:
            raise TransientFetchError(f"Request timed out after {self.timeout}s", city=city)
        except requests.ConnectionError as e:
            raise TransientFetchError(f"Connection error - provider unavailable: {e}", city=city)
        except requests.RequestException as e:
            raise TransientFetchError(f"Request failed: {e}", city=city)

        status = response.status_code
        if status == 404:
            raise PermanentFetchError(
                f"City not found: {city}" if city else "Location not found",
                city=city, status_code=status
            )
        if status in TRANSIENT_STATUSES:
            raise TransientFetchError(f"HTTP error {status}", city=city, status_code=status)
        if status >= 400:
            raise PermanentFetchError(
                f"HTTP error {status}: {self._error_message(response)}",
                city=city, status_code=status
            )

        try:
            return response.json()
        except ValueError as e:
            raise PermanentFetchError(f"Invalid JSON from provider: {e}", city=city)

    def _error_message(self, response: requests.Response) -> str:
        try:
            return response.json().get("message", "")
        except ValueError:
            return response.text[:200]

    def _parse(self, city: str, units: str, payload: Dict[str, Any]) -> WeatherRecord:
        """Parse an OpenWeatherMap current-weather payload."""
        try:
            main = payload["main"]
            weather = (payload.get("weather") or [{}])[0]
            wind = payload.get("wind") or {}
            coord = payload.get("coord") or {}
            return WeatherRecord(
                city=city,
                timestamp=int(payload["dt"]),
                units=units,
                temperature=float(main["temp"]),
                feels_like=float(main["feels_like"]),
                humidity=int(main["humidity"]),
                pressure=int(main["pressure"]),
                wind_speed=float(wind.get("speed", 0.0)),
                lat=float(coord.get("lat", 0.0)),
                lon=float(coord.get("lon", 0.0)),
                wind_direction=wind.get("deg"),
                clouds=(payload.get("clouds") or {}).get("all"),
                visibility=payload.get("visibility"),
                description=weather.get("description"),
                icon=weather.get("icon"),
                rain_1h=(payload.get("rain") or {}).get("1h"),
                snow_1h=(payload.get("snow") or {}).get("1h"),
                fetched_at=int(time.time()),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentFetchError(f"Malformed provider payload: {e}", city=city)

    def _parse_forecast(
        self,
        lat: float,
        lon: float,
        units: str,
        payload: Dict[str, Any],
        city: Optional[str]
    ) -> Forecast:
        """Parse a One Call 3.0 payload."""
        try:
            daily = []
            for day in payload.get("daily") or []:
                temp = day["temp"]
                daily.append(DailyForecast(
                    timestamp=int(day["dt"]),
                    temp_min=float(temp["min"]),
                    temp_max=float(temp["max"]),
                    precipitation_probability=float(day.get("pop", 0.0)),
                    summary=day.get("summary"),
                    description=((day.get("weather") or [{}])[0]).get("description"),
                ))
            hourly = [
                HourlyForecast(
                    timestamp=int(hour["dt"]),
                    temperature=float(hour["temp"]),
                    precipitation_probability=float(hour.get("pop", 0.0)),
                    description=((hour.get("weather") or [{}])[0]).get("description"),
                )
                for hour in payload.get("hourly") or []
            ]
            alerts = [
                WeatherAlert(
                    sender=alert.get("sender_name", ""),
                    event=alert["event"],
                    start=int(alert["start"]),
                    end=int(alert["end"]),
                    description=alert.get("description", ""),
                )
                for alert in payload.get("alerts") or []
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentFetchError(f"Malformed forecast payload: {e}", city=city)

        return Forecast(
            lat=lat,
            lon=lon,
            units=units,
            timezone=payload.get("timezone"),
            daily=daily,
            hourly=hourly,
            alerts=alerts,
        )
