"""
Error taxonomy for the weather push engine.

Failures are recovered at the execution boundary: a single job's error is
recorded as that job's outcome and never escapes into the scheduler loop.
"""


class WeatherPushError(Exception):
    """Base class for all engine errors."""
    pass


class ValidationError(WeatherPushError):
    """Malformed cron expression, timezone or configuration."""
    pass


class FetchError(WeatherPushError):
    """Weather provider failure."""

    transient = False

    def __init__(self, message: str, city: str = None, status_code: int = None):
        super().__init__(message)
        self.city = city
        self.status_code = status_code


class TransientFetchError(FetchError):
    """Retryable provider failure (timeout, connection error, 429, 5xx)."""

    transient = True


class PermanentFetchError(FetchError):
    """Non-retryable provider failure (unknown city, bad API key, bad payload)."""

    transient = False


class BudgetExhaustedError(FetchError):
    """The daily upstream call budget is used up; retrying before the next UTC day is pointless."""

    transient = False


class DeliveryError(WeatherPushError):
    """Push delivery failure affecting more than a single device."""
    pass


class PushServiceUnavailable(DeliveryError):
    """The push service could not be reached for the whole batch."""
    pass


class StorageError(WeatherPushError):
    """Persistence failure; fatal to the execution it occurs in."""
    pass
