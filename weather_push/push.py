"""
Push delivery client for the weather push engine.

Sends one notification per device token through the Expo push service and
reports each result as ok, transient or permanent.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import requests

from .errors import PushServiceUnavailable
from .models import DeliveryResult, DeliveryStatus

logger = logging.getLogger(__name__)

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"
DEFAULT_TIMEOUT = 10  # seconds
ANDROID_CHANNEL_ID = "weather"
MESSAGE_TTL_SECONDS = 3600

EXPO_TOKEN_PATTERN = re.compile(r"^Expo(nent)?PushToken\[.+\]$")

# Expo ticket error codes worth retrying; everything else is permanent
TRANSIENT_TICKET_ERRORS = {"MessageRateExceeded"}


class Priority(Enum):
    """Notification priority."""
    MIN = "min"
    LOW = "low"
    DEFAULT = "default"
    HIGH = "high"
    URGENT = "urgent"

    def to_expo(self) -> str:
        if self in (Priority.MIN, Priority.LOW):
            return "normal"
        if self in (Priority.HIGH, Priority.URGENT):
            return "high"
        return "default"


@dataclass
class NotificationMessage:
    """Notification content shared by every device in one fan-out."""
    title: str
    body: str
    priority: Priority = Priority.DEFAULT
    data: Dict[str, Any] = field(default_factory=dict)


class ExpoPushClient:
    """Client for the Expo push API."""

    def __init__(
        self,
        url: str = EXPO_PUSH_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None
    ):
        self.url = url
        self.timeout = timeout
        self._session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update({
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        })
        return session

    @staticmethod
    def is_valid_token(token: str) -> bool:
        return bool(token and EXPO_TOKEN_PATTERN.match(token))

    def _build_message(self, token: str, platform: str, message: NotificationMessage) -> Dict[str, Any]:
        push_message = {
            "to": token,
            "title": message.title,
            "body": message.body,
            "data": message.data,
            "priority": message.priority.to_expo(),
            "sound": "default",
            "ttl": MESSAGE_TTL_SECONDS,
        }
        if platform == "android":
            push_message["channelId"] = ANDROID_CHANNEL_ID
        return push_message

    def send(self, token: str, platform: str, message: NotificationMessage) -> DeliveryResult:
        """
        Send a notification to a single device.

        Raises PushServiceUnavailable when the push service cannot be reached
        at all; every other failure is reported in the DeliveryResult.
        """
        if not self.is_valid_token(token):
            return DeliveryResult(token=token, status=DeliveryStatus.PERMANENT,
                                  error="Invalid Expo push token")

        try:
            response = self._session.post(
                self.url,
                json=self._build_message(token, platform, message),
                timeout=self.timeout
            )
        except requests.Timeout:
            return DeliveryResult(token=token, status=DeliveryStatus.TRANSIENT,
                                  error=f"Push request timed out after {self.timeout}s")
        except requests.ConnectionError as e:
            raise PushServiceUnavailable(f"Push service unreachable: {e}") from e
        except requests.RequestException as e:
            return DeliveryResult(token=token, status=DeliveryStatus.TRANSIENT,
                                  error=f"Push request failed: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            return DeliveryResult(token=token, status=DeliveryStatus.TRANSIENT,
                                  error=f"Expo API returned {response.status_code}")
        if response.status_code >= 400:
            return DeliveryResult(token=token, status=DeliveryStatus.PERMANENT,
                                  error=f"Expo API returned {response.status_code}: {response.text[:200]}")

        return self._parse_ticket(token, response)

    def _parse_ticket(self, token: str, response: requests.Response) -> DeliveryResult:
        try:
            data = response.json().get("data")
        except ValueError:
            return DeliveryResult(token=token, status=DeliveryStatus.TRANSIENT,
                                  error="Invalid JSON from Expo")

        ticket = data[0] if isinstance(data, list) and data else data
        if not isinstance(ticket, dict):
            return DeliveryResult(token=token, status=DeliveryStatus.TRANSIENT,
                                  error="No ticket in Expo response")

        if ticket.get("status") == "ok":
            logger.debug(f"Expo push accepted, ticket {ticket.get('id')}")
            return DeliveryResult(token=token, status=DeliveryStatus.OK,
                                  ticket_id=ticket.get("id"))

        error_code = (ticket.get("details") or {}).get("error")
        error_msg = ticket.get("message") or error_code or "Unknown error"
        status = (DeliveryStatus.TRANSIENT if error_code in TRANSIENT_TICKET_ERRORS
                  else DeliveryStatus.PERMANENT)
        logger.warning(f"Expo push rejected ({error_code}): {error_msg}")
        return DeliveryResult(token=token, status=status, error=error_msg)
