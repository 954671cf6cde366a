"""
Notification Sender Base.

Every channel type has one sender. A sender either delivers or
raises NotificationDeliveryError; tracking and logging belong to
the dispatcher.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import aiohttp

from core.exceptions import CommunicationError
from storage.models.enums import AlertSeverity, NotificationChannelType


SEVERITY_EMOJI = {
    AlertSeverity.CRITICAL: ":rotating_light:",
    AlertSeverity.ERROR: ":x:",
    AlertSeverity.WARNING: ":warning:",
    AlertSeverity.INFO: ":information_source:",
}
DEFAULT_EMOJI = ":bell:"


class NotificationDeliveryError(CommunicationError):
    """A channel rejected or could not receive a notification."""


@dataclass
class OutgoingAlert:
    """An alert notification resolved for display."""
    severity: AlertSeverity
    rule: str
    bot_name: str
    message: str
    timestamp: datetime
    details: Optional[str] = None

    @property
    def timestamp_iso(self) -> str:
        return self.timestamp.isoformat() + "Z"


class NotificationSender(ABC):
    """Delivers an OutgoingAlert to one channel type."""

    channel_type: NotificationChannelType

    @abstractmethod
    async def send(
        self,
        session: aiohttp.ClientSession,
        config: Dict[str, Any],
        alert: OutgoingAlert,
    ) -> None:
        """
        Deliver one alert.

        Raises:
            NotificationDeliveryError: Missing config or non-2xx response
        """
        pass

    @staticmethod
    def _require(config: Dict[str, Any], key: str, description: str) -> Any:
        value = config.get(key)
        if not value:
            raise NotificationDeliveryError(f"{description} is missing from channel config")
        return value

    @staticmethod
    async def _post_json(
        session: aiohttp.ClientSession,
        url: str,
        payload: Dict[str, Any],
        label: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        try:
            async with session.post(url, json=payload, headers=headers) as response:
                if response.status < 200 or response.status >= 300:
                    body = await response.text()
                    raise NotificationDeliveryError(
                        f"{label} responded with status {response.status}",
                        details={"status": response.status, "body": body[:500]},
                    )
        except aiohttp.ClientError as e:
            raise NotificationDeliveryError(f"{label} request failed: {e}", cause=e) from e


__all__ = [
    "SEVERITY_EMOJI",
    "DEFAULT_EMOJI",
    "NotificationDeliveryError",
    "OutgoingAlert",
    "NotificationSender",
]
