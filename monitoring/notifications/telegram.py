"""
Telegram Notification Sender.

============================================================
PURPOSE
============================================================
Send alerts to a Telegram chat through the Bot API.

PRINCIPLES:
- Notification-only, NO control commands
- Rate limiting to prevent spam
- Clear, actionable messages

Channel config: ``bot_token`` and ``chat_id``.

============================================================
"""

import asyncio
import html
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import aiohttp

from core.clock import ClockFactory, ClockProtocol
from monitoring.notifications.base import (
    NotificationDeliveryError,
    NotificationSender,
    OutgoingAlert,
)
from storage.models.enums import AlertSeverity, NotificationChannelType


logger = logging.getLogger(__name__)


# ============================================================
# TELEGRAM MESSAGE FORMATTER
# ============================================================

class TelegramFormatter:
    """
    Formats alerts for Telegram.

    Uses HTML formatting for clarity.
    """

    SEVERITY_ICONS = {
        AlertSeverity.INFO: "ℹ️",
        AlertSeverity.WARNING: "⚠️",
        AlertSeverity.ERROR: "❌",
        AlertSeverity.CRITICAL: "🚨",
    }

    @classmethod
    def format_alert(cls, alert: OutgoingAlert) -> str:
        """Format alert for Telegram."""
        icon = cls.SEVERITY_ICONS.get(alert.severity, "🔔")

        lines = [
            f"{icon} <b>{html.escape(alert.severity.value)} Alert</b>",
            "",
            f"<b>Bot:</b> {html.escape(alert.bot_name)}",
            f"<b>Rule:</b> <code>{html.escape(alert.rule)}</code>",
            f"🕐 {alert.timestamp.strftime('%Y-%m-%d %H:%M:%S')} UTC",
            "",
            html.escape(alert.message),
        ]

        if alert.details:
            lines.append("")
            lines.append(f"<i>{html.escape(alert.details)}</i>")

        return "\n".join(lines)


# ============================================================
# RATE LIMITER
# ============================================================

class TelegramRateLimiter:
    """
    Rate limiter for Telegram messages.

    Prevents excessive message sending.
    """

    def __init__(
        self,
        max_per_minute: int = 20,
        max_per_hour: int = 100,
        clock: Optional[ClockProtocol] = None,
    ):
        self._max_per_minute = max_per_minute
        self._max_per_hour = max_per_hour
        self._clock = clock or ClockFactory.get_clock()
        self._minute_window: List[datetime] = []
        self._hour_window: List[datetime] = []
        self._lock = asyncio.Lock()

    async def acquire(self) -> bool:
        """Try to acquire a send slot."""
        async with self._lock:
            now = self._clock.now()

            minute_ago = now - timedelta(minutes=1)
            hour_ago = now - timedelta(hours=1)

            self._minute_window = [t for t in self._minute_window if t > minute_ago]
            self._hour_window = [t for t in self._hour_window if t > hour_ago]

            if len(self._minute_window) >= self._max_per_minute:
                return False
            if len(self._hour_window) >= self._max_per_hour:
                return False

            self._minute_window.append(now)
            self._hour_window.append(now)

            return True

    @property
    def remaining_minute(self) -> int:
        """Remaining sends in current minute."""
        minute_ago = self._clock.now() - timedelta(minutes=1)
        count = sum(1 for t in self._minute_window if t > minute_ago)
        return max(0, self._max_per_minute - count)


# ============================================================
# TELEGRAM SENDER
# ============================================================

class TelegramSender(NotificationSender):
    """
    Sends alert notifications to Telegram.

    This is a notification-only client.
    NO control commands are processed.
    """

    channel_type = NotificationChannelType.TELEGRAM

    BASE_URL = "https://api.telegram.org/bot"

    def __init__(
        self,
        rate_limiter: Optional[TelegramRateLimiter] = None,
        base_url: Optional[str] = None,
    ):
        self._rate_limiter = rate_limiter or TelegramRateLimiter()
        self._base_url = base_url or self.BASE_URL
        self._formatter = TelegramFormatter()

    async def send(
        self,
        session: aiohttp.ClientSession,
        config: Dict[str, Any],
        alert: OutgoingAlert,
    ) -> None:
        bot_token = self._require(config, "bot_token", "Telegram bot token")
        chat_id = self._require(config, "chat_id", "Telegram chat id")

        if not await self._rate_limiter.acquire():
            raise NotificationDeliveryError("Telegram rate limit reached, message not sent")

        payload = {
            "chat_id": chat_id,
            "text": self._formatter.format_alert(alert),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        await self._post_json(session, f"{self._base_url}{bot_token}/sendMessage", payload, "Telegram API")


__all__ = [
    "TelegramFormatter",
    "TelegramRateLimiter",
    "TelegramSender",
]
