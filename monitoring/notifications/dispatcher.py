"""
Notification Dispatcher.

============================================================
PURPOSE
============================================================
Delivers alert notifications to every matching active channel.

============================================================
FLOW
============================================================
1. Select active channels whose min_severity and rule filters
   match the alert; drop duplicate targets
2. Resolve the bot name for display
3. Send to all channels concurrently
4. Record delivery or failure on each channel

``dispatch()`` is fire-and-forget: it spawns a task and returns.
Task failures are logged by a done-callback, never re-raised.

============================================================
"""

import asyncio
import json
import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

import aiohttp

from core.clock import ClockFactory, ClockProtocol
from monitoring.config import NotificationSettings
from monitoring.models import AlertNotification
from monitoring.notifications.base import NotificationSender, OutgoingAlert
from monitoring.notifications.telegram import TelegramSender
from monitoring.notifications.webhook import SlackWebhookSender, WebhookSender
from storage.database import Database
from storage.models.enums import AlertSeverity
from storage.models.monitoring import NotificationChannel
from storage.repositories.instances import InstanceRepository
from storage.repositories.monitoring import NotificationChannelRepository


logger = logging.getLogger(__name__)


def default_senders() -> Dict[str, NotificationSender]:
    senders: List[NotificationSender] = [SlackWebhookSender(), WebhookSender(), TelegramSender()]
    return {sender.channel_type.value: sender for sender in senders}


def channel_matches(channel: NotificationChannel, severity: AlertSeverity, rule: str) -> bool:
    """Severity at or above the channel minimum, and rule in its filter (if any)."""
    if channel.min_severity:
        try:
            minimum = AlertSeverity(channel.min_severity)
        except ValueError:
            logger.warning(f"Channel {channel.name} has unknown min_severity {channel.min_severity}")
            return False
        if severity.rank < minimum.rank:
            return False
    if channel.rules and rule not in channel.rules:
        return False
    return True


def _dedupe(channels: Iterable[NotificationChannel]) -> List[NotificationChannel]:
    seen: Set[Tuple[str, str]] = set()
    unique: List[NotificationChannel] = []
    for channel in channels:
        target = (channel.type, json.dumps(channel.config or {}, sort_keys=True, default=str))
        if target in seen:
            continue
        seen.add(target)
        unique.append(channel)
    return unique


class NotificationDispatcher:
    """Best-effort, concurrent alert delivery."""

    def __init__(
        self,
        database: Database,
        settings: Optional[NotificationSettings] = None,
        clock: Optional[ClockProtocol] = None,
        senders: Optional[Dict[str, NotificationSender]] = None,
    ) -> None:
        self._db = database
        self._settings = settings or NotificationSettings()
        self._clock = clock or ClockFactory.get_clock()
        self._senders = senders if senders is not None else default_senders()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    # --------------------------------------------------------
    # FIRE-AND-FORGET
    # --------------------------------------------------------

    def dispatch(self, notification: AlertNotification) -> Optional[asyncio.Task]:
        """Start delivery in the background and return immediately."""
        if not self._settings.enabled:
            return None

        task = asyncio.create_task(self.deliver_alert(notification))
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Notification delivery failed: {error}")

    async def drain(self) -> None:
        """Wait for every in-flight delivery."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --------------------------------------------------------
    # DELIVERY
    # --------------------------------------------------------

    async def deliver_alert(self, notification: AlertNotification) -> int:
        """
        Deliver one alert to every matching channel.

        Returns:
            Number of channels that accepted the notification
        """
        channels, bot_name = await self._db.run_in_thread(self._load_targets, notification)
        if not channels:
            logger.debug(
                f"No notification channels matched severity={notification.severity.value} "
                f"rule={notification.rule}"
            )
            return 0

        alert = OutgoingAlert(
            severity=notification.severity,
            rule=notification.rule,
            bot_name=bot_name,
            message=notification.message,
            details=notification.details,
            timestamp=self._clock.now(),
        )

        timeout = aiohttp.ClientTimeout(total=self._settings.http_timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            results = await asyncio.gather(
                *(self._send_to_channel(session, channel, alert) for channel in channels)
            )
        return sum(1 for delivered in results if delivered)

    def _load_targets(self, notification: AlertNotification) -> Tuple[List[NotificationChannel], str]:
        with self._db.session_scope() as session:
            active = NotificationChannelRepository(session).list_active()
            channels = _dedupe(
                c for c in active if channel_matches(c, notification.severity, notification.rule)
            )

            bot_name = notification.bot_instance_id or "unknown"
            if channels and notification.bot_instance_id:
                instance = InstanceRepository(session).get(notification.bot_instance_id)
                if instance is not None:
                    bot_name = instance.name

        return channels, bot_name

    async def _send_to_channel(
        self,
        session: aiohttp.ClientSession,
        channel: NotificationChannel,
        alert: OutgoingAlert,
    ) -> bool:
        sender = self._senders.get(channel.type)
        if sender is None:
            logger.warning(f'Unknown channel type "{channel.type}" for channel "{channel.name}", skipping')
            return False

        try:
            await sender.send(session, channel.config or {}, alert)
        except Exception as e:
            logger.error(f'Failed to deliver alert to channel "{channel.name}" ({channel.type}): {e}')
            await self._db.run_in_thread(self._record, channel, str(e))
            return False

        logger.info(
            f'Delivered alert [{alert.severity.value}] "{alert.rule}" to channel "{channel.name}" ({channel.type})'
        )
        await self._db.run_in_thread(self._record, channel)
        return True

    def _record(self, channel: NotificationChannel, error: Optional[str] = None) -> None:
        try:
            with self._db.transaction_scope() as session:
                repo = NotificationChannelRepository(session)
                if error is None:
                    repo.record_delivery(channel.id, self._clock.now())
                else:
                    repo.record_failure(channel.id, error)
        except Exception as e:
            logger.error(f"Failed to update delivery tracking for channel {channel.id}: {e}")


__all__ = [
    "NotificationDispatcher",
    "channel_matches",
    "default_senders",
]
