"""
Notifications Package.

Alert delivery to Slack webhooks, generic webhooks and Telegram.
"""

from .base import NotificationDeliveryError, NotificationSender, OutgoingAlert
from .dispatcher import NotificationDispatcher, channel_matches, default_senders
from .telegram import TelegramFormatter, TelegramRateLimiter, TelegramSender
from .webhook import SlackWebhookSender, WebhookSender


__all__ = [
    "NotificationDeliveryError",
    "NotificationSender",
    "OutgoingAlert",
    "NotificationDispatcher",
    "channel_matches",
    "default_senders",
    "TelegramFormatter",
    "TelegramRateLimiter",
    "TelegramSender",
    "SlackWebhookSender",
    "WebhookSender",
]
