"""
Webhook Senders.

============================================================
CHANNELS
============================================================
- SLACK_WEBHOOK: Block Kit message posted to ``config["url"]``
- WEBHOOK: JSON body posted to ``config["url"]`` with optional
  ``config["headers"]``

============================================================
"""

from typing import Any, Dict, List

import aiohttp

from monitoring.notifications.base import (
    DEFAULT_EMOJI,
    SEVERITY_EMOJI,
    NotificationSender,
    OutgoingAlert,
)
from storage.models.enums import NotificationChannelType


WEBHOOK_SOURCE = "bot-fleet-monitor"


class SlackWebhookSender(NotificationSender):

    channel_type = NotificationChannelType.SLACK_WEBHOOK

    @staticmethod
    def build_payload(alert: OutgoingAlert) -> Dict[str, Any]:
        emoji = SEVERITY_EMOJI.get(alert.severity, DEFAULT_EMOJI)
        blocks: List[Dict[str, Any]] = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"{emoji} {alert.severity.value} Alert",
                    "emoji": True,
                },
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Bot:*\n{alert.bot_name}"},
                    {"type": "mrkdwn", "text": f"*Severity:*\n{alert.severity.value}"},
                    {"type": "mrkdwn", "text": f"*Rule:*\n{alert.rule}"},
                    {"type": "mrkdwn", "text": f"*Time:*\n{alert.timestamp_iso}"},
                ],
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Message:*\n{alert.message}"},
            },
        ]
        if alert.details:
            blocks.append(
                {
                    "type": "context",
                    "elements": [{"type": "mrkdwn", "text": f"_Details: {alert.details}_"}],
                }
            )
        return {"blocks": blocks}

    async def send(
        self,
        session: aiohttp.ClientSession,
        config: Dict[str, Any],
        alert: OutgoingAlert,
    ) -> None:
        url = self._require(config, "url", "Slack webhook URL")
        await self._post_json(session, url, self.build_payload(alert), "Slack webhook")


class WebhookSender(NotificationSender):

    channel_type = NotificationChannelType.WEBHOOK

    @staticmethod
    def build_payload(alert: OutgoingAlert) -> Dict[str, Any]:
        return {
            "event": "alert",
            "source": WEBHOOK_SOURCE,
            "severity": alert.severity.value,
            "rule": alert.rule,
            "botName": alert.bot_name,
            "message": alert.message,
            "details": alert.details,
            "timestamp": alert.timestamp_iso,
        }

    async def send(
        self,
        session: aiohttp.ClientSession,
        config: Dict[str, Any],
        alert: OutgoingAlert,
    ) -> None:
        url = self._require(config, "url", "Webhook URL")
        headers = {str(k): str(v) for k, v in (config.get("headers") or {}).items()}
        await self._post_json(session, url, self.build_payload(alert), "Webhook", headers=headers or None)


__all__ = ["SlackWebhookSender", "WebhookSender", "WEBHOOK_SOURCE"]
