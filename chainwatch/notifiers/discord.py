"""
Discord webhook notifier.
"""

import time
from typing import Any, Optional

import requests

from chainwatch.rules.types import AlertEvent, Severity
from .base import DeliveryResult, ExternalMessage, ExternalNotifier, build_event_message

# Discord embed limits
MAX_TITLE_LENGTH = 256
MAX_DESCRIPTION_LENGTH = 4096
MAX_FIELDS = 25


class DiscordNotifier(ExternalNotifier):
    """Sends notifications via Discord webhook."""

    channel = "discord"

    def __init__(
        self,
        webhook_url: str,
        username: Optional[str] = None,
        mention_on_critical: bool = True,
        include_price_data: bool = True,
    ):
        """
        Initialize Discord notifier.

        Args:
            webhook_url: Discord webhook URL
            username: Optional override of the webhook's display name
            mention_on_critical: Whether to @here on critical alerts
            include_price_data: Whether to append current/previous values
        """
        super().__init__(include_price_data=include_price_data)
        self.webhook_url = webhook_url
        self.username = username
        self.mention_on_critical = mention_on_critical

    def send(self, event: AlertEvent) -> DeliveryResult:
        """Send alert event to Discord."""
        try:
            message = build_event_message(event, self.include_price_data)
        except Exception as e:
            return DeliveryResult.failed(self.channel, f"Could not format event: {e}")

        mention = self.mention_on_critical and event.severity == Severity.CRITICAL
        return self._deliver(self._create_payload(message, mention=mention))

    def send_message(self, message: ExternalMessage) -> DeliveryResult:
        """Send a prepared message to Discord."""
        return self._deliver(self._create_payload(message))

    def _deliver(self, payload: dict[str, Any]) -> DeliveryResult:
        try:
            response = self._send_webhook(payload)

            if response.ok:
                return DeliveryResult.delivered(self.channel)
            else:
                return DeliveryResult.failed(
                    self.channel, f"HTTP {response.status_code}: {response.text}"
                )

        except requests.exceptions.ConnectionError as e:
            return DeliveryResult.failed(self.channel, f"Connection error: {str(e)}")
        except Exception as e:
            return DeliveryResult.failed(self.channel, str(e))

    def _send_webhook(self, payload: dict[str, Any]) -> requests.Response:
        """Send webhook with rate limit handling."""
        response = requests.post(
            self.webhook_url,
            json=payload,
            timeout=10,
        )

        # Handle rate limiting
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "1")
            time.sleep(float(retry_after))
            response = requests.post(
                self.webhook_url,
                json=payload,
                timeout=10,
            )

        return response

    def _create_payload(
        self, message: ExternalMessage, mention: bool = False
    ) -> dict[str, Any]:
        """Create Discord webhook payload."""
        payload: dict[str, Any] = {
            "embeds": [self._create_embed(message)],
        }

        if self.username:
            payload["username"] = self.username

        # Add @here mention for critical alerts
        if mention:
            payload["content"] = "@here"

        return payload

    def _create_embed(self, message: ExternalMessage) -> dict[str, Any]:
        """Create Discord embed, truncated to Discord's limits."""
        embed: dict[str, Any] = {
            "title": message.title[:MAX_TITLE_LENGTH],
            "description": message.description[:MAX_DESCRIPTION_LENGTH],
            "color": message.color,
            "fields": [
                {
                    "name": str(f["name"]),
                    "value": str(f["value"]),
                    "inline": bool(f.get("inline", False)),
                }
                for f in message.fields[:MAX_FIELDS]
            ],
            "timestamp": message.timestamp.isoformat(),
        }

        if message.footer:
            embed["footer"] = {"text": message.footer}
        if message.url:
            embed["url"] = message.url

        return embed
