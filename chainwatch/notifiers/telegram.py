"""
Telegram bot notifier.
"""

import time
from typing import Any

import requests

from .base import DeliveryResult, ExternalMessage, ExternalNotifier

MAX_MESSAGE_LENGTH = 4096


class TelegramNotifier(ExternalNotifier):
    """Sends notifications through a Telegram bot's sendMessage call."""

    channel = "telegram"
    API_URL = "https://api.telegram.org/bot{token}/sendMessage"

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        parse_mode: str = "Markdown",
        include_price_data: bool = True,
    ):
        """
        Initialize Telegram notifier.

        Args:
            bot_token: Bot API token
            chat_id: Target chat or channel id
            parse_mode: Telegram parse mode for the message body
            include_price_data: Whether to append current/previous values
        """
        super().__init__(include_price_data=include_price_data)
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.parse_mode = parse_mode

    @property
    def url(self) -> str:
        return self.API_URL.format(token=self.bot_token)

    def send_message(self, message: ExternalMessage) -> DeliveryResult:
        """Send a prepared message to Telegram."""
        try:
            payload = self._create_payload(message)
            response = self._post(payload)

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

    def _post(self, payload: dict[str, Any]) -> requests.Response:
        """Post the message, retrying once when rate limited."""
        response = requests.post(self.url, json=payload, timeout=10)

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "1")
            time.sleep(float(retry_after))
            response = requests.post(self.url, json=payload, timeout=10)

        return response

    def _create_payload(self, message: ExternalMessage) -> dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "text": self.format_text(message),
            "parse_mode": self.parse_mode,
            "disable_web_page_preview": True,
        }

    @staticmethod
    def format_text(message: ExternalMessage) -> str:
        """Render a message as Telegram Markdown, truncated to 4096 characters."""
        text = f"*{message.title}*\n\n{message.description}\n\n"

        for f in message.fields:
            text += f"*{f['name']}*: {f['value']}\n"

        if message.url:
            text += f"\n[Open in explorer]({message.url})\n"

        if message.footer:
            text += f"\n_{message.footer}_"

        return text[:MAX_MESSAGE_LENGTH]
