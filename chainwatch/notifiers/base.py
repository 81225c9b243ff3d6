"""
Base notifier classes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from chainwatch.database.models import ExternalIntegration, IntegrationType
from chainwatch.rules.formatting import format_currency, format_percent
from chainwatch.rules.types import AlertEvent, Severity

# Accent colors shared by external channels
SEVERITY_COLORS = {
    Severity.CRITICAL: 0xF44336,  # Red
    Severity.HIGH: 0xFF9800,  # Orange
    Severity.MEDIUM: 0xF0B90B,  # Yellow
    Severity.LOW: 0x4CAF50,  # Green
}


FOOTER = "ChainWatch Alert System"


@dataclass
class ExternalMessage:
    """Platform-neutral outbound message, rendered by each external notifier."""

    title: str
    description: str
    color: int
    timestamp: datetime
    fields: list[dict[str, Any]] = field(default_factory=list)
    footer: Optional[str] = FOOTER
    url: Optional[str] = None


def _format_value(category: str, value: Any) -> str:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return str(value)
    if category == "price":
        return format_currency(value)
    return f"{value:,.2f}"


def build_event_message(event: AlertEvent, include_price_data: bool = True) -> ExternalMessage:
    """
    Build the outbound message for an alert event.

    Args:
        event: Event to describe
        include_price_data: Append current and previous values as fields

    Returns:
        ExternalMessage
    """
    metadata = event.metadata
    fields = [
        {
            "name": "Source",
            "value": str(metadata.get("source_name") or event.source_id or "-"),
            "inline": True,
        },
        {"name": "Severity", "value": event.severity.label, "inline": True},
        {"name": "Category", "value": event.category, "inline": True},
    ]

    if "change" in metadata:
        fields.append({
            "name": "Change",
            "value": format_percent(float(metadata["change"])),
            "inline": True,
        })
    if metadata.get("timeframe"):
        fields.append({"name": "Timeframe", "value": metadata["timeframe"], "inline": True})

    if include_price_data:
        for key, name in (("current", "Current"), ("previous", "Previous")):
            if metadata.get(key) is not None:
                fields.append({
                    "name": name,
                    "value": _format_value(event.category, metadata[key]),
                    "inline": True,
                })

    url = next((a.href for a in event.actions if a.href), None)

    return ExternalMessage(
        title=event.title,
        description=event.message,
        color=SEVERITY_COLORS.get(event.severity, SEVERITY_COLORS[Severity.MEDIUM]),
        timestamp=event.timestamp,
        fields=fields,
        url=url,
    )


def build_test_message(integration: ExternalIntegration) -> ExternalMessage:
    """Synthetic message used to verify an integration works."""
    now = datetime.now()
    return ExternalMessage(
        title="Connection Test",
        description="This is a test message to verify your integration is working correctly.",
        color=SEVERITY_COLORS[Severity.LOW],
        timestamp=now,
        fields=[
            {"name": "Integration Type", "value": integration.type.value, "inline": True},
            {"name": "Integration Name", "value": integration.name, "inline": True},
            {"name": "Test Time", "value": now.isoformat(), "inline": False},
        ],
    )


class DeliveryStatus(str, Enum):
    """Outcome of one delivery attempt."""

    DELIVERED = "delivered"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class DeliveryResult:
    """Result of a notification attempt on one channel."""

    status: DeliveryStatus
    channel: str
    detail: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED

    @classmethod
    def delivered(cls, channel: str, detail: Optional[str] = None) -> "DeliveryResult":
        return cls(DeliveryStatus.DELIVERED, channel, detail)

    @classmethod
    def skipped(cls, channel: str, reason: str) -> "DeliveryResult":
        return cls(DeliveryStatus.SKIPPED, channel, reason)

    @classmethod
    def failed(cls, channel: str, error: str) -> "DeliveryResult":
        return cls(DeliveryStatus.FAILED, channel, error)


class Notifier(ABC):
    """Abstract base class for notifiers."""

    channel = "notifier"

    @abstractmethod
    def send(self, event: AlertEvent) -> DeliveryResult:
        """
        Deliver a single alert event.

        Implementations never raise; failures come back as FAILED results.

        Args:
            event: Event to deliver

        Returns:
            DeliveryResult describing the outcome
        """
        pass

    def send_batch(self, events: list[AlertEvent]) -> list[DeliveryResult]:
        """
        Deliver multiple events.

        Args:
            events: Events to deliver

        Returns:
            One DeliveryResult per event
        """
        return [self.send(event) for event in events]


class ExternalNotifier(Notifier):
    """Notifier that renders an ExternalMessage for a remote platform."""

    def __init__(self, include_price_data: bool = True):
        self.include_price_data = include_price_data

    def send(self, event: AlertEvent) -> DeliveryResult:
        try:
            message = build_event_message(event, self.include_price_data)
        except Exception as e:
            return DeliveryResult.failed(self.channel, f"Could not format event: {e}")
        return self.send_message(message)

    @abstractmethod
    def send_message(self, message: ExternalMessage) -> DeliveryResult:
        """Render and post a message; never raises."""
        pass


class NotifierFactory:
    """Factory for creating notifier instances."""

    @staticmethod
    def create(integration: ExternalIntegration) -> Notifier:
        """
        Create a notifier for an external integration.

        Args:
            integration: Integration configuration

        Returns:
            Appropriate Notifier instance

        Raises:
            ValueError: If the integration type is unknown
        """
        config = integration.config
        include_price_data = integration.alert_filter.include_price_data

        if integration.type == IntegrationType.DISCORD:
            from .discord import DiscordNotifier

            return DiscordNotifier(
                webhook_url=config.get("webhook_url", ""),
                username=config.get("username"),
                mention_on_critical=config.get("mention_on_critical", True),
                include_price_data=include_price_data,
            )

        elif integration.type == IntegrationType.TELEGRAM:
            from .telegram import TelegramNotifier

            return TelegramNotifier(
                bot_token=config.get("bot_token", ""),
                chat_id=str(config.get("chat_id", "")),
                include_price_data=include_price_data,
            )

        else:
            raise ValueError(f"Unknown integration type: {integration.type}")
