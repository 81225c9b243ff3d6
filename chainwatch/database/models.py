"""
Persisted models that are not alert rules: integrations and recent sources.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from chainwatch.rules.types import Severity


class IntegrationType(str, Enum):
    """External delivery target families."""

    DISCORD = "discord"
    TELEGRAM = "telegram"


class IntegrationStatus(str, Enum):
    """Connection state of an integration."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    PENDING = "pending"


@dataclass
class AlertFilter:
    """Which events an integration receives and how much detail."""

    min_severity: Severity = Severity.MEDIUM
    categories: list[str] = field(default_factory=list)  # empty = all categories
    include_price_alerts: bool = True
    # Severity floor for price alert events, used instead of min_severity
    price_alert_min_severity: Severity = Severity.MEDIUM
    include_price_data: bool = True


@dataclass
class ExternalIntegration:
    """An external delivery target (Discord webhook, Telegram bot)."""

    id: str
    type: IntegrationType
    name: str
    # webhook_url / channel_id for Discord, bot_token / chat_id for Telegram
    config: dict[str, Any] = field(default_factory=dict)
    alert_filter: AlertFilter = field(default_factory=AlertFilter)
    status: IntegrationStatus = IntegrationStatus.PENDING
    enabled: bool = True
    last_updated: datetime = field(default_factory=datetime.now)
    last_error: Optional[str] = None


@dataclass
class RecentSource:
    """Usage record of a recently selected source."""

    source_id: str
    last_used_at: datetime
    use_count: int = 1
