"""
Alert rule, price alert and alert event types.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional, Union


class ConditionType(str, Enum):
    """Comparison semantics a price alert can use."""

    ABOVE = "above"
    BELOW = "below"
    PERCENT_INCREASE = "percentage_increase"
    PERCENT_DECREASE = "percentage_decrease"
    PRICE_TARGET = "price_target"
    PRICE_RANGE = "price_range"
    VOLATILITY_SPIKE = "volatility_spike"


class Severity(Enum):
    """Alert severity levels, ordered by value."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        """Parse a severity from its label, name or numeric value."""
        if isinstance(value, Severity):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown severity: {value}") from None


class EventKind(str, Enum):
    """Where an alert event originated."""

    RULE = "rule"
    PRICE_ALERT = "price-alert"
    SYSTEM = "system"


class EventStatus(str, Enum):
    """Read state of a notification."""

    UNREAD = "unread"
    READ = "read"
    DISMISSED = "dismissed"


TIMEFRAMES = ("1h", "24h", "7d")


@dataclass(frozen=True)
class AboveCondition:
    """Current value strictly above target."""

    target: float
    type: ClassVar[ConditionType] = ConditionType.ABOVE


@dataclass(frozen=True)
class BelowCondition:
    """Current value strictly below target."""

    target: float
    type: ClassVar[ConditionType] = ConditionType.BELOW


@dataclass(frozen=True)
class PercentIncreaseCondition:
    """Rise of at least `percentage` since the previous reading."""

    percentage: float
    type: ClassVar[ConditionType] = ConditionType.PERCENT_INCREASE


@dataclass(frozen=True)
class PercentDecreaseCondition:
    """Fall of at least `percentage` since the previous reading."""

    percentage: float
    type: ClassVar[ConditionType] = ConditionType.PERCENT_DECREASE


@dataclass(frozen=True)
class PriceTargetCondition:
    """Current value within 0.5% of target."""

    target: float
    type: ClassVar[ConditionType] = ConditionType.PRICE_TARGET


@dataclass(frozen=True)
class PriceRangeCondition:
    """Current value inside [min_value, max_value]."""

    min_value: float
    max_value: float
    type: ClassVar[ConditionType] = ConditionType.PRICE_RANGE


@dataclass(frozen=True)
class VolatilitySpikeCondition:
    """Absolute move of at least `threshold` percent since the previous reading."""

    threshold: float
    type: ClassVar[ConditionType] = ConditionType.VOLATILITY_SPIKE


Condition = Union[
    AboveCondition,
    BelowCondition,
    PercentIncreaseCondition,
    PercentDecreaseCondition,
    PriceTargetCondition,
    PriceRangeCondition,
    VolatilitySpikeCondition,
]


def condition_params(condition: Condition) -> dict[str, float]:
    """Flatten a condition into its parameter dict."""
    if isinstance(condition, (AboveCondition, BelowCondition, PriceTargetCondition)):
        return {"target": condition.target}
    if isinstance(condition, (PercentIncreaseCondition, PercentDecreaseCondition)):
        return {"percentage": condition.percentage}
    if isinstance(condition, PriceRangeCondition):
        return {"min": condition.min_value, "max": condition.max_value}
    if isinstance(condition, VolatilitySpikeCondition):
        return {"threshold": condition.threshold}
    raise ValueError(f"Unknown condition: {condition!r}")


@dataclass
class NotificationChannels:
    """Per-channel notify flags for a rule or alert."""

    in_app: bool = True
    sound: bool = True
    push: bool = True
    discord: bool = False
    telegram: bool = False

    @property
    def external(self) -> bool:
        return self.discord or self.telegram

    @property
    def external_types(self) -> list[str]:
        """Integration types this rule or alert delivers to."""
        return [name for name in ("discord", "telegram") if getattr(self, name)]


@dataclass
class AlertRule:
    """Operator-authored rule over percent changes of many metrics."""

    id: str
    name: str
    enabled: bool = True
    source_ids: list[str] = field(default_factory=list)  # empty = all sources
    categories: list[str] = field(default_factory=list)  # empty = all categories
    threshold: float = 5.0  # minimum absolute percent change
    minimum_volume: float = 0.0  # 0 = any volume
    timeframes: list[str] = field(default_factory=list)  # empty = all timeframes
    severity: Severity = Severity.MEDIUM
    channels: NotificationChannels = field(default_factory=NotificationChannels)


@dataclass
class PriceAlert:
    """End-user-authored alert on a single instrument of one source."""

    id: str
    source_id: str
    instrument: str
    condition: Condition
    timeframe: str = "24h"
    repeatable: bool = False
    enabled: bool = True
    created_at: datetime = field(default_factory=datetime.now)
    last_triggered_at: Optional[datetime] = None
    name: Optional[str] = None
    channels: NotificationChannels = field(default_factory=NotificationChannels)

    @classmethod
    def create(
        cls,
        source_id: str,
        instrument: str,
        condition: Condition,
        timeframe: str = "24h",
        repeatable: bool = False,
        name: Optional[str] = None,
        channels: Optional[NotificationChannels] = None,
    ) -> "PriceAlert":
        """Build a new enabled alert with a generated id."""
        if timeframe not in TIMEFRAMES:
            raise ValueError(f"Unknown timeframe: {timeframe}")
        return cls(
            id=f"price-alert-{uuid.uuid4().hex[:12]}",
            source_id=source_id,
            instrument=instrument,
            condition=condition,
            timeframe=timeframe,
            repeatable=repeatable,
            name=name,
            channels=channels or NotificationChannels(),
        )

    @property
    def metric_key(self) -> str:
        return f"price:{self.instrument}"

    @property
    def is_terminal(self) -> bool:
        """Non-repeatable alerts stop matching once they have fired."""
        return not self.repeatable and self.last_triggered_at is not None

    def reset(self) -> None:
        """Clear the trigger state so a fired one-shot alert can fire again."""
        self.last_triggered_at = None


@dataclass
class EventAction:
    """Action a user can take on a notification."""

    label: str
    action: str  # "view-chart", "view-source", "mark-read", "dismiss"
    href: Optional[str] = None


@dataclass
class AlertEvent:
    """A fired alert, as stored in the notification history."""

    kind: EventKind
    category: str
    title: str
    message: str
    severity: Severity
    timestamp: datetime = field(default_factory=datetime.now)
    status: EventStatus = EventStatus.UNREAD
    source_id: Optional[str] = None
    actions: list[EventAction] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class PriceAlertTrigger:
    """Archived record of a price alert firing."""

    alert_id: str
    source_id: str
    instrument: str
    condition_type: ConditionType
    trigger_value: float
    previous_value: Optional[float]
    triggered_at: datetime
    message: str
    params: dict[str, float] = field(default_factory=dict)
