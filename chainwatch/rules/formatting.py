"""
Human-readable alert messages.
"""

from typing import Optional

from .types import (
    AboveCondition,
    BelowCondition,
    Condition,
    ConditionType,
    PercentDecreaseCondition,
    PercentIncreaseCondition,
    PriceRangeCondition,
    PriceTargetCondition,
    VolatilitySpikeCondition,
)

CONDITION_LABELS = {
    ConditionType.ABOVE: "Price Above Target",
    ConditionType.BELOW: "Price Below Target",
    ConditionType.PERCENT_INCREASE: "Price Increase %",
    ConditionType.PERCENT_DECREASE: "Price Decrease %",
    ConditionType.PRICE_TARGET: "Price Target Reached",
    ConditionType.PRICE_RANGE: "Price In Range",
    ConditionType.VOLATILITY_SPIKE: "Volatility Spike",
}


def format_currency(value: float) -> str:
    """Format as USD with 2 to 6 fraction digits, e.g. $3,700.00 or $0.999123."""
    text = f"{abs(value):,.6f}"
    whole, fraction = text.split(".")
    fraction = fraction.rstrip("0").ljust(2, "0")
    sign = "-" if value < 0 and text.strip("0.,") else ""
    return f"{sign}${whole}.{fraction}"


def format_percent(value: float, signed: bool = True) -> str:
    """Format a percent change, e.g. +6.2%."""
    if signed:
        return f"{value:+.1f}%"
    return f"{value:.1f}%"


def condition_label(condition_type: ConditionType) -> str:
    return CONDITION_LABELS.get(condition_type, str(condition_type.value))


def format_price_alert_message(
    instrument: str, condition: Condition, current: float
) -> str:
    """
    Build the message for a fired price alert.

    Args:
        instrument: Instrument symbol, e.g. "ETH"
        condition: Condition that matched
        current: Current reading

    Returns:
        Message text
    """
    price = format_currency(current)

    if isinstance(condition, AboveCondition):
        target = format_currency(condition.target)
        return f"{instrument} price is now above {target} at {price}"

    elif isinstance(condition, BelowCondition):
        target = format_currency(condition.target)
        return f"{instrument} price is now below {target} at {price}"

    elif isinstance(condition, PercentIncreaseCondition):
        return f"{instrument} price increased by {condition.percentage:.1f}% to {price}"

    elif isinstance(condition, PercentDecreaseCondition):
        return f"{instrument} price decreased by {condition.percentage:.1f}% to {price}"

    elif isinstance(condition, PriceTargetCondition):
        target = format_currency(condition.target)
        return f"{instrument} has reached target price of {target}"

    elif isinstance(condition, PriceRangeCondition):
        return f"{instrument} price ({price}) is now within target range"

    elif isinstance(condition, VolatilitySpikeCondition):
        return f"{instrument} experienced high volatility, now at {price}"

    return f"{instrument} price alert triggered at {price}"


def format_price_alert_title(instrument: str, condition: Condition) -> str:
    if isinstance(condition, VolatilitySpikeCondition):
        return f"{instrument} Volatility Alert"
    return f"{instrument} Price Alert"


def format_rule_title(source_name: str, change: float) -> str:
    direction = "INCREASE" if change >= 0 else "DECREASE"
    return f"{direction} ALERT: {source_name}"


def format_rule_message(
    source_name: str,
    category: str,
    change: float,
    current: float,
    timeframe: Optional[str] = None,
) -> str:
    """Build the message for a fired alert rule, e.g. "Ethereum volume up 6.2% (24h)"."""
    direction = "up" if change >= 0 else "down"
    label = category.replace("_", " ")
    message = f"{source_name} {label} {direction} {abs(change):.1f}% to {current:,.2f}"
    if timeframe:
        message += f" ({timeframe})"
    return message
