"""
Severity classification for price alerts.
"""

from typing import Any, Union

from .conditions import parse_condition
from .types import (
    AboveCondition,
    BelowCondition,
    Condition,
    ConditionType,
    PercentDecreaseCondition,
    PercentIncreaseCondition,
    PriceRangeCondition,
    PriceTargetCondition,
    Severity,
    VolatilitySpikeCondition,
)


def classify_severity(condition: Condition) -> Severity:
    """Map a condition to a severity level. Unrecognized conditions are MEDIUM."""
    if isinstance(condition, VolatilitySpikeCondition):
        if condition.threshold >= 10:
            return Severity.CRITICAL
        return Severity.HIGH

    if isinstance(condition, PriceTargetCondition):
        return Severity.HIGH

    if isinstance(condition, (PercentIncreaseCondition, PercentDecreaseCondition)):
        if condition.percentage >= 15:
            return Severity.HIGH
        elif condition.percentage >= 5:
            return Severity.MEDIUM
        return Severity.LOW

    if isinstance(condition, (AboveCondition, BelowCondition)):
        return Severity.MEDIUM

    if isinstance(condition, PriceRangeCondition):
        return Severity.LOW

    return Severity.MEDIUM


def classify(
    condition_type: Union[ConditionType, str], params: dict[str, Any]
) -> Severity:
    """Classify from a condition type and raw parameters."""
    try:
        condition = parse_condition(condition_type, params)
    except (TypeError, ValueError):
        try:
            return _WITHOUT_PARAMS[ConditionType(condition_type)]
        except ValueError:
            return Severity.MEDIUM
    return classify_severity(condition)


# Levels used when the parameters needed for scaling are missing
_WITHOUT_PARAMS = {
    ConditionType.ABOVE: Severity.MEDIUM,
    ConditionType.BELOW: Severity.MEDIUM,
    ConditionType.PERCENT_INCREASE: Severity.LOW,
    ConditionType.PERCENT_DECREASE: Severity.LOW,
    ConditionType.PRICE_TARGET: Severity.HIGH,
    ConditionType.PRICE_RANGE: Severity.LOW,
    ConditionType.VOLATILITY_SPIKE: Severity.HIGH,
}
