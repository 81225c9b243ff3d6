"""
Condition evaluation for price alerts.

Every function here is pure. Missing or malformed parameters, a missing
previous reading, and a zero previous reading all resolve to "no match".
"""

import math
from typing import Any, Optional, Union

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

# Relative distance from target that still counts as "reached"
PRICE_TARGET_TOLERANCE = 0.005


def _number(params: dict[str, Any], *names: str) -> float:
    """Read the first present numeric parameter among `names`."""
    for name in names:
        value = params.get(name)
        if value is None:
            continue
        if isinstance(value, bool):
            raise ValueError(f"Parameter {name} must be numeric")
        number = float(value)
        if not math.isfinite(number):
            raise ValueError(f"Parameter {name} must be finite")
        return number
    raise ValueError(f"Missing parameter: {'/'.join(names)}")


def parse_condition(
    condition_type: Union[ConditionType, str], params: dict[str, Any]
) -> Condition:
    """
    Build a typed condition from a condition type and a parameter bag.

    Args:
        condition_type: Condition type or its string value
        params: Raw parameters (target/percentage/min/max/threshold)

    Returns:
        The matching condition variant

    Raises:
        ValueError: If the type is unknown or parameters are malformed
    """
    if not isinstance(params, dict):
        raise ValueError("Condition parameters must be a mapping")

    condition_type = ConditionType(condition_type)

    if condition_type == ConditionType.ABOVE:
        return AboveCondition(target=_number(params, "target", "target_value"))

    elif condition_type == ConditionType.BELOW:
        return BelowCondition(target=_number(params, "target", "target_value"))

    elif condition_type == ConditionType.PERCENT_INCREASE:
        return PercentIncreaseCondition(percentage=_number(params, "percentage"))

    elif condition_type == ConditionType.PERCENT_DECREASE:
        return PercentDecreaseCondition(percentage=_number(params, "percentage"))

    elif condition_type == ConditionType.PRICE_TARGET:
        return PriceTargetCondition(target=_number(params, "target", "target_value"))

    elif condition_type == ConditionType.PRICE_RANGE:
        return PriceRangeCondition(
            min_value=_number(params, "min", "min_value"),
            max_value=_number(params, "max", "max_value"),
        )

    elif condition_type == ConditionType.VOLATILITY_SPIKE:
        return VolatilitySpikeCondition(
            threshold=_number(params, "threshold", "volatility_threshold")
        )

    raise ValueError(f"Unknown condition type: {condition_type}")


def _percent_change(current: float, previous: Optional[float]) -> Optional[float]:
    if previous is None or previous == 0:
        return None
    return (current - previous) / previous * 100


def evaluate_condition(
    condition: Condition, current: float, previous: Optional[float]
) -> bool:
    """
    Test a typed condition against the current and previous readings.

    Args:
        condition: Condition variant
        current: Current reading
        previous: Previous reading, None on the first observation

    Returns:
        True when the condition matches
    """
    if previous is None:
        return False

    try:
        if isinstance(condition, AboveCondition):
            return current > condition.target

        if isinstance(condition, BelowCondition):
            return current < condition.target

        if isinstance(condition, PriceRangeCondition):
            return condition.min_value <= current <= condition.max_value

        if isinstance(condition, PriceTargetCondition):
            if condition.target == 0:
                return False
            distance = abs(current - condition.target) / abs(condition.target)
            return distance < PRICE_TARGET_TOLERANCE

        change = _percent_change(current, previous)
        if change is None:
            return False

        if isinstance(condition, PercentIncreaseCondition):
            return change >= condition.percentage

        if isinstance(condition, PercentDecreaseCondition):
            return (previous - current) / previous * 100 >= condition.percentage

        if isinstance(condition, VolatilitySpikeCondition):
            return abs(change) >= condition.threshold

    except (TypeError, ValueError, ArithmeticError):
        return False

    return False


def evaluate(
    condition_type: Union[ConditionType, str],
    params: dict[str, Any],
    current: float,
    previous: Optional[float],
) -> bool:
    """Evaluate a condition given as type plus raw parameters. Never raises."""
    try:
        condition = parse_condition(condition_type, params)
    except (TypeError, ValueError):
        return False
    return evaluate_condition(condition, current, previous)
