from __future__ import annotations

from typing import Sequence

from algo_engine.errors import UnsupportedIndicator, ValidationError
from algo_engine.storage.duckdb_store import Bar
from algo_engine.strategy.models import EntryCondition

DEFAULT_PERIODS = {"moving_average": 20, "vwap": 20, "rsi": 14}

_INDICATOR_ALIASES = {
    "price": "close",
    "close": "close",
    "candle": "close",
    "ltp": "close",
    "number": "number",
    "value": "number",
    "volume": "volume",
    "moving average": "moving_average",
    "moving_average": "moving_average",
    "sma": "moving_average",
    "ma": "moving_average",
    "vwap": "vwap",
    "rsi": "rsi",
}

_COMPARATOR_ALIASES = {
    "crosses above": "crosses_above",
    "crosses below": "crosses_below",
    "higher than": "gt",
    "greater than": "gt",
    ">": "gt",
    "less than": "lt",
    "lower than": "lt",
    "<": "lt",
    "equal": "eq",
    "equal to": "eq",
    "==": "eq",
    "not equal": "ne",
    "not equal to": "ne",
    "!=": "ne",
    "greater than or equal": "ge",
    "higher than or equal": "ge",
    ">=": "ge",
    "less than or equal": "le",
    "lower than or equal": "le",
    "<=": "le",
}


def _indicator_key(name: str) -> str:
    key = _INDICATOR_ALIASES.get(name.strip().lower())
    if key is None:
        raise UnsupportedIndicator(f"indicator not supported: {name}")
    return key


def _comparator_key(name: str) -> str:
    key = _COMPARATOR_ALIASES.get(name.strip().lower())
    if key is None:
        raise ValidationError(f"comparator not supported: {name}")
    return key


def validate_conditions(conditions: Sequence[EntryCondition]) -> None:
    for condition in conditions:
        _indicator_key(condition.indicator1)
        right = _indicator_key(condition.indicator2)
        _comparator_key(condition.comparator)
        if right == "number" and condition.value is None:
            raise ValidationError(f"condition '{condition.describe()}' compares against a number but has no value")


def _period(key: str, condition: EntryCondition) -> int:
    return condition.period or DEFAULT_PERIODS.get(key, 1)


def required_history(conditions: Sequence[EntryCondition]) -> int:
    needed = 2
    for condition in conditions:
        for name in (condition.indicator1, condition.indicator2):
            key = _indicator_key(name)
            if key in DEFAULT_PERIODS:
                extra = 1 if key == "rsi" else 0
                needed = max(needed, _period(key, condition) + extra + 1)
    return needed


def sma(values: Sequence[float], period: int) -> float | None:
    if period <= 0:
        raise ValueError("period must be positive")
    if len(values) < period:
        return None
    window = values[-period:]
    return sum(window) / float(period)


def _vwap(bars: Sequence[Bar], period: int) -> float | None:
    if len(bars) < period:
        return None
    window = bars[-period:]
    volume = sum(bar.volume for bar in window)
    if volume <= 0:
        return None
    return sum(((bar.high + bar.low + bar.close) / 3.0) * bar.volume for bar in window) / volume


def _rsi(closes: Sequence[float], period: int) -> float | None:
    if len(closes) < period + 1:
        return None
    gains = 0.0
    losses = 0.0
    for prev, curr in zip(closes[:period], closes[1 : period + 1]):
        change = curr - prev
        gains += max(0.0, change)
        losses += max(0.0, -change)
    avg_gain = gains / period
    avg_loss = losses / period
    for prev, curr in zip(closes[period:-1], closes[period + 1 :]):
        change = curr - prev
        avg_gain = (avg_gain * (period - 1) + max(0.0, change)) / period
        avg_loss = (avg_loss * (period - 1) + max(0.0, -change)) / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def indicator_value(name: str, bars: Sequence[Bar], condition: EntryCondition) -> float | None:
    """Value of ``name`` at the last bar of ``bars`` (oldest first)."""
    key = _indicator_key(name)
    if key == "number":
        return condition.value
    if not bars:
        return None
    if key == "close":
        return bars[-1].close
    if key == "volume":
        return bars[-1].volume
    if key == "moving_average":
        return sma([bar.close for bar in bars], _period(key, condition))
    if key == "vwap":
        return _vwap(bars, _period(key, condition))
    return _rsi([bar.close for bar in bars], _period(key, condition))


def evaluate_condition(condition: EntryCondition, bars: Sequence[Bar]) -> bool:
    comparator = _comparator_key(condition.comparator)
    left = indicator_value(condition.indicator1, bars, condition)
    right = indicator_value(condition.indicator2, bars, condition)
    if left is None or right is None:
        return False
    if comparator in {"crosses_above", "crosses_below"}:
        previous = bars[:-1]
        prev_left = indicator_value(condition.indicator1, previous, condition)
        prev_right = indicator_value(condition.indicator2, previous, condition)
        if prev_left is None or prev_right is None:
            return False
        if comparator == "crosses_above":
            return prev_left <= prev_right and left > right
        return prev_left >= prev_right and left < right
    if comparator == "gt":
        return left > right
    if comparator == "lt":
        return left < right
    if comparator == "ge":
        return left >= right
    if comparator == "le":
        return left <= right
    if comparator == "eq":
        return abs(left - right) < 1e-9
    return abs(left - right) >= 1e-9


def evaluate_conditions(conditions: Sequence[EntryCondition], bars: Sequence[Bar]) -> bool:
    if not conditions:
        return False
    return all(evaluate_condition(condition, bars) for condition in conditions)
