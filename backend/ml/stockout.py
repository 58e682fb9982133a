"""
Stockout Simulator — Walk current stock down the predicted consumption series.

The first day the running balance reaches zero is the stockout day. A
series exhausted without reaching zero reports len(series) + 1, meaning
"beyond the forecast horizon", not "never".
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, timedelta

MIN_STOCKOUT_CONFIDENCE = 0.5


@dataclass(frozen=True)
class StockoutProjection:
    days_until_stockout: int
    stockout_date: date
    confidence: float
    beyond_horizon: bool


def series_volatility(series: Sequence[float]) -> float:
    """Coefficient of variation of a predicted series (0 for empty/zero series)."""
    if not series:
        return 0.0
    mean = sum(series) / len(series)
    if mean <= 0:
        return 0.0
    variance = sum((v - mean) ** 2 for v in series) / len(series)
    return math.sqrt(variance) / mean


def simulate_stockout(current_quantity: float, predicted_series: Sequence[int], as_of: date) -> StockoutProjection:
    """Project the stockout day for `current_quantity` against `predicted_series`."""
    balance = current_quantity
    stockout_day = None

    for day, consumption in enumerate(predicted_series, start=1):
        balance -= consumption
        if balance <= 0:
            stockout_day = day
            break

    beyond_horizon = stockout_day is None
    if beyond_horizon:
        stockout_day = len(predicted_series) + 1

    confidence = max(MIN_STOCKOUT_CONFIDENCE, 1 - series_volatility(predicted_series))

    return StockoutProjection(
        days_until_stockout=stockout_day,
        stockout_date=as_of + timedelta(days=stockout_day),
        confidence=round(confidence, 4),
        beyond_horizon=beyond_horizon,
    )
