"""
Demand Forecaster — Statistical demand model from consumption history.

Turns a trailing window of daily consumption for one (product, location)
into a demand model and a day-by-day predicted consumption series.

Algorithm:
  avg        = mean of supplied samples (missing days are skipped, never zero-filled)
  volatility = σ / avg                         (0 when avg == 0)
  trend      = OLS slope of (day offset, qty)  → increasing / decreasing / stable
  confidence = max(0.1, min(1, min(1, n/30) − min(0.5, volatility)))
  series[d]  = round(max(0, avg × trend_factor × seasonal_factor × weekly[dow(d)]))

A forecast built from zero samples carries confidence 0 and a zero series;
downstream stages treat it as "do not act automatically".
"""

import hashlib
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from typing import Any

import numpy as np
import structlog

from integrations.base import ConsumptionSample

logger = structlog.get_logger()

TREND_THRESHOLD = 0.1
TREND_FACTORS = {
    "increasing": 1.1,
    "decreasing": 0.9,
    "stable": 1.0,
}

# Business days weighted above weekends. Index = date.weekday() (Monday = 0).
DEFAULT_WEEKLY_PATTERN = (1.2, 1.1, 1.1, 1.1, 1.0, 0.8, 0.7)

FULL_CONFIDENCE_SAMPLES = 30
MAX_VOLATILITY_PENALTY = 0.5
MIN_CONFIDENCE = 0.1
# Below this many observed days the day-of-week mix is too thin to correct for
MIN_SAMPLES_FOR_SEASONAL_FACTOR = 14


@dataclass(frozen=True)
class WeeklySeasonality:
    """Day-of-week demand multipliers. Pluggable per category or deployment."""

    weights: tuple[float, ...] = DEFAULT_WEEKLY_PATTERN

    def __post_init__(self):
        if len(self.weights) != 7:
            raise ValueError("WeeklySeasonality needs exactly 7 weights (Monday..Sunday)")
        if any(w < 0 for w in self.weights):
            raise ValueError("Seasonality weights must be non-negative")

    def factor(self, day: date) -> float:
        return self.weights[day.weekday()]


@dataclass(frozen=True)
class DemandForecast:
    """Ephemeral demand model for one (product, location). Never authoritative."""

    product_id: str
    location_id: str
    as_of: date
    samples_count: int
    average_daily_demand: float
    trend: str
    trend_slope: float
    volatility: float
    seasonal_factor: float
    confidence: float
    predicted_series: tuple[int, ...] = field(default_factory=tuple)

    @property
    def is_actionable(self) -> bool:
        return self.confidence > 0

    @property
    def trend_factor(self) -> float:
        return TREND_FACTORS[self.trend]

    @property
    def weekly_demand(self) -> float:
        """Demand over the next seven predicted days."""
        if len(self.predicted_series) >= 7:
            return float(sum(self.predicted_series[:7]))
        return self.average_daily_demand * 7

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["as_of"] = self.as_of.isoformat()
        payload["predicted_series"] = list(self.predicted_series)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "DemandForecast":
        data = dict(payload)
        data["as_of"] = date.fromisoformat(data["as_of"])
        data["predicted_series"] = tuple(int(v) for v in data["predicted_series"])
        return cls(**data)


def interpret_trend(slope: float) -> str:
    if slope > TREND_THRESHOLD:
        return "increasing"
    if slope < -TREND_THRESHOLD:
        return "decreasing"
    return "stable"


def calculate_confidence(samples_count: int, volatility: float) -> float:
    """Data-quality confidence in [0.1, 1]; exactly 0 when there is no data."""
    if samples_count <= 0:
        return 0.0
    data_quality = min(1.0, samples_count / FULL_CONFIDENCE_SAMPLES)
    volatility_penalty = min(MAX_VOLATILITY_PENALTY, volatility)
    return max(MIN_CONFIDENCE, min(1.0, data_quality - volatility_penalty))


def aggregate_daily(samples: Sequence[ConsumptionSample]) -> list[tuple[date, float]]:
    """Collapse samples to one quantity per observed date, ordered by date."""
    totals: dict[date, float] = {}
    for sample in samples:
        totals[sample.sample_date] = totals.get(sample.sample_date, 0.0) + float(sample.quantity_consumed)
    return sorted(totals.items())


def samples_digest(samples: Sequence[ConsumptionSample]) -> str:
    """Stable content hash of a sample set (order-independent)."""
    h = hashlib.sha256()
    for day, qty in aggregate_daily(samples):
        h.update(f"{day.isoformat()}={qty!r};".encode())
    return h.hexdigest()


class DemandForecaster:
    """Build DemandForecasts. Pure computation; no I/O, no randomness."""

    def __init__(
        self,
        horizon_days: int = 30,
        seasonality: WeeklySeasonality | None = None,
    ):
        if horizon_days < 1:
            raise ValueError("horizon_days must be >= 1")
        self.horizon_days = horizon_days
        self.seasonality = seasonality or WeeklySeasonality()

    def forecast(
        self,
        product_id: str,
        location_id: str,
        samples: Sequence[ConsumptionSample],
        as_of: date,
    ) -> DemandForecast:
        daily = aggregate_daily(samples)

        if not daily:
            logger.info("forecast.insufficient_data", product_id=product_id, location_id=location_id)
            return DemandForecast(
                product_id=product_id,
                location_id=location_id,
                as_of=as_of,
                samples_count=0,
                average_daily_demand=0.0,
                trend="stable",
                trend_slope=0.0,
                volatility=0.0,
                seasonal_factor=1.0,
                confidence=0.0,
                predicted_series=tuple(0 for _ in range(self.horizon_days)),
            )

        days = [d for d, _ in daily]
        values = np.array([q for _, q in daily], dtype=float)

        avg = float(values.mean())
        # Population variance over observed days
        std = float(values.std())
        volatility = std / avg if avg > 0 else 0.0

        slope = self._trend_slope(days, values)
        trend = interpret_trend(slope)
        seasonal_factor = self._seasonal_factor(days)
        confidence = calculate_confidence(len(daily), volatility)

        avg = round(avg, 2)
        volatility = round(volatility, 2)

        series = self._predict(avg, TREND_FACTORS[trend], seasonal_factor, as_of)

        return DemandForecast(
            product_id=product_id,
            location_id=location_id,
            as_of=as_of,
            samples_count=len(daily),
            average_daily_demand=avg,
            trend=trend,
            trend_slope=round(slope, 6),
            volatility=volatility,
            seasonal_factor=seasonal_factor,
            confidence=round(confidence, 2),
            predicted_series=series,
        )

    def _predict(self, avg: float, trend_factor: float, seasonal_factor: float, as_of: date) -> tuple[int, ...]:
        series = []
        for d in range(1, self.horizon_days + 1):
            weekly = self.seasonality.factor(as_of + timedelta(days=d))
            predicted = avg * trend_factor * seasonal_factor * weekly
            # round-half-up, matching how unit quantities are quoted
            series.append(int(np.floor(max(0.0, predicted) + 0.5)))
        return tuple(series)

    @staticmethod
    def _trend_slope(days: list[date], values: np.ndarray) -> float:
        """OLS slope of quantity against the day offset from the first sample."""
        if len(values) < 2:
            return 0.0
        x = np.array([(d - days[0]).days for d in days], dtype=float)
        x_centered = x - x.mean()
        denominator = float((x_centered**2).sum())
        if denominator == 0:
            return 0.0
        return float((x_centered * (values - values.mean())).sum() / denominator)

    def _seasonal_factor(self, days: list[date]) -> float:
        """
        Correct the sample mean for the day-of-week mix actually observed.

        With complete weeks the mean weekly weight is 1 and the factor is 1.
        A history missing weekends overstates the average; dividing by the
        mean weight of the observed days removes that bias.
        """
        if len(days) < MIN_SAMPLES_FOR_SEASONAL_FACTOR:
            return 1.0
        weights = [self.seasonality.factor(d) for d in days]
        mean_weight = sum(weights) / len(weights)
        if mean_weight <= 0:
            return 1.0
        return round(1.0 / mean_weight, 4)
