"""
Risk Scorer — Stockout / overstock probability and risk level per (product, location).

Inputs: current stock, reorder point, order quantity, days until stockout,
forecast confidence.

  stock_gap     = 100 × max(0, 1 − stock / ROP)
  urgency       = 100 × max(0, 1 − (days_until_stockout − 1) / lead_time)
  stockout_prob = max(stock_gap, urgency) × (0.5 + 0.5 × confidence)
  excess        = stock − (ROP + order qty)
  overstock_prob= 100 × min(1, excess / (ROP + order qty)) × (0.5 + 0.5 × confidence)

risk_level comes from a days-until-stockout threshold table which can be
overridden per deployment:
  RISK_LEVEL_OVERRIDES='{"critical": 2, "high": 4, "medium": 10}'
"""

import json
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

import structlog

from core.config import get_settings

logger = structlog.get_logger()

RISK_LEVELS = ("low", "medium", "high", "critical")

# Stockout within ≤ N days → level
DEFAULT_RISK_THRESHOLDS = {
    "critical": 1,
    "high": 3,
    "medium": 7,
}

LONG_LEAD_TIME_DAYS = 10
HIGH_VOLATILITY = 0.5
LOW_CONFIDENCE = 0.5


@dataclass(frozen=True)
class RiskAssessment:
    product_id: str
    location_id: str
    stockout_probability: float
    overstock_probability: float
    risk_level: str
    days_until_stockout: int
    confidence: float
    risk_factors: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    @property
    def is_urgent(self) -> bool:
        return self.risk_level in ("critical", "high")

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "location_id": self.location_id,
            "stockout_probability": self.stockout_probability,
            "overstock_probability": self.overstock_probability,
            "risk_level": self.risk_level,
            "days_until_stockout": self.days_until_stockout,
            "confidence": self.confidence,
            "risk_factors": list(self.risk_factors),
        }


def parse_risk_overrides(raw: str) -> dict[str, float]:
    """Parse a JSON threshold override. Anything malformed is ignored."""
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("risk.invalid_overrides", raw=raw)
        return {}
    if not isinstance(payload, dict):
        return {}
    out = {}
    for level, days in payload.items():
        if level in DEFAULT_RISK_THRESHOLDS and isinstance(days, (int, float)):
            out[level] = float(days)
    return out


@lru_cache
def load_risk_thresholds() -> dict[str, float]:
    thresholds = dict(DEFAULT_RISK_THRESHOLDS)
    thresholds.update(parse_risk_overrides(get_settings().risk_level_overrides))
    return thresholds


def classify_risk_level(days_until_stockout: float, thresholds: dict[str, float] | None = None) -> str:
    """Map days-until-stockout onto low / medium / high / critical."""
    table = thresholds or load_risk_thresholds()
    if days_until_stockout <= table["critical"]:
        return "critical"
    elif days_until_stockout <= table["high"]:
        return "high"
    elif days_until_stockout <= table["medium"]:
        return "medium"
    return "low"


def identify_risk_factors(lead_time_days: int, volatility: float, confidence: float) -> tuple[dict[str, Any], ...]:
    factors = []
    if lead_time_days > LONG_LEAD_TIME_DAYS:
        factors.append(
            {
                "type": "long_lead_time",
                "severity": "high",
                "description": f"Long supplier lead time ({lead_time_days} days)",
            }
        )
    if volatility > HIGH_VOLATILITY:
        factors.append(
            {
                "type": "demand_volatility",
                "severity": "medium",
                "description": f"High demand volatility ({volatility:.2f}) makes prediction uncertain",
            }
        )
    if confidence < LOW_CONFIDENCE:
        factors.append(
            {
                "type": "low_forecast_confidence",
                "severity": "medium",
                "description": f"Forecast confidence {confidence:.2f} below {LOW_CONFIDENCE}",
            }
        )
    return tuple(factors)


class RiskScorer:
    """Combine stock position, stockout projection and confidence into a RiskAssessment."""

    def __init__(self, thresholds: dict[str, float] | None = None):
        self.thresholds = thresholds or load_risk_thresholds()

    def score(
        self,
        product_id: str,
        location_id: str,
        *,
        current_stock: float,
        reorder_point: float,
        order_quantity: int,
        days_until_stockout: int,
        lead_time_days: int,
        confidence: float,
        volatility: float = 0.0,
    ) -> RiskAssessment:
        factors = identify_risk_factors(lead_time_days, volatility, confidence)

        if confidence <= 0:
            # No data: nothing to act on automatically
            return RiskAssessment(
                product_id=product_id,
                location_id=location_id,
                stockout_probability=0.0,
                overstock_probability=0.0,
                risk_level="low",
                days_until_stockout=days_until_stockout,
                confidence=0.0,
                risk_factors=factors,
            )

        certainty = 0.5 + 0.5 * min(1.0, confidence)

        stock_gap = 100 * max(0.0, 1 - current_stock / reorder_point) if reorder_point > 0 else 0.0
        urgency = 100 * max(0.0, 1 - (days_until_stockout - 1) / max(lead_time_days, 1))
        stockout_probability = min(100.0, max(stock_gap, urgency)) * certainty

        target_ceiling = reorder_point + order_quantity
        excess = current_stock - target_ceiling
        if excess <= 0:
            overstock_probability = 0.0
        elif target_ceiling <= 0:
            overstock_probability = 100.0 * certainty
        else:
            overstock_probability = 100 * min(1.0, excess / target_ceiling) * certainty

        return RiskAssessment(
            product_id=product_id,
            location_id=location_id,
            stockout_probability=round(stockout_probability, 2),
            overstock_probability=round(overstock_probability, 2),
            risk_level=classify_risk_level(days_until_stockout, self.thresholds),
            days_until_stockout=days_until_stockout,
            confidence=confidence,
            risk_factors=factors,
        )
