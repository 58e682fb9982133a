"""
Replenishment Calculator — Safety stock, reorder point and order quantity.

Transforms a DemandForecast and supplier terms into a ReplenishmentPlan.

Algorithm:
  Safety Stock = Avg Daily Demand × Lead Time × (1 + Volatility)
  ROP          = (Avg Daily Demand × Lead Time) + Safety Stock
  EOQ          = √((2 × Annual Demand × Order Cost) / Holding Cost)
  Order Qty    = max(EOQ, Supplier Minimum Order)
  Order Date   = as_of + max(0, (Current Stock − ROP) / Avg Daily Demand) days

Guards:
  - holding cost ≤ 0       → EOQ falls back to EOQ_FALLBACK_UNITS
  - avg daily demand == 0  → no order date, the plan is not orderable
"""

import math
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

import structlog

from core.config import get_settings
from core.errors import ComputationGuardError
from integrations.base import CatalogEntry
from ml.forecaster import DemandForecast

logger = structlog.get_logger()

_settings = get_settings()
DEFAULT_ORDER_COST = float(_settings.order_cost)
DEFAULT_HOLDING_COST_RATE = float(_settings.holding_cost_rate)
EOQ_FALLBACK_UNITS = int(_settings.eoq_fallback_units)
DAYS_PER_YEAR = 365


@dataclass(frozen=True)
class SupplierTerms:
    """Inputs the calculator needs beyond the forecast."""

    lead_time_days: int
    unit_cost: float
    supplier_min_order: int
    order_cost: float = DEFAULT_ORDER_COST
    holding_cost_rate: float = DEFAULT_HOLDING_COST_RATE

    @classmethod
    def from_catalog(
        cls,
        entry: CatalogEntry,
        *,
        default_unit_cost: float,
        default_order_cost: float = DEFAULT_ORDER_COST,
        holding_cost_rate: float = DEFAULT_HOLDING_COST_RATE,
    ) -> "SupplierTerms":
        return cls(
            lead_time_days=entry.lead_time_days,
            unit_cost=entry.unit_cost if entry.unit_cost is not None else default_unit_cost,
            supplier_min_order=entry.supplier_min_order,
            order_cost=entry.order_cost if entry.order_cost is not None else default_order_cost,
            holding_cost_rate=holding_cost_rate,
        )


@dataclass(frozen=True)
class ReplenishmentPlan:
    """Result of a replenishment calculation. Immutable, superseded by the next run."""

    safety_stock: float
    reorder_point: float
    eoq: int
    recommended_quantity: int
    recommended_order_date: date | None
    lead_time_days: int
    avg_daily_demand: float
    volatility: float
    guards: tuple[str, ...] = ()
    cost_analysis: dict[str, float] = field(default_factory=dict)
    rationale: dict[str, Any] = field(default_factory=dict)

    @property
    def orderable(self) -> bool:
        return self.recommended_order_date is not None


def calculate_eoq(annual_demand: float, order_cost: float, holding_cost: float) -> int:
    """
    Economic Order Quantity (Wilson formula).

    EOQ = √((2 × D × S) / H)
    Where: D = annual demand, S = order cost, H = annual holding cost per unit

    Raises ComputationGuardError when H ≤ 0; callers apply the fallback.
    """
    if holding_cost <= 0:
        raise ComputationGuardError("holding_cost", EOQ_FALLBACK_UNITS)
    if annual_demand <= 0 or order_cost <= 0:
        return 0
    return round(math.sqrt((2 * annual_demand * order_cost) / holding_cost))


def calculate_restocking_costs(quantity: int, unit_cost: float, order_cost: float, holding_cost_rate: float) -> dict:
    product_cost = quantity * unit_cost
    return {
        "product_cost": round(product_cost, 2),
        "order_cost": round(order_cost, 2),
        "annual_holding_cost": round(product_cost * holding_cost_rate, 2),
        "total_cost": round(product_cost + order_cost, 2),
    }


class ReplenishmentCalculator:
    """Deterministic replenishment math. No I/O."""

    def __init__(self, eoq_fallback_units: int = EOQ_FALLBACK_UNITS):
        self.eoq_fallback_units = eoq_fallback_units

    def calculate(
        self,
        forecast: DemandForecast,
        terms: SupplierTerms,
        current_stock: float,
        as_of: date,
    ) -> ReplenishmentPlan:
        avg = forecast.average_daily_demand
        volatility = forecast.volatility
        lead_time = terms.lead_time_days
        guards: list[str] = []

        safety_stock = avg * lead_time * (1 + volatility)
        reorder_point = avg * lead_time + safety_stock

        annual_demand = avg * DAYS_PER_YEAR
        holding_cost = terms.unit_cost * terms.holding_cost_rate
        try:
            eoq = calculate_eoq(annual_demand, terms.order_cost, holding_cost)
        except ComputationGuardError as guard:
            logger.info("replenishment.guard", guard=guard.guard, fallback=guard.fallback, product_id=forecast.product_id)
            guards.append(guard.guard)
            eoq = self.eoq_fallback_units

        recommended_quantity = max(eoq, terms.supplier_min_order)

        if avg > 0:
            days_until_reorder = max(0.0, (current_stock - reorder_point) / avg)
            order_date = as_of + timedelta(days=math.floor(days_until_reorder))
        else:
            guards.append("zero_demand")
            order_date = None

        rationale = {
            "avg_daily_demand": avg,
            "volatility": volatility,
            "lead_time_days": lead_time,
            "safety_stock_formula": f"D({avg}) × LT({lead_time}) × (1 + σ/μ({volatility}))",
            "eoq_formula": (
                f"√(2 × {annual_demand:.0f} × {terms.order_cost}) / "
                f"H({terms.unit_cost} × {terms.holding_cost_rate})"
            ),
            "supplier_min_order": terms.supplier_min_order,
            "current_stock": current_stock,
        }

        return ReplenishmentPlan(
            safety_stock=round(safety_stock, 2),
            reorder_point=round(reorder_point, 2),
            eoq=eoq,
            recommended_quantity=recommended_quantity,
            recommended_order_date=order_date,
            lead_time_days=lead_time,
            avg_daily_demand=avg,
            volatility=volatility,
            guards=tuple(guards),
            cost_analysis=calculate_restocking_costs(
                recommended_quantity, terms.unit_cost, terms.order_cost, terms.holding_cost_rate
            ),
            rationale=rationale,
        )
