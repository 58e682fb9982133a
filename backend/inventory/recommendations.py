"""
Recommendation Generator — Typed decisions from per-pair assessments.

For each (product, location) with an actionable forecast:
  - inventory position (on hand + on order) ≤ reorder point and the plan is
    orderable → ReorderDecision (emergency when risk is critical)
  - stockout probability > 70 or overstock probability > 60, or an urgent
    risk level that no reorder covers → RiskMitigationDecision
Across locations of the same product:
  - surplus → deficit pairs → TransferDecision

Zero-confidence forecasts never produce a decision.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime

import structlog

from core.config import get_settings
from decisions.models import Decision, ReorderDecision, RiskMitigationDecision, TransferDecision
from integrations.base import CatalogEntry, LocationRef, LocationStock
from inventory.optimizer import ReplenishmentCalculator, ReplenishmentPlan, SupplierTerms
from inventory.risk import RiskAssessment, RiskScorer
from ml.forecaster import DemandForecast
from ml.stockout import StockoutProjection, simulate_stockout
from supply_chain.transfers import StockPosition, plan_transfers

logger = structlog.get_logger()

SOURCE_CALCULATOR = "replenishment_calculator"
SOURCE_RISK = "risk_scorer"
SOURCE_TRANSFERS = "transfer_planner"

# risk level → (decision priority, estimated impact)
REORDER_PRIORITY = {
    "critical": ("emergency", "critical"),
    "high": ("high", "high"),
    "medium": ("medium", "medium"),
    "low": ("low", "low"),
}

URGENT_PO_DAYS = 3


@dataclass(frozen=True)
class PairAssessment:
    """Everything computed for one (product, location) in a run."""

    location: LocationRef
    stock: LocationStock
    catalog: CatalogEntry
    forecast: DemandForecast
    projection: StockoutProjection
    plan: ReplenishmentPlan
    risk: RiskAssessment

    @property
    def product_id(self) -> str:
        return self.stock.product_id

    @property
    def location_id(self) -> str:
        return self.stock.location_id

    @property
    def inventory_position(self) -> int:
        return self.stock.current_quantity + self.stock.on_order_quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "location_id": self.location_id,
            "current_stock": self.stock.current_quantity,
            "on_order": self.stock.on_order_quantity,
            "forecast": self.forecast.to_dict(),
            "stockout": {
                "days_until_stockout": self.projection.days_until_stockout,
                "stockout_date": self.projection.stockout_date.isoformat(),
                "confidence": self.projection.confidence,
                "beyond_horizon": self.projection.beyond_horizon,
            },
            "plan": {
                "safety_stock": self.plan.safety_stock,
                "reorder_point": self.plan.reorder_point,
                "eoq": self.plan.eoq,
                "recommended_quantity": self.plan.recommended_quantity,
                "recommended_order_date": (
                    self.plan.recommended_order_date.isoformat() if self.plan.recommended_order_date else None
                ),
                "guards": list(self.plan.guards),
                "cost_analysis": self.plan.cost_analysis,
            },
            "risk": self.risk.to_dict(),
        }


def assess_pair(
    forecast: DemandForecast,
    stock: LocationStock,
    catalog: CatalogEntry,
    location: LocationRef,
    as_of: date,
    *,
    calculator: ReplenishmentCalculator | None = None,
    scorer: RiskScorer | None = None,
) -> PairAssessment:
    """Run the stockout simulation, replenishment math and risk scoring for one pair."""
    settings = get_settings()
    calculator = calculator or ReplenishmentCalculator()
    scorer = scorer or RiskScorer()

    terms = SupplierTerms.from_catalog(
        catalog,
        default_unit_cost=settings.default_unit_cost,
        default_order_cost=settings.order_cost,
        holding_cost_rate=settings.holding_cost_rate,
    )
    projection = simulate_stockout(stock.current_quantity, forecast.predicted_series, as_of)
    plan = calculator.calculate(forecast, terms, stock.current_quantity, as_of)
    risk = scorer.score(
        stock.product_id,
        stock.location_id,
        current_stock=stock.current_quantity,
        reorder_point=plan.reorder_point,
        order_quantity=plan.recommended_quantity,
        days_until_stockout=projection.days_until_stockout,
        lead_time_days=terms.lead_time_days,
        confidence=forecast.confidence,
        volatility=forecast.volatility,
    )
    return PairAssessment(
        location=location,
        stock=stock,
        catalog=catalog,
        forecast=forecast,
        projection=projection,
        plan=plan,
        risk=risk,
    )


def po_priority(days_until_stockout: int | None) -> str:
    """Purchase-order urgency sent to the supplier system."""
    if days_until_stockout is not None and days_until_stockout <= URGENT_PO_DAYS:
        return "urgent"
    return "normal"


class RecommendationGenerator:
    """Turn assessments into proposed decisions."""

    def __init__(
        self,
        stockout_threshold: float | None = None,
        overstock_threshold: float | None = None,
    ):
        settings = get_settings()
        self.stockout_threshold = (
            stockout_threshold if stockout_threshold is not None else settings.stockout_mitigation_threshold
        )
        self.overstock_threshold = (
            overstock_threshold if overstock_threshold is not None else settings.overstock_mitigation_threshold
        )

    def generate(self, assessments: list[PairAssessment], now: datetime | None = None) -> list[Decision]:
        now = now or datetime.utcnow()
        decisions: list[Decision] = []

        actionable = [a for a in assessments if a.forecast.is_actionable]
        for assessment in actionable:
            reorder = self.reorder_for(assessment, now)
            if reorder is not None:
                decisions.append(reorder)
            mitigation = self.mitigation_for(assessment, now, reorder_emitted=reorder is not None)
            if mitigation is not None:
                decisions.append(mitigation)

        decisions.extend(self.transfers_for(actionable, now))

        logger.info(
            "recommendations.generated",
            pairs=len(assessments),
            actionable=len(actionable),
            decisions=len(decisions),
        )
        return decisions

    def reorder_for(self, a: PairAssessment, now: datetime) -> ReorderDecision | None:
        plan = a.plan
        if not plan.orderable or a.inventory_position > plan.reorder_point:
            return None

        priority, impact = REORDER_PRIORITY[a.risk.risk_level]
        emergency = a.risk.risk_level == "critical"
        rationale = (
            f"Inventory position {a.inventory_position} is at or below reorder point {plan.reorder_point:.2f} "
            f"(avg daily demand {plan.avg_daily_demand:.2f} × lead time {plan.lead_time_days}d "
            f"+ safety stock {plan.safety_stock:.2f}). "
            f"Order {plan.recommended_quantity} units = max(EOQ {plan.eoq}, supplier minimum "
            f"{a.catalog.supplier_min_order}). Stockout projected in {a.projection.days_until_stockout} days."
        )
        return ReorderDecision(
            product_id=a.product_id,
            location_id=a.location_id,
            quantity=plan.recommended_quantity,
            supplier_id=a.catalog.supplier_id,
            emergency=emergency,
            reorder_point=plan.reorder_point,
            days_until_stockout=a.projection.days_until_stockout,
            priority=priority,
            confidence=a.forecast.confidence,
            estimated_impact=impact,
            rationale=rationale,
            source_system=SOURCE_CALCULATOR,
            created_at=now,
        )

    def mitigation_for(
        self, a: PairAssessment, now: datetime, *, reorder_emitted: bool
    ) -> RiskMitigationDecision | None:
        risk = a.risk
        strategies: list[str] = []
        if risk.stockout_probability > self.stockout_threshold and not reorder_emitted:
            strategies.append("emergency_reorder")
        if risk.overstock_probability > self.overstock_threshold:
            strategies.append("transfer_surplus")
        if risk.is_urgent and not reorder_emitted and not strategies:
            strategies.append("expedite_review")
        if not strategies:
            return None

        priority, impact = REORDER_PRIORITY[risk.risk_level]
        if priority == "emergency":
            priority = "critical"
        rationale = (
            f"Risk {risk.risk_level}: stockout probability {risk.stockout_probability:.2f}%, "
            f"overstock probability {risk.overstock_probability:.2f}%, "
            f"stockout in {risk.days_until_stockout} days at forecast confidence {risk.confidence:.2f}. "
            f"Strategies: {', '.join(strategies)}."
        )
        return RiskMitigationDecision(
            product_id=a.product_id,
            location_id=a.location_id,
            quantity=0,
            risk_level=risk.risk_level,
            strategies=tuple(strategies),
            stockout_probability=risk.stockout_probability,
            overstock_probability=risk.overstock_probability,
            reorder_point=a.plan.reorder_point,
            priority=priority,
            confidence=a.forecast.confidence,
            estimated_impact=impact,
            rationale=rationale,
            source_system=SOURCE_RISK,
            created_at=now,
        )

    def transfers_for(self, assessments: list[PairAssessment], now: datetime) -> list[TransferDecision]:
        by_product: dict[str, list[PairAssessment]] = defaultdict(list)
        for a in assessments:
            by_product[a.product_id].append(a)

        decisions = []
        for product_id in sorted(by_product):
            group = by_product[product_id]
            risk_by_location = {a.location_id: a.risk for a in group}
            positions = [
                StockPosition(
                    product_id=product_id,
                    location_id=a.location_id,
                    current_stock=a.stock.current_quantity,
                    weekly_demand=a.forecast.weekly_demand,
                    confidence=a.forecast.confidence,
                    region=a.location.region,
                )
                for a in sorted(group, key=lambda a: a.location_id)
            ]
            for option in plan_transfers(positions):
                destination_risk = risk_by_location[option.to_location_id]
                decisions.append(
                    TransferDecision(
                        product_id=product_id,
                        from_location_id=option.from_location_id,
                        to_location_id=option.to_location_id,
                        quantity=option.quantity,
                        transfer_cost=option.transfer_cost,
                        estimated_savings=option.estimated_savings,
                        priority="high" if destination_risk.is_urgent else "medium",
                        confidence=option.confidence,
                        estimated_impact=option.estimated_impact,
                        rationale=option.rationale,
                        source_system=SOURCE_TRANSFERS,
                        created_at=now,
                    )
                )
        return decisions
