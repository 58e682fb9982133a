"""
Transfer Planner — Cross-location surplus → deficit rebalancing.

When one location sits on far more stock than it will sell in a week and
another is about to run dry, moving units between them is faster and
cheaper than a supplier order.

Algorithm (per product, over every active location):
1. Classify each location from its forecast weekly demand:
     surplus   current_stock > 2 × weekly_demand   surplus_qty = stock − weekly
     deficit   current_stock < 0.5 × weekly_demand deficit_qty = weekly − stock
     balanced  otherwise
2. For each surplus location (largest surplus first), rank deficits:
   same region first, then largest remaining deficit, then location id.
3. Take up to MAX_MATCHES deficits; quantity = min(remaining surplus,
   remaining deficit). Both remainders shrink so no unit is promised twice.
4. Drop transfers below MIN_TRANSFER_QTY.

Pairing only runs surplus → deficit, so each (from, to) pair is proposed
at most once.
"""

from dataclasses import dataclass

import structlog

from core.config import get_settings

logger = structlog.get_logger()

_settings = get_settings()
SURPLUS_MULTIPLIER = 2.0
DEFICIT_MULTIPLIER = 0.5
MIN_TRANSFER_QTY = int(_settings.min_transfer_qty)
MAX_MATCHES = int(_settings.max_transfer_matches)
COST_PER_UNIT = float(_settings.transfer_cost_per_unit)
SAVINGS_PER_UNIT = float(_settings.transfer_savings_per_unit)
HIGH_IMPACT_SAVINGS = float(_settings.transfer_high_impact_savings)


@dataclass(frozen=True)
class StockPosition:
    """One location's stock against its forecast weekly demand for a product."""

    product_id: str
    location_id: str
    current_stock: float
    weekly_demand: float
    confidence: float
    region: str | None = None

    @property
    def status(self) -> str:
        return classify_stock_position(self.current_stock, self.weekly_demand)

    @property
    def surplus_qty(self) -> float:
        return max(0.0, self.current_stock - self.weekly_demand) if self.status == "surplus" else 0.0

    @property
    def deficit_qty(self) -> float:
        return max(0.0, self.weekly_demand - self.current_stock) if self.status == "deficit" else 0.0


@dataclass
class TransferOption:
    """A proposed location-to-location transfer."""

    product_id: str
    from_location_id: str
    to_location_id: str
    quantity: int
    surplus_qty: float
    deficit_qty: float
    same_region: bool
    confidence: float
    transfer_cost: float
    estimated_savings: float

    @property
    def estimated_impact(self) -> str:
        return "high" if self.estimated_savings > HIGH_IMPACT_SAVINGS else "medium"

    @property
    def rationale(self) -> str:
        return (
            f"{self.from_location_id} holds {self.surplus_qty:.0f} units above weekly demand; "
            f"{self.to_location_id} is {self.deficit_qty:.0f} units short of weekly demand. "
            f"Moving {self.quantity} units costs {self.transfer_cost:.2f} "
            f"and saves an estimated {self.estimated_savings:.2f}."
        )


def classify_stock_position(current_stock: float, weekly_demand: float) -> str:
    """surplus / deficit / balanced against weekly demand."""
    if weekly_demand <= 0:
        # Nothing sells here; stock on hand is free to move but nothing is short
        return "surplus" if current_stock > 0 else "balanced"
    if current_stock > SURPLUS_MULTIPLIER * weekly_demand:
        return "surplus"
    if current_stock < DEFICIT_MULTIPLIER * weekly_demand:
        return "deficit"
    return "balanced"


def plan_transfers(
    positions: list[StockPosition],
    *,
    max_matches: int = MAX_MATCHES,
    min_transfer_qty: int = MIN_TRANSFER_QTY,
    allow_cross_region: bool | None = None,
) -> list[TransferOption]:
    """Pair surplus locations with deficit locations for one product."""
    if allow_cross_region is None:
        allow_cross_region = get_settings().allow_cross_region_transfers

    surpluses = [p for p in positions if p.status == "surplus" and p.confidence > 0]
    deficits = [p for p in positions if p.status == "deficit" and p.confidence > 0]
    if not surpluses or not deficits:
        return []

    remaining_deficit = {p.location_id: p.deficit_qty for p in deficits}
    surpluses.sort(key=lambda p: (-p.surplus_qty, p.location_id))

    options: list[TransferOption] = []
    for source in surpluses:
        remaining_surplus = source.surplus_qty

        candidates = [
            d
            for d in deficits
            if d.location_id != source.location_id
            and remaining_deficit[d.location_id] > 0
            and (allow_cross_region or _same_region(source, d))
        ]
        candidates.sort(
            key=lambda d: (
                not _same_region(source, d),
                -remaining_deficit[d.location_id],
                d.location_id,
            )
        )

        for target in candidates[:max_matches]:
            quantity = int(min(remaining_surplus, remaining_deficit[target.location_id]))
            if quantity < min_transfer_qty:
                continue

            remaining_surplus -= quantity
            remaining_deficit[target.location_id] -= quantity
            options.append(
                TransferOption(
                    product_id=source.product_id,
                    from_location_id=source.location_id,
                    to_location_id=target.location_id,
                    quantity=quantity,
                    surplus_qty=source.surplus_qty,
                    deficit_qty=target.deficit_qty,
                    same_region=_same_region(source, target),
                    confidence=min(source.confidence, target.confidence),
                    transfer_cost=round(quantity * COST_PER_UNIT, 2),
                    estimated_savings=round(quantity * SAVINGS_PER_UNIT, 2),
                )
            )
            if remaining_surplus < min_transfer_qty:
                break

    if options:
        logger.info(
            "transfer.planned",
            product_id=options[0].product_id,
            transfers=len(options),
            units=sum(o.quantity for o in options),
        )
    return options


def _same_region(a: StockPosition, b: StockPosition) -> bool:
    return a.region is not None and a.region == b.region
