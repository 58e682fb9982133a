"""
Decision Model — Closed set of automated inventory actions.

Each decision kind carries its own typed payload:
  - ReorderDecision          reorder / emergency_reorder at one location
  - TransferDecision         surplus location → deficit location
  - RiskMitigationDecision   mitigation strategies for a high-risk location

Lifecycle (owned by DecisionQueue and ExecutionEngine):
  proposed → queued → executing → executed | failed
  proposed | queued → superseded
Decisions are immutable values; a retry is a new decision with retry_of set.
"""

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

from core.errors import InvalidTransitionError
from integrations.base import StockKey


class DecisionKind(str, Enum):
    REORDER = "reorder"
    TRANSFER = "transfer"
    RISK_MITIGATION = "risk_mitigation"


class DecisionStatus(str, Enum):
    PROPOSED = "proposed"
    QUEUED = "queued"
    EXECUTING = "executing"
    EXECUTED = "executed"
    FAILED = "failed"
    SUPERSEDED = "superseded"


ALLOWED_TRANSITIONS: dict[DecisionStatus, frozenset[DecisionStatus]] = {
    DecisionStatus.PROPOSED: frozenset({DecisionStatus.QUEUED, DecisionStatus.SUPERSEDED}),
    DecisionStatus.QUEUED: frozenset({DecisionStatus.EXECUTING, DecisionStatus.SUPERSEDED}),
    DecisionStatus.EXECUTING: frozenset({DecisionStatus.EXECUTED, DecisionStatus.FAILED}),
    DecisionStatus.EXECUTED: frozenset(),
    DecisionStatus.FAILED: frozenset(),
    DecisionStatus.SUPERSEDED: frozenset(),
}

TERMINAL_STATUSES = frozenset({DecisionStatus.EXECUTED, DecisionStatus.FAILED, DecisionStatus.SUPERSEDED})


def new_decision_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True, kw_only=True)
class Decision:
    """Fields shared by every decision kind."""

    kind: ClassVar[DecisionKind]

    decision_id: str = field(default_factory=new_decision_id)
    product_id: str
    quantity: int
    priority: str  # emergency | critical | high | medium | low
    confidence: float  # 0-1, inherited from the forecast
    estimated_impact: str  # critical | high | medium | low
    rationale: str
    source_system: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    retry_of: str | None = None

    def targets(self) -> list[tuple[StockKey, str]]:
        """(product, location) rows this decision touches, with the action on each."""
        raise NotImplementedError

    def payload(self) -> dict[str, Any]:
        """Subject and kind-specific fields, used for deduplication and telemetry."""
        raise NotImplementedError

    @property
    def locations(self) -> tuple[str, ...]:
        return tuple(location for (_, location), _ in self.targets())

    def dedup_key(self) -> tuple[str, str, str]:
        return (self.source_system, self.kind.value, json.dumps(self.payload(), sort_keys=True, default=str))

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "type": self.kind.value,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "priority": self.priority,
            "confidence": self.confidence,
            "estimated_impact": self.estimated_impact,
            "rationale": self.rationale,
            "source_system": self.source_system,
            "created_at": self.created_at.isoformat(),
            "retry_of": self.retry_of,
            **self.payload(),
        }


@dataclass(frozen=True, kw_only=True)
class ReorderDecision(Decision):
    kind: ClassVar[DecisionKind] = DecisionKind.REORDER

    location_id: str
    supplier_id: str | None = None
    emergency: bool = False
    reorder_point: float | None = None
    days_until_stockout: int | None = None

    @property
    def action(self) -> str:
        return "emergency_reorder" if self.emergency else "reorder"

    def targets(self) -> list[tuple[StockKey, str]]:
        return [((self.product_id, self.location_id), self.action)]

    def payload(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "location_id": self.location_id,
            "supplier_id": self.supplier_id,
            "action": self.action,
            "quantity": self.quantity,
        }


@dataclass(frozen=True, kw_only=True)
class TransferDecision(Decision):
    kind: ClassVar[DecisionKind] = DecisionKind.TRANSFER

    from_location_id: str
    to_location_id: str
    transfer_cost: float = 0.0
    estimated_savings: float = 0.0

    def targets(self) -> list[tuple[StockKey, str]]:
        return [
            ((self.product_id, self.from_location_id), "transfer_out"),
            ((self.product_id, self.to_location_id), "transfer_in"),
        ]

    def payload(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "from_location_id": self.from_location_id,
            "to_location_id": self.to_location_id,
            "quantity": self.quantity,
        }


@dataclass(frozen=True, kw_only=True)
class RiskMitigationDecision(Decision):
    kind: ClassVar[DecisionKind] = DecisionKind.RISK_MITIGATION

    location_id: str
    risk_level: str
    strategies: tuple[str, ...] = ()
    stockout_probability: float = 0.0
    overstock_probability: float = 0.0
    reorder_point: float | None = None

    def targets(self) -> list[tuple[StockKey, str]]:
        return [((self.product_id, self.location_id), "risk_mitigation")]

    def payload(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "location_id": self.location_id,
            "risk_level": self.risk_level,
            "strategies": list(self.strategies),
        }


def propose_retry(failed: Decision, **overrides: Any) -> Decision:
    """New proposed decision that re-attempts a failed one."""
    return replace(
        failed,
        decision_id=new_decision_id(),
        created_at=datetime.utcnow(),
        retry_of=failed.decision_id,
        **overrides,
    )


@dataclass
class StatusChange:
    status: DecisionStatus
    at: datetime
    reason: str | None = None


class DecisionLedger:
    """Tracks status transitions for every decision seen in a run."""

    def __init__(self):
        self._history: dict[str, list[StatusChange]] = {}

    def register(self, decision: Decision) -> None:
        if decision.decision_id not in self._history:
            self._history[decision.decision_id] = [StatusChange(DecisionStatus.PROPOSED, datetime.utcnow())]

    def status(self, decision_id: str) -> DecisionStatus | None:
        history = self._history.get(decision_id)
        return history[-1].status if history else None

    def reason(self, decision_id: str) -> str | None:
        history = self._history.get(decision_id)
        return history[-1].reason if history else None

    def history(self, decision_id: str) -> list[StatusChange]:
        return list(self._history.get(decision_id, []))

    def transition(self, decision_id: str, target: DecisionStatus, reason: str | None = None) -> None:
        current = self.status(decision_id)
        if current is None:
            raise InvalidTransitionError(f"Unknown decision {decision_id}")
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(f"Decision {decision_id}: {current.value} → {target.value} not allowed")
        self._history[decision_id].append(StatusChange(target, datetime.utcnow(), reason))

    def count(self, status: DecisionStatus) -> int:
        return sum(1 for h in self._history.values() if h[-1].status == status)

    def ids_with_status(self, status: DecisionStatus) -> list[str]:
        return [decision_id for decision_id, h in self._history.items() if h[-1].status == status]


AnyDecision = ReorderDecision | TransferDecision | RiskMitigationDecision
