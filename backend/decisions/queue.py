"""
Decision Queue — Deduplicate, resolve conflicts, score and order decisions.

Runs single-threaded over the full candidate set of a run; conflict
detection needs a consistent global view.

Pipeline:
  1. Deduplicate on (source_system, kind, normalized payload), keep first.
  2. Score:  0.4 × priority_weight + 0.4 × confidence(0-100) + 0.2 × impact_weight
  3. Group by (product, location); two decisions conflict when their actions
     on a shared key form a configured mutually exclusive pair.
  4. Accept greedily by (score desc, confidence desc, created_at asc, id);
     a decision conflicting with an accepted one is superseded.
  5. Order survivors by score, stable on insertion order.
  6. The first K get an execution slot and a staggered scheduled time; the
     rest stay queued with no scheduled time.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from itertools import combinations

import structlog

from core.config import get_settings
from core.errors import ConflictUnresolvedError
from decisions.models import Decision, DecisionLedger, DecisionStatus
from integrations.base import StockKey

logger = structlog.get_logger()

PRIORITY_WEIGHTS = {
    "emergency": 100,
    "critical": 90,
    "high": 80,
    "medium": 60,
    "low": 40,
}
IMPACT_WEIGHTS = {
    "critical": 100,
    "high": 80,
    "medium": 60,
    "low": 40,
}
DEFAULT_WEIGHT = 50


def priority_score(decision: Decision) -> float:
    priority = PRIORITY_WEIGHTS.get(decision.priority, DEFAULT_WEIGHT)
    impact = IMPACT_WEIGHTS.get(decision.estimated_impact, DEFAULT_WEIGHT)
    confidence = max(0.0, min(1.0, decision.confidence)) * 100
    return round(0.4 * priority + 0.4 * confidence + 0.2 * impact, 4)


@dataclass
class QueueEntry:
    decision: Decision
    priority_score: float
    status: DecisionStatus = DecisionStatus.QUEUED
    slot: int | None = None
    scheduled_at: datetime | None = None

    @property
    def decision_id(self) -> str:
        return self.decision.decision_id


@dataclass(frozen=True)
class Supersession:
    decision: Decision
    priority_score: float
    superseded_by: str
    key: StockKey
    reason: str


@dataclass
class ExecutionPlan:
    """Totally ordered, conflict-free execution order for one run."""

    entries: list[QueueEntry] = field(default_factory=list)
    superseded: list[Supersession] = field(default_factory=list)
    duplicates: list[Decision] = field(default_factory=list)

    @property
    def scheduled(self) -> list[QueueEntry]:
        return [e for e in self.entries if e.slot is not None]

    @property
    def waiting(self) -> list[QueueEntry]:
        return [e for e in self.entries if e.slot is None]

    def to_dict(self) -> dict:
        return {
            "entries": [
                {
                    "decision_id": e.decision_id,
                    "type": e.decision.kind.value,
                    "priority_score": e.priority_score,
                    "slot": e.slot,
                    "scheduled_at": e.scheduled_at.isoformat() if e.scheduled_at else None,
                }
                for e in self.entries
            ],
            "superseded": [
                {"decision_id": s.decision.decision_id, "superseded_by": s.superseded_by, "reason": s.reason}
                for s in self.superseded
            ],
            "duplicates": [d.decision_id for d in self.duplicates],
        }


def normalize_conflicts(pairs: list[list[str]] | list[tuple[str, str]]) -> frozenset[frozenset[str]]:
    return frozenset(frozenset(pair) for pair in pairs if len(pair) == 2)


class DecisionQueue:
    """Build an ExecutionPlan from proposed decisions."""

    def __init__(
        self,
        max_in_flight: int | None = None,
        stagger_seconds: int | None = None,
        conflicting_actions: list[list[str]] | None = None,
        ledger: DecisionLedger | None = None,
    ):
        settings = get_settings()
        self.max_in_flight = max_in_flight if max_in_flight is not None else settings.max_in_flight_decisions
        self.stagger = timedelta(
            seconds=stagger_seconds if stagger_seconds is not None else settings.execution_stagger_seconds
        )
        self.conflicts = normalize_conflicts(
            conflicting_actions if conflicting_actions is not None else settings.conflicting_actions
        )
        self.ledger = ledger or DecisionLedger()

    # ── Public ────────────────────────────────────────────────────────────

    def build(self, decisions: list[Decision], now: datetime | None = None) -> ExecutionPlan:
        now = now or datetime.utcnow()
        for decision in decisions:
            self.ledger.register(decision)

        unique, duplicates = self.deduplicate(decisions)
        for duplicate in duplicates:
            self.ledger.transition(duplicate.decision_id, DecisionStatus.SUPERSEDED, "duplicate")

        scores = {d.decision_id: priority_score(d) for d in unique}
        survivors, superseded = self.resolve_conflicts(unique, scores)
        self._verify_conflict_free(survivors)

        for loser in superseded:
            self.ledger.transition(loser.decision.decision_id, DecisionStatus.SUPERSEDED, loser.reason)
            logger.info(
                "queue.conflict_resolved",
                winner=loser.superseded_by,
                loser=loser.decision.decision_id,
                product_id=loser.key[0],
                location_id=loser.key[1],
                loser_score=loser.priority_score,
            )

        # sorted() is stable: equal scores keep insertion order
        ordered = sorted(survivors, key=lambda d: scores[d.decision_id], reverse=True)
        entries = []
        for index, decision in enumerate(ordered):
            entry = QueueEntry(decision=decision, priority_score=scores[decision.decision_id])
            if index < self.max_in_flight:
                entry.slot = index + 1
                entry.scheduled_at = now + index * self.stagger
            self.ledger.transition(decision.decision_id, DecisionStatus.QUEUED)
            entries.append(entry)

        plan = ExecutionPlan(entries=entries, superseded=superseded, duplicates=duplicates)
        logger.info(
            "queue.built",
            candidates=len(decisions),
            duplicates=len(duplicates),
            superseded=len(superseded),
            queued=len(entries),
            scheduled=len(plan.scheduled),
        )
        return plan

    def deduplicate(self, decisions: list[Decision]) -> tuple[list[Decision], list[Decision]]:
        seen: set[tuple[str, str, str]] = set()
        unique, duplicates = [], []
        for decision in decisions:
            key = decision.dedup_key()
            if key in seen:
                duplicates.append(decision)
                continue
            seen.add(key)
            unique.append(decision)
        return unique, duplicates

    def resolve_conflicts(
        self, decisions: list[Decision], scores: dict[str, float]
    ) -> tuple[list[Decision], list[Supersession]]:
        """
        Keep the best decision of every conflicting pair.

        The outcome depends only on the rank key, never on input order, so
        resolving the same set twice picks the same winners.
        """
        actions_by_key: dict[StockKey, list[tuple[Decision, str]]] = defaultdict(list)
        for decision in decisions:
            for key, action in decision.targets():
                actions_by_key[key].append((decision, action))

        def rank(d: Decision):
            return (-scores[d.decision_id], -d.confidence, d.created_at, d.decision_id)

        accepted: dict[str, Decision] = {}
        losers: dict[str, Supersession] = {}
        for decision in sorted(decisions, key=rank):
            blocker = self._first_conflict(decision, accepted, actions_by_key)
            if blocker is None:
                accepted[decision.decision_id] = decision
                continue
            winner, key, pair = blocker
            losers[decision.decision_id] = Supersession(
                decision=decision,
                priority_score=scores[decision.decision_id],
                superseded_by=winner.decision_id,
                key=key,
                reason=f"conflict {pair[0]} vs {pair[1]} on {key[0]}@{key[1]}",
            )

        survivors = [d for d in decisions if d.decision_id in accepted]
        superseded = [losers[d.decision_id] for d in decisions if d.decision_id in losers]
        return survivors, superseded

    def conflicts_between(self, a: Decision, b: Decision) -> list[tuple[StockKey, tuple[str, str]]]:
        found = []
        for key_a, action_a in a.targets():
            for key_b, action_b in b.targets():
                if key_a == key_b and frozenset((action_a, action_b)) in self.conflicts:
                    found.append((key_a, (action_a, action_b)))
        return found

    # ── Internals ─────────────────────────────────────────────────────────

    def _first_conflict(
        self,
        decision: Decision,
        accepted: dict[str, Decision],
        actions_by_key: dict[StockKey, list[tuple[Decision, str]]],
    ) -> tuple[Decision, StockKey, tuple[str, str]] | None:
        for key, action in decision.targets():
            for other, other_action in actions_by_key[key]:
                if other.decision_id not in accepted:
                    continue
                if frozenset((action, other_action)) in self.conflicts:
                    return other, key, (action, other_action)
        return None

    def _verify_conflict_free(self, survivors: list[Decision]) -> None:
        by_key: dict[StockKey, list[Decision]] = defaultdict(list)
        for decision in survivors:
            for key, _ in decision.targets():
                by_key[key].append(decision)
        for key, group in by_key.items():
            for a, b in combinations(group, 2):
                if a.decision_id != b.decision_id and self.conflicts_between(a, b):
                    raise ConflictUnresolvedError(
                        f"Decisions {a.decision_id} and {b.decision_id} both survived on {key}"
                    )
