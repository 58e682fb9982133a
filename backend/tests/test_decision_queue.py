"""
Tests for the Decision Queue — dedup, scoring, conflict resolution, slots.
"""

from datetime import datetime, timedelta

import pytest

from core.errors import ConflictUnresolvedError
from decisions.models import DecisionLedger, DecisionStatus, ReorderDecision, RiskMitigationDecision, TransferDecision
from decisions.queue import DecisionQueue, priority_score

NOW = datetime(2024, 1, 1, 2, 30)


def reorder(location_id: str = "L1", **overrides) -> ReorderDecision:
    fields = dict(
        product_id="P1",
        location_id=location_id,
        quantity=100,
        priority="medium",
        confidence=0.8,
        estimated_impact="medium",
        rationale="below reorder point",
        source_system="replenishment_calculator",
        created_at=NOW,
    )
    fields.update(overrides)
    return ReorderDecision(**fields)


def transfer(from_location_id: str = "L1", to_location_id: str = "L2", **overrides) -> TransferDecision:
    fields = dict(
        product_id="P1",
        from_location_id=from_location_id,
        to_location_id=to_location_id,
        quantity=50,
        priority="medium",
        confidence=0.7,
        estimated_impact="medium",
        rationale="rebalance",
        source_system="transfer_planner",
        created_at=NOW,
    )
    fields.update(overrides)
    return TransferDecision(**fields)


def mitigation(location_id: str = "L1", **overrides) -> RiskMitigationDecision:
    fields = dict(
        product_id="P1",
        location_id=location_id,
        quantity=0,
        priority="high",
        confidence=0.8,
        estimated_impact="high",
        rationale="stockout probability above threshold",
        source_system="risk_scorer",
        created_at=NOW,
        risk_level="high",
        strategies=("emergency_reorder",),
    )
    fields.update(overrides)
    return RiskMitigationDecision(**fields)


@pytest.fixture
def queue() -> DecisionQueue:
    return DecisionQueue(max_in_flight=10, stagger_seconds=30)


# ── Scoring ────────────────────────────────────────────────────────────


class TestPriorityScore:
    def test_formula(self):
        """0.4 × 60 + 0.4 × 80 + 0.2 × 60 = 68."""
        assert priority_score(reorder()) == 68.0

    def test_emergency_reorder(self):
        """0.4 × 100 + 0.4 × 62.5 + 0.2 × 100 = 85."""
        d = reorder(priority="emergency", confidence=0.625, estimated_impact="critical", emergency=True)
        assert priority_score(d) == 85.0

    def test_unknown_labels_use_default_weight(self):
        d = reorder(priority="whenever", estimated_impact="unclear", confidence=0.5)
        assert priority_score(d) == 0.4 * 50 + 0.4 * 50 + 0.2 * 50

    def test_confidence_clamped(self):
        assert priority_score(reorder(confidence=1.5)) == priority_score(reorder(confidence=1.0))


# ── Deduplication ──────────────────────────────────────────────────────


class TestDeduplication:
    def test_first_kept(self, queue):
        first, second = reorder(), reorder(rationale="again")
        plan = queue.build([first, second], now=NOW)
        assert [e.decision_id for e in plan.entries] == [first.decision_id]
        assert plan.duplicates == [second]
        assert queue.ledger.status(second.decision_id) == DecisionStatus.SUPERSEDED
        assert queue.ledger.reason(second.decision_id) == "duplicate"

    def test_different_source_not_duplicate(self, queue):
        plan = queue.build([reorder(), reorder(source_system="manual")], now=NOW)
        assert len(plan.entries) == 2

    def test_different_products_at_one_location_both_kept(self, queue):
        """Same supplier, same minimum-order quantity, same strategies: still two subjects."""
        decisions = [
            reorder(product_id="P1", quantity=50, supplier_id="S1"),
            reorder(product_id="P2", quantity=50, supplier_id="S1"),
            mitigation(product_id="P1"),
            mitigation(product_id="P2"),
        ]
        plan = queue.build(decisions, now=NOW)
        assert len(plan.entries) == 4
        assert plan.duplicates == []

    def test_different_products_between_same_locations_both_kept(self, queue):
        plan = queue.build([transfer(product_id="P1"), transfer(product_id="P2")], now=NOW)
        assert len(plan.entries) == 2


# ── Conflicts ──────────────────────────────────────────────────────────


class TestConflictResolution:
    def test_emergency_reorder_beats_transfer_out(self, queue):
        """Transfer out of L scores 72, emergency reorder at L scores 85."""
        t = transfer("L", "M", confidence=0.70, estimated_impact="critical")
        r = reorder("L", priority="emergency", confidence=0.625, estimated_impact="critical", emergency=True)
        assert priority_score(t) == 72.0

        plan = queue.build([t, r], now=NOW)

        assert [e.decision_id for e in plan.entries] == [r.decision_id]
        assert len(plan.superseded) == 1
        loser = plan.superseded[0]
        assert loser.decision is t
        assert loser.superseded_by == r.decision_id
        assert loser.key == ("P1", "L")
        assert queue.ledger.status(t.decision_id) == DecisionStatus.SUPERSEDED
        assert queue.ledger.status(r.decision_id) == DecisionStatus.QUEUED

    def test_transfer_in_conflicts_with_emergency_reorder(self, queue):
        t = transfer("M", "L", priority="high", confidence=0.9, estimated_impact="high")
        r = reorder("L", priority="emergency", confidence=0.9, estimated_impact="critical", emergency=True)
        plan = queue.build([t, r], now=NOW)
        assert [e.decision_id for e in plan.entries] == [r.decision_id]

    def test_regular_reorder_and_transfer_in_coexist(self, queue):
        t = transfer("M", "L")
        r = reorder("L")
        plan = queue.build([t, r], now=NOW)
        assert len(plan.entries) == 2
        assert plan.superseded == []

    def test_different_products_never_conflict(self, queue):
        t = transfer("L", "M")
        r = reorder("L", product_id="P2", emergency=True, priority="emergency")
        plan = queue.build([t, r], now=NOW)
        assert len(plan.entries) == 2

    def test_outcome_independent_of_input_order(self):
        t = transfer("L", "M", confidence=0.70, estimated_impact="critical")
        r = reorder("L", priority="emergency", confidence=0.625, estimated_impact="critical", emergency=True)
        forward = DecisionQueue(max_in_flight=10).build([t, r], now=NOW)
        backward = DecisionQueue(max_in_flight=10).build([r, t], now=NOW)
        assert [e.decision_id for e in forward.entries] == [e.decision_id for e in backward.entries]

    def test_tie_broken_by_created_at(self, queue):
        earlier = transfer("L", "M", priority="emergency", confidence=0.625, estimated_impact="critical")
        later = reorder(
            "L",
            priority="emergency",
            confidence=0.625,
            estimated_impact="critical",
            emergency=True,
            created_at=NOW + timedelta(seconds=1),
        )
        plan = queue.build([later, earlier], now=NOW)
        assert [e.decision_id for e in plan.entries] == [earlier.decision_id]

    def test_custom_conflict_table(self):
        queue = DecisionQueue(max_in_flight=10, conflicting_actions=[["transfer_in", "reorder"]])
        plan = queue.build([transfer("M", "L"), reorder("L")], now=NOW)
        assert len(plan.entries) == 1

    def test_no_survivors_conflict(self, queue):
        decisions = [
            transfer("L", "M", confidence=0.5),
            transfer("L", "N", confidence=0.6),
            reorder("L", priority="emergency", emergency=True, estimated_impact="critical"),
            reorder("M", emergency=True, priority="critical"),
        ]
        plan = queue.build(decisions, now=NOW)
        survivors = [e.decision for e in plan.entries]
        for i, a in enumerate(survivors):
            for b in survivors[i + 1 :]:
                assert queue.conflicts_between(a, b) == []

    def test_verification_catches_conflicting_survivors(self, queue):
        t = transfer("L", "M")
        r = reorder("L", emergency=True, priority="emergency")
        with pytest.raises(ConflictUnresolvedError):
            queue._verify_conflict_free([t, r])


# ── Ordering and Slots ─────────────────────────────────────────────────


class TestOrdering:
    def test_sorted_by_score(self, queue):
        low = reorder("L1", priority="low")
        high = reorder("L2", priority="high")
        plan = queue.build([low, high], now=NOW)
        assert [e.decision_id for e in plan.entries] == [high.decision_id, low.decision_id]
        assert plan.entries[0].priority_score > plan.entries[1].priority_score

    def test_equal_scores_keep_insertion_order(self, queue):
        decisions = [reorder(f"L{i}") for i in range(4)]
        plan = queue.build(decisions, now=NOW)
        assert [e.decision_id for e in plan.entries] == [d.decision_id for d in decisions]

    def test_first_k_get_slots(self):
        queue = DecisionQueue(max_in_flight=2, stagger_seconds=30)
        decisions = [reorder(f"L{i}") for i in range(3)]
        plan = queue.build(decisions, now=NOW)
        assert [e.slot for e in plan.entries] == [1, 2, None]
        assert plan.entries[0].scheduled_at == NOW
        assert plan.entries[1].scheduled_at == NOW + timedelta(seconds=30)
        assert plan.entries[2].scheduled_at is None
        assert len(plan.scheduled) == 2
        assert len(plan.waiting) == 1

    def test_all_survivors_queued(self):
        ledger = DecisionLedger()
        queue = DecisionQueue(max_in_flight=1, ledger=ledger)
        decisions = [reorder(f"L{i}") for i in range(3)]
        queue.build(decisions, now=NOW)
        assert ledger.count(DecisionStatus.QUEUED) == 3

    def test_empty(self, queue):
        plan = queue.build([], now=NOW)
        assert plan.entries == []
        assert plan.to_dict() == {"entries": [], "superseded": [], "duplicates": []}

    def test_to_dict(self, queue):
        r = reorder()
        entry = queue.build([r], now=NOW).to_dict()["entries"][0]
        assert entry["decision_id"] == r.decision_id
        assert entry["slot"] == 1
        assert entry["scheduled_at"] == NOW.isoformat()
