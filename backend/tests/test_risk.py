"""
Tests for the Risk Scorer.

Covers:
  - Risk level thresholds (and deployment overrides)
  - Stockout / overstock probability
  - Risk factors
  - Zero-confidence forecasts
"""

import pytest

from inventory.risk import (
    DEFAULT_RISK_THRESHOLDS,
    RiskScorer,
    classify_risk_level,
    identify_risk_factors,
    parse_risk_overrides,
)

# ── Risk Level ─────────────────────────────────────────────────────────


class TestRiskLevel:
    @pytest.mark.parametrize(
        "days,expected",
        [(0, "critical"), (1, "critical"), (2, "high"), (3, "high"), (5, "medium"), (7, "medium"), (8, "low")],
    )
    def test_default_thresholds(self, days, expected):
        assert classify_risk_level(days, DEFAULT_RISK_THRESHOLDS) == expected

    def test_custom_thresholds(self):
        table = {"critical": 2, "high": 4, "medium": 10}
        assert classify_risk_level(2, table) == "critical"
        assert classify_risk_level(9, table) == "medium"


class TestOverrides:
    def test_valid_json(self):
        assert parse_risk_overrides('{"critical": 2, "high": 4}') == {"critical": 2.0, "high": 4.0}

    def test_unknown_level_ignored(self):
        assert parse_risk_overrides('{"extreme": 0}') == {}

    def test_malformed_ignored(self):
        assert parse_risk_overrides("{not json") == {}

    def test_empty(self):
        assert parse_risk_overrides("") == {}

    def test_non_object_ignored(self):
        assert parse_risk_overrides("[1, 2]") == {}


# ── Probabilities ──────────────────────────────────────────────────────


class TestScore:
    @pytest.fixture
    def scorer(self) -> RiskScorer:
        return RiskScorer(thresholds=dict(DEFAULT_RISK_THRESHOLDS))

    def test_below_reorder_point(self, scorer):
        """gap = 100 × (1 − 50/154) ≈ 67.53, urgency ≈ 42.86, certainty 0.9."""
        risk = scorer.score(
            "P1",
            "L1",
            current_stock=50,
            reorder_point=154,
            order_quantity=191,
            days_until_stockout=5,
            lead_time_days=7,
            confidence=0.8,
        )
        assert risk.stockout_probability == pytest.approx(60.78, abs=0.01)
        assert risk.overstock_probability == 0.0
        assert risk.risk_level == "medium"
        assert not risk.is_urgent

    def test_imminent_stockout_is_urgent(self, scorer):
        risk = scorer.score(
            "P1",
            "L1",
            current_stock=5,
            reorder_point=154,
            order_quantity=191,
            days_until_stockout=1,
            lead_time_days=7,
            confidence=1.0,
        )
        assert risk.stockout_probability == 100.0
        assert risk.risk_level == "critical"
        assert risk.is_urgent

    def test_overstock(self, scorer):
        """Excess 669 over ceiling 331 saturates at 100 × certainty."""
        risk = scorer.score(
            "P1",
            "L1",
            current_stock=1000,
            reorder_point=140,
            order_quantity=191,
            days_until_stockout=31,
            lead_time_days=7,
            confidence=1.0,
        )
        assert risk.overstock_probability == 100.0
        assert risk.stockout_probability == 0.0
        assert risk.risk_level == "low"

    def test_probabilities_bounded(self, scorer):
        risk = scorer.score(
            "P1",
            "L1",
            current_stock=0,
            reorder_point=10,
            order_quantity=10,
            days_until_stockout=1,
            lead_time_days=1,
            confidence=1.0,
        )
        assert 0 <= risk.stockout_probability <= 100
        assert 0 <= risk.overstock_probability <= 100

    def test_zero_confidence_is_low_and_inert(self, scorer):
        risk = scorer.score(
            "P1",
            "L1",
            current_stock=0,
            reorder_point=0,
            order_quantity=50,
            days_until_stockout=1,
            lead_time_days=7,
            confidence=0.0,
        )
        assert risk.risk_level == "low"
        assert risk.stockout_probability == 0.0
        assert risk.overstock_probability == 0.0

    def test_to_dict(self, scorer):
        risk = scorer.score(
            "P1",
            "L1",
            current_stock=50,
            reorder_point=154,
            order_quantity=191,
            days_until_stockout=5,
            lead_time_days=7,
            confidence=0.8,
        )
        payload = risk.to_dict()
        assert payload["risk_level"] == "medium"
        assert payload["risk_factors"] == []


# ── Risk Factors ───────────────────────────────────────────────────────


class TestRiskFactors:
    def test_none(self):
        assert identify_risk_factors(7, 0.2, 0.8) == ()

    def test_all(self):
        types = {f["type"] for f in identify_risk_factors(14, 0.8, 0.3)}
        assert types == {"long_lead_time", "demand_volatility", "low_forecast_confidence"}
