"""
Tests for the Alert Engine — Severity classification, builders and delivery.

Covers:
  - Stockout severity classification
  - Stockout / mitigation / decision-failed alert builders
  - Alert deduplication
  - Sink fan-out and Redis publish error mapping
"""

import asyncio
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from alerts import engine as alert_engine
from alerts.engine import (
    FanOutAlertSink,
    RedisAlertSink,
    build_decision_failed_alert,
    build_mitigation_alert,
    build_stockout_alerts,
    classify_severity,
    deduplicate_alerts,
    publish_alerts,
)
from core.errors import ExternalDependencyError
from decisions.models import ReorderDecision, RiskMitigationDecision
from integrations.base import AlertRecord, LocationStock
from integrations.memory import RecordingSinks
from inventory.recommendations import assess_pair
from ml.forecaster import DemandForecaster

# ── Stockout Severity ──────────────────────────────────────────────────


class TestStockoutSeverity:
    def test_critical_one_day(self):
        assert classify_severity(1) == "critical"

    def test_critical_zero_days(self):
        assert classify_severity(0) == "critical"

    def test_high_two_days(self):
        assert classify_severity(2) == "high"

    def test_high_three_days(self):
        assert classify_severity(3) == "high"

    def test_medium_four_days(self):
        assert classify_severity(4) == "medium"

    def test_medium_five_days(self):
        assert classify_severity(5) == "medium"

    def test_low_six_days(self):
        assert classify_severity(6) == "low"

    def test_low_ten_days(self):
        assert classify_severity(10) == "low"


# ── Builders ───────────────────────────────────────────────────────────


@pytest.fixture
def assess(make_samples, make_catalog, location, as_of):
    def _assess(stock: int, days: int = 28):
        samples = make_samples("P1", "L1", [10.0] * days)
        forecast = DemandForecaster().forecast("P1", "L1", samples, as_of)
        return assess_pair(forecast, LocationStock("P1", "L1", current_quantity=stock), make_catalog(), location, as_of)

    return _assess


def failed_reorder(priority: str = "medium") -> ReorderDecision:
    return ReorderDecision(
        product_id="P1",
        location_id="L1",
        quantity=100,
        priority=priority,
        confidence=0.8,
        estimated_impact="medium",
        rationale="below reorder point",
        source_system="replenishment_calculator",
    )


class TestStockoutAlerts:
    def test_alert_inside_window(self, assess):
        alerts = build_stockout_alerts([assess(stock=50)])
        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.alert_type == "stockout_predicted"
        assert alert.severity == "medium"
        assert alert.payload["days_until_stockout"] == 5
        assert alert.payload["location_id"] == "L1"

    def test_no_alert_outside_window(self, assess):
        assert build_stockout_alerts([assess(stock=200)]) == []

    def test_zero_confidence_skipped(self, assess):
        assert build_stockout_alerts([assess(stock=0, days=0)]) == []

    def test_critical(self, assess):
        assert build_stockout_alerts([assess(stock=5)])[0].severity == "critical"


class TestDecisionAlerts:
    def test_mitigation_alert(self):
        decision = RiskMitigationDecision(
            product_id="P1",
            location_id="L1",
            quantity=0,
            risk_level="critical",
            strategies=("emergency_reorder",),
            priority="critical",
            confidence=0.9,
            estimated_impact="critical",
            rationale="stockout tomorrow",
            source_system="risk_scorer",
        )
        alert = build_mitigation_alert(decision, current_stock=3)
        assert alert.alert_type == "risk_mitigation"
        assert alert.severity == "critical"
        assert alert.payload["strategies"] == ["emergency_reorder"]
        assert alert.payload["current_stock"] == 3

    def test_failed_alert_severity(self):
        assert build_decision_failed_alert(failed_reorder("emergency"), "gone").severity == "high"
        assert build_decision_failed_alert(failed_reorder("medium"), "gone").severity == "medium"

    def test_failed_alert_payload(self):
        decision = failed_reorder()
        alert = build_decision_failed_alert(decision, "position above reorder point")
        assert alert.payload["decision_id"] == decision.decision_id
        assert alert.payload["location_id"] == "L1"
        assert alert.payload["error"] == "position above reorder point"


# ── Deduplication ──────────────────────────────────────────────────────


class TestDeduplication:
    def test_same_pair_and_type_collapses(self):
        a = AlertRecord("stockout_predicted", "high", {"product_id": "P1", "location_id": "L1"})
        b = AlertRecord("stockout_predicted", "critical", {"product_id": "P1", "location_id": "L1"})
        assert deduplicate_alerts([a, b]) == [a]

    def test_different_type_kept(self):
        a = AlertRecord("stockout_predicted", "high", {"product_id": "P1", "location_id": "L1"})
        b = AlertRecord("risk_mitigation", "high", {"product_id": "P1", "location_id": "L1"})
        assert len(deduplicate_alerts([a, b])) == 2

    def test_decision_scoped_alerts_kept(self):
        a = AlertRecord("decision_failed", "medium", {"product_id": "P1", "location_id": "L1", "decision_id": "d1"})
        b = AlertRecord("decision_failed", "medium", {"product_id": "P1", "location_id": "L1", "decision_id": "d2"})
        assert len(deduplicate_alerts([a, b])) == 2


# ── Delivery ───────────────────────────────────────────────────────────


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.published: list[tuple[str, str]] = []
        self.closed = False

    async def publish(self, channel, message):
        if self.fail:
            raise RedisConnectionError("connection refused")
        self.published.append((channel, message))
        return 1

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
class TestDelivery:
    async def test_publish_alerts(self):
        sink = RecordingSinks()
        alerts = [AlertRecord("stockout_predicted", "high", {"product_id": "P1", "location_id": "L1"})]
        assert await publish_alerts(sink, alerts) == 1
        assert sink.alerts[0].severity == "high"

    async def test_publish_alerts_times_out(self):
        class StalledSink(RecordingSinks):
            async def emit_alert(self, alert_type, severity, payload):
                await asyncio.sleep(1)

        alerts = [AlertRecord("stockout_predicted", "high", {"product_id": "P1", "location_id": "L1"})]
        with pytest.raises(ExternalDependencyError, match="emit_alert timed out"):
            await publish_alerts(StalledSink(), alerts, timeout=0.01)

    async def test_fan_out(self):
        first, second = RecordingSinks(), RecordingSinks()
        await FanOutAlertSink(first, second).emit_alert("decision_failed", "medium", {"decision_id": "d1"})
        assert len(first.alerts) == 1
        assert len(second.alerts) == 1

    async def test_redis_publish(self, monkeypatch):
        fake = FakeRedis()
        monkeypatch.setattr(alert_engine.aioredis, "from_url", lambda url: fake)

        await RedisAlertSink(redis_url="redis://test").emit_alert("stockout_predicted", "high", {"product_id": "P1"})

        channel, message = fake.published[0]
        assert channel == alert_engine.ALERT_CHANNEL
        body = json.loads(message)
        assert body["payload"]["alert_type"] == "stockout_predicted"
        assert body["payload"]["product_id"] == "P1"
        assert fake.closed

    async def test_redis_failure_is_external_dependency(self, monkeypatch):
        fake = FakeRedis(fail=True)
        monkeypatch.setattr(alert_engine.aioredis, "from_url", lambda url: fake)

        with pytest.raises(ExternalDependencyError):
            await RedisAlertSink(redis_url="redis://test").emit_alert("stockout_predicted", "high", {})
        assert fake.closed
