"""
Alert Engine — Stockout and decision alerts for the replenishment run.

Patterns used: Rule-based detection, alert deduplication, Redis pub/sub

Alert Types:
  - stockout_predicted: projected stockout within the medium-risk window
  - risk_mitigation: a mitigation decision was executed
  - decision_failed: a decision failed during execution

The engine builds AlertRecords; delivery goes through an AlertSink. This
module never sends email or SMS.
"""

import json
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from core.config import get_settings
from core.errors import ExternalDependencyError
from decisions.models import Decision, RiskMitigationDecision
from integrations.base import AlertRecord, AlertSink, call_with_timeout

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────────────────
# Detection Rules
# ──────────────────────────────────────────────────────────────────────────

SEVERITY_THRESHOLDS = {
    "stockout_days": {
        "critical": 1,  # Stockout in ≤ 1 day
        "high": 3,  # Stockout in ≤ 3 days
        "medium": 5,  # Stockout in ≤ 5 days
        "low": 7,  # Stockout in ≤ 7 days
    },
}

ALERT_CHANNEL = "alerts:replenishment"


def classify_severity(stockout_days: float) -> str:
    """Classify alert severity based on days until stockout."""
    thresholds = SEVERITY_THRESHOLDS["stockout_days"]
    if stockout_days <= thresholds["critical"]:
        return "critical"
    elif stockout_days <= thresholds["high"]:
        return "high"
    elif stockout_days <= thresholds["medium"]:
        return "medium"
    return "low"


# ──────────────────────────────────────────────────────────────────────────
# Alert Builders
# ──────────────────────────────────────────────────────────────────────────


def build_stockout_alerts(assessments: list[Any]) -> list[AlertRecord]:
    """
    One stockout_predicted alert per pair whose projected stockout falls
    inside the alert window. Zero-confidence pairs are skipped.
    """
    window = SEVERITY_THRESHOLDS["stockout_days"]["low"]
    alerts = []
    for a in assessments:
        if not a.forecast.is_actionable or a.projection.beyond_horizon:
            continue
        days = a.projection.days_until_stockout
        if days > window:
            continue
        alerts.append(
            AlertRecord(
                alert_type="stockout_predicted",
                severity=classify_severity(days),
                payload={
                    "product_id": a.product_id,
                    "location_id": a.location_id,
                    "message": (
                        f"Stockout predicted in {days} days for {a.catalog.name}. "
                        f"Current stock: {a.stock.current_quantity}, "
                        f"reorder point: {a.plan.reorder_point:.0f}"
                    ),
                    "current_stock": a.stock.current_quantity,
                    "days_until_stockout": days,
                    "stockout_date": a.projection.stockout_date.isoformat(),
                    "stockout_probability": a.risk.stockout_probability,
                    "risk_level": a.risk.risk_level,
                },
            )
        )
    return alerts


def build_mitigation_alert(decision: RiskMitigationDecision, current_stock: int) -> AlertRecord:
    return AlertRecord(
        alert_type="risk_mitigation",
        severity=decision.risk_level,
        payload={
            "decision_id": decision.decision_id,
            "product_id": decision.product_id,
            "location_id": decision.location_id,
            "strategies": list(decision.strategies),
            "stockout_probability": decision.stockout_probability,
            "overstock_probability": decision.overstock_probability,
            "current_stock": current_stock,
            "message": decision.rationale,
        },
    )


def build_decision_failed_alert(decision: Decision, error: str) -> AlertRecord:
    targets = decision.targets()
    return AlertRecord(
        alert_type="decision_failed",
        severity="high" if decision.priority in ("emergency", "critical") else "medium",
        payload={
            "decision_id": decision.decision_id,
            "decision_type": decision.kind.value,
            "product_id": decision.product_id,
            "location_id": targets[0][0][1],
            "locations": list(decision.locations),
            "error": error,
            "message": f"{decision.kind.value} decision {decision.decision_id} failed: {error}",
        },
    )


# ──────────────────────────────────────────────────────────────────────────
# Alert Deduplication
# ──────────────────────────────────────────────────────────────────────────


def deduplicate_alerts(alerts: list[AlertRecord]) -> list[AlertRecord]:
    """
    Keep the first alert per location + product + alert_type (and decision,
    for decision-scoped alerts) within a run.
    """
    seen = set()
    unique = []
    for alert in alerts:
        key = (
            alert.payload.get("location_id"),
            alert.payload.get("product_id"),
            alert.alert_type,
            alert.payload.get("decision_id"),
        )
        if key in seen:
            continue
        seen.add(key)
        unique.append(alert)
    return unique


# ──────────────────────────────────────────────────────────────────────────
# Publishing
# ──────────────────────────────────────────────────────────────────────────


async def publish_alerts(sink: AlertSink, alerts: list[AlertRecord], timeout: float | None = None) -> int:
    """Hand alerts to a sink, each emit bounded by `timeout`. Returns number of alerts emitted."""
    timeout = timeout if timeout is not None else get_settings().store_timeout_seconds
    for alert in alerts:
        await call_with_timeout(
            lambda: sink.emit_alert(alert.alert_type, alert.severity, alert.payload),
            timeout=timeout,
            operation="emit_alert",
        )
    return len(alerts)


class RedisAlertSink(AlertSink):
    """
    Publish alerts to Redis pub/sub for whatever notification service
    subscribes (WebSocket fan-out, email, SMS). Delivery is theirs.
    """

    def __init__(self, redis_url: str | None = None, channel: str = ALERT_CHANNEL):
        self.redis_url = redis_url or get_settings().redis_url
        self.channel = channel

    async def emit_alert(self, alert_type: str, severity: str, payload: dict[str, Any]) -> None:
        redis = aioredis.from_url(self.redis_url)
        try:
            message = json.dumps(
                {
                    "type": "alert",
                    "payload": {
                        "alert_type": alert_type,
                        "severity": severity,
                        **payload,
                    },
                },
                default=str,
            )
            try:
                subs = await redis.publish(self.channel, message)
            except RedisError as exc:
                raise ExternalDependencyError(f"alert publish failed: {exc}") from exc
            logger.info("alert.published", alert_type=alert_type, severity=severity, subscribers=subs)
        finally:
            await redis.aclose()


class FanOutAlertSink(AlertSink):
    """Emit each alert to every wrapped sink, in order."""

    def __init__(self, *sinks: AlertSink):
        self.sinks = sinks

    async def emit_alert(self, alert_type: str, severity: str, payload: dict[str, Any]) -> None:
        for sink in self.sinks:
            await sink.emit_alert(alert_type, severity, payload)
