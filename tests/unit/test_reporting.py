"""
Unit tests for report aggregation and KPI alerts.
"""

from datetime import datetime, timedelta, timezone

import pytest

from src.anomaly.reporting import AnomalyReporter
from src.anomaly.schema import (
    BehavioralEvidence,
    DetectionRule,
    Finding,
    ResolutionStatus,
    RuleCategory,
    Severity,
)
from src.core.config import AlertThreshold, ReportingConfig

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _finding(rule, entity_id, entity_type, days_ago):
    return Finding(
        rule_name=rule.name,
        category=rule.category,
        entity_type=entity_type,
        entity_id=entity_id,
        score=1.0,
        evidence=BehavioralEvidence(heuristic="action_count", observed=5, threshold=4, window_days=30, event_count=5),
        detected_at=NOW - timedelta(days=days_ago),
    )


@pytest.fixture
def populated_store(registry, anomaly_store):
    critical = registry.create(
        DetectionRule(name="self_dealing_transactions", category=RuleCategory.PATTERN, severity=Severity.CRITICAL)
    )
    high = registry.create(
        DetectionRule(name="excessive_permit_applications", category=RuleCategory.BEHAVIORAL, severity=Severity.HIGH)
    )
    low = registry.create(DetectionRule(name="minor", category=RuleCategory.TEMPORAL, severity=Severity.LOW))

    for i in range(3):
        anomaly_store.upsert_finding(_finding(critical, f"M{i}", "merchant", 1), critical)
    for i in range(2):
        anomaly_store.upsert_finding(_finding(high, f"C{i}", "citizen", 2), high)
    anomaly_store.upsert_finding(_finding(low, "C9", "citizen", 3), low)
    # outside a 7-day window
    anomaly_store.upsert_finding(_finding(high, "C50", "citizen", 20), high)

    first = anomaly_store.query()[0]
    anomaly_store.transition(first.id, ResolutionStatus.CONFIRMED)
    return anomaly_store


def test_report_sections(populated_store):
    reporter = AnomalyReporter(populated_store, ReportingConfig(alerts=[]))

    report = reporter.generate_report(now=NOW)

    assert report.window_days == 7
    assert report.since == NOW - timedelta(days=7)
    assert report.total == 6
    assert [(r.key, r.count) for r in report.by_severity] == [("critical", 3), ("high", 2), ("low", 1)]
    assert [(r.key, r.count) for r in report.by_entity_type] == [("citizen", 3), ("merchant", 3)]
    assert [(r.key, r.count) for r in report.by_status] == [("pending", 5), ("confirmed", 1)]
    assert [r.key for r in report.top_rules] == ["self_dealing_transactions", "excessive_permit_applications", "minor"]
    assert report.alerts == []


def test_window_and_top_rule_limit(populated_store):
    reporter = AnomalyReporter(populated_store, ReportingConfig(top_rules_limit=1, alerts=[]))

    report = reporter.generate_report(window_days=30, now=NOW)

    assert report.total == 7
    assert [(r.key, r.count) for r in report.top_rules] == [("excessive_permit_applications", 3)]


def test_alerts_fire_when_threshold_exceeded(populated_store):
    settings = ReportingConfig(
        alerts=[
            AlertThreshold(name="critical_volume", kpi="severity", key="critical", threshold=2, level="critical"),
            AlertThreshold(name="critical_at_limit", kpi="severity", key="critical", threshold=3),
            AlertThreshold(name="total_volume", kpi="total", threshold=5, level="medium"),
            AlertThreshold(name="no_such_bucket", kpi="status", key="resolved", threshold=0),
        ]
    )

    report = AnomalyReporter(populated_store, settings).generate_report(now=NOW)

    assert [a.name for a in report.alerts] == ["critical_volume", "total_volume"]
    critical = report.alerts[0]
    assert critical.observed == 3
    assert critical.level == Severity.CRITICAL
    assert "exceeds threshold 2" in critical.message


def test_empty_store_report(anomaly_store):
    report = AnomalyReporter(anomaly_store, ReportingConfig()).generate_report(now=NOW)

    assert report.total == 0
    assert report.by_severity == []
    assert report.alerts == []


@pytest.mark.parametrize("window_days", [0, -3])
def test_non_positive_window_is_rejected(anomaly_store, window_days):
    with pytest.raises(ValueError):
        AnomalyReporter(anomaly_store, ReportingConfig()).generate_report(window_days=window_days, now=NOW)
