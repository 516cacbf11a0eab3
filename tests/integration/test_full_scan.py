"""
Integration test for the full scan cycle.

Tests end-to-end flow from dataset tables to persisted anomalies, the
investigation lifecycle, and the summary report.
"""

from datetime import timedelta

import pytest

from src.anomaly import AnomalyEngine, CategoryStatus, ResolutionStatus, RuleCategory, ScanStatus
from src.core.exceptions import ConfigurationError, InvalidTransitionError
from src.dataset import DataFrameSource


@pytest.fixture
def engine(dataset_tables, test_config, database):
    engine = AnomalyEngine(source=DataFrameSource(dataset_tables), settings=test_config, database=database)
    engine.rules.seed_defaults()
    return engine


@pytest.mark.integration
class TestFullScan:
    """Test a scan cycle against a dataset with one planted outlier."""

    def test_scan_flags_only_the_outlier(self, engine, now, outlier_order_id):
        report = engine.run_full_scan(now=now)

        assert report.status == ScanStatus.COMPLETED
        assert report.fatal_error is None
        assert report.issues == []
        assert sorted(report.baselines.refreshed) == ["permit_cost", "transaction_amount"]
        statuses = {c.category: c.status for c in report.categories}
        assert statuses == {
            RuleCategory.STATISTICAL: CategoryStatus.ANOMALIES_FOUND,
            RuleCategory.BEHAVIORAL: CategoryStatus.CLEAN,
            RuleCategory.TEMPORAL: CategoryStatus.CLEAN,
            RuleCategory.PATTERN: CategoryStatus.CLEAN,
        }

        [anomaly] = engine.list_anomalies()
        assert anomaly.rule_name == "transaction_amount_outlier"
        assert anomaly.entity_type == "order"
        assert anomaly.entity_id == outlier_order_id
        assert anomaly.anomaly_score == pytest.approx(15.0)
        assert anomaly.details.z_score == pytest.approx(15.0)
        assert anomaly.details.baseline_mean == pytest.approx(50.0)
        assert anomaly.resolution_status == ResolutionStatus.PENDING
        assert anomaly.detected_at == now

    def test_rescan_is_idempotent(self, engine, now):
        first = engine.run_full_scan(now=now)
        second = engine.run_full_scan(now=now + timedelta(hours=1))

        assert first.total_created == 1
        assert second.total_findings == 1
        assert second.total_created == 0
        assert engine.anomalies.count_pending() == 1

    def test_dismissed_anomaly_is_reported_again(self, engine, now):
        engine.run_full_scan(now=now)
        [anomaly] = engine.list_anomalies()

        updated = engine.update_investigation(anomaly.id, "false_positive", "seasonal sale", now=now)
        assert updated.resolution_status == ResolutionStatus.FALSE_POSITIVE
        assert updated.investigated_at == now
        with pytest.raises(InvalidTransitionError):
            engine.update_investigation(anomaly.id, ResolutionStatus.CONFIRMED)

        report = engine.run_full_scan(now=now)
        assert report.total_created == 1
        assert len(engine.list_anomalies({"status": "pending"})) == 1
        assert len(engine.list_anomalies({"status": "false_positive"})) == 1

    def test_deactivated_rule_stops_detection(self, engine, now):
        engine.rules.set_active("transaction_amount_outlier", False)

        report = engine.run_full_scan(now=now)

        assert report.total_created == 0
        assert "transaction_amount" in report.baselines.skipped
        assert engine.list_anomalies() == []

    def test_report_after_scan(self, engine, now):
        engine.run_full_scan(now=now)

        report = engine.generate_report(now=now)

        assert report.total == 1
        assert [(r.key, r.count) for r in report.by_severity] == [("medium", 1)]
        assert [(r.key, r.count) for r in report.top_rules] == [("transaction_amount_outlier", 1)]
        assert [(r.key, r.count) for r in report.by_status] == [("pending", 1)]

    def test_invalid_filters_rejected(self, engine):
        with pytest.raises(ConfigurationError):
            engine.list_anomalies({"limit": 0})
        with pytest.raises(ConfigurationError):
            engine.list_anomalies({"severity": "apocalyptic"})
