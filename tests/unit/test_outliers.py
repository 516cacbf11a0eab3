"""
Unit tests for scoring primitives and statistical outlier detection.
"""

from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from src.anomaly.outliers import StatisticalOutlierDetector, evaluate_outlier, outlier_score
from src.anomaly.schema import DetectionRule, RuleCategory, StatisticalBaseline
from src.anomaly.scoring import exceedance_ratio, iqr_bounds, iqr_distance, z_score
from src.core.exceptions import DetectionError

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _baseline(mean=50.0, stddev=10.0, q1=43.0, median=50.0, q3=57.0, n=100) -> StatisticalBaseline:
    return StatisticalBaseline(
        metric_name="transaction_amount",
        entity_type="order",
        time_period="daily",
        mean=mean,
        stddev=stddev,
        median=median,
        q1=q1,
        q3=q3,
        sample_size=n,
        calculated_at=NOW,
    )


def test_z_score_basics():
    assert z_score(95.0, 50.0, 10.0) == pytest.approx(4.5)
    assert z_score(5.0, 50.0, 10.0) == pytest.approx(4.5)
    assert z_score(55.0, 50.0, 10.0) == pytest.approx(0.5)
    assert z_score(55.0, 50.0, 0.0) is None


def test_iqr_bounds_and_distance():
    assert iqr_bounds(10.0, 30.0) == (-20.0, 60.0)
    assert iqr_bounds(5.0, 5.0) == (5.0, 5.0)
    assert iqr_distance(70.0, -20.0, 60.0, 20.0) == pytest.approx(0.5)
    assert iqr_distance(40.0, -20.0, 60.0, 20.0) == 0.0
    assert iqr_distance(8.0, 5.0, 5.0, 0.0) == pytest.approx(3.0)


def test_exceedance_ratio():
    assert exceedance_ratio(10.0, 4.0) == pytest.approx(2.5)
    assert exceedance_ratio(3.0, 0.0) == pytest.approx(3.0)


def test_value_far_from_mean_is_flagged_by_z_score():
    evidence = evaluate_outlier("transaction_amount", 95.0, _baseline())

    assert evidence is not None
    assert evidence.z_score == pytest.approx(4.5)
    assert "z_score" in evidence.methods
    assert outlier_score(evidence) == pytest.approx(4.5)


def test_value_near_mean_is_not_flagged():
    assert evaluate_outlier("transaction_amount", 55.0, _baseline()) is None


def test_iqr_flags_value_with_low_z_score():
    baseline = _baseline(mean=20.0, stddev=20.0, q1=10.0, median=20.0, q3=30.0)

    evidence = evaluate_outlier("transaction_amount", 65.0, baseline)

    assert evidence is not None
    assert evidence.methods == ["iqr"]
    assert evidence.iqr_lower == pytest.approx(-20.0)
    assert evidence.iqr_upper == pytest.approx(60.0)
    assert evidence.z_score == pytest.approx(2.25)


def test_value_inside_iqr_and_low_z_is_not_flagged():
    baseline = _baseline(mean=20.0, stddev=20.0, q1=10.0, median=20.0, q3=30.0)
    assert evaluate_outlier("transaction_amount", 40.0, baseline) is None


def test_z_threshold_is_strict():
    baseline = _baseline(q1=0.0, q3=100.0)
    assert evaluate_outlier("transaction_amount", 80.0, baseline, z_threshold=3.0) is None
    assert evaluate_outlier("transaction_amount", 80.0, baseline, z_threshold=2.9) is not None


def test_zero_stddev_skips_z_test_and_uses_iqr():
    baseline = _baseline(mean=5.0, stddev=0.0, q1=5.0, median=5.0, q3=5.0)

    evidence = evaluate_outlier("transaction_amount", 8.0, baseline)

    assert evidence.z_score is None
    assert evidence.methods == ["iqr"]
    assert outlier_score(evidence) == pytest.approx(3.0)


def test_degenerate_iqr_flags_any_different_value():
    baseline = _baseline(mean=5.0, stddev=2.0, q1=5.0, median=5.0, q3=5.0)

    evidence = evaluate_outlier("transaction_amount", 5.5, baseline)

    assert evidence is not None
    assert evidence.degenerate_iqr is True
    assert evidence.methods == ["iqr"]
    assert evaluate_outlier("transaction_amount", 5.0, baseline) is None


def test_non_finite_value_raises_detection_error():
    with pytest.raises(DetectionError):
        evaluate_outlier("transaction_amount", float("nan"), _baseline())


def _orders_frame():
    return pd.DataFrame(
        {
            "order_id": ["1", "2", "3", "4"],
            "total_amount": [50.0, 95.0, 52.0, 500.0],
            "order_date": [
                NOW - timedelta(days=1),
                NOW - timedelta(days=2),
                NOW - timedelta(days=3),
                NOW - timedelta(days=30),
            ],
        }
    )


def test_detector_flags_recent_outliers_only(make_context):
    rule = DetectionRule(name="transaction_amount_outlier", category=RuleCategory.STATISTICAL, threshold_value=3.0)
    context = make_context(
        {"orders": _orders_frame()},
        [rule],
        baselines={("transaction_amount", "order", "daily"): _baseline()},
    )

    findings = StatisticalOutlierDetector().run(context)

    assert [f.entity_id for f in findings] == ["2"]
    assert findings[0].rule_name == "transaction_amount_outlier"
    assert findings[0].score == pytest.approx(4.5)
    assert findings[0].evidence.kind == "statistical_outlier"


def test_detector_skips_metric_without_baseline(make_context):
    rule = DetectionRule(name="transaction_amount_outlier", category=RuleCategory.STATISTICAL)
    context = make_context({"orders": _orders_frame()}, [rule])

    assert StatisticalOutlierDetector().run(context) == []


def test_detector_records_missing_table(make_context):
    rule = DetectionRule(name="transaction_amount_outlier", category=RuleCategory.STATISTICAL)
    context = make_context(
        {"other": _orders_frame()},
        [rule],
        baselines={("transaction_amount", "order", "daily"): _baseline()},
    )

    assert StatisticalOutlierDetector().run(context) == []
    issues = context.issues_for(RuleCategory.STATISTICAL)
    assert len(issues) == 1
    assert issues[0].error_type == "DataAccessError"
    assert issues[0].scope == "transaction_amount"
