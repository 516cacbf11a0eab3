"""
Statistical outlier detection.

A recent value is flagged when either method fires:
- z-score: |v - mean| / stddev > threshold (skipped when stddev is 0)
- IQR: v outside [Q1 - 1.5*IQR, Q3 + 1.5*IQR]

When Q1 == Q3 the fences collapse to the quartile itself, so any value
different from it is reported with degenerate_iqr set.
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Dict, List, Optional

from src.core.exceptions import DataAccessError, DetectionError

from .detectors import Detector, ScanContext
from .schema import Finding, OutlierEvidence, RuleCategory, StatisticalBaseline
from .scoring import IQR_MULTIPLIER, iqr_bounds, iqr_distance, z_score

logger = logging.getLogger(__name__)

DEFAULT_Z_THRESHOLD = 3.0


def evaluate_outlier(
    metric: str,
    value: float,
    baseline: StatisticalBaseline,
    z_threshold: float = DEFAULT_Z_THRESHOLD,
    multiplier: float = IQR_MULTIPLIER,
) -> Optional[OutlierEvidence]:
    """
    Test one value against a baseline.

    Returns:
        Evidence listing the triggering methods, or None if neither fires.

    Raises:
        DetectionError: If the value is not a finite number.
    """
    if value is None or not math.isfinite(value):
        raise DetectionError(f"{metric}: value {value!r} is not a finite number")

    z = z_score(value, baseline.mean, baseline.stddev)
    lower, upper = iqr_bounds(baseline.q1, baseline.q3, multiplier)

    methods = []
    if z is not None and z > z_threshold:
        methods.append("z_score")
    if value < lower or value > upper:
        methods.append("iqr")
    if not methods:
        return None

    return OutlierEvidence(
        metric=metric,
        value=value,
        baseline_mean=baseline.mean,
        baseline_stddev=baseline.stddev,
        baseline_median=baseline.median,
        baseline_q1=baseline.q1,
        baseline_q3=baseline.q3,
        baseline_sample_size=baseline.sample_size,
        z_score=z,
        iqr_lower=lower,
        iqr_upper=upper,
        methods=methods,
        degenerate_iqr=baseline.q1 == baseline.q3,
    )


def outlier_score(evidence: OutlierEvidence) -> float:
    """z-score when defined, else distance past the nearest IQR fence."""
    if evidence.z_score is not None:
        return evidence.z_score
    return iqr_distance(
        evidence.value,
        evidence.iqr_lower,
        evidence.iqr_upper,
        evidence.baseline_q3 - evidence.baseline_q1,
    )


class StatisticalOutlierDetector(Detector):
    category = RuleCategory.STATISTICAL

    def run(self, context: ScanContext) -> List[Finding]:
        findings: List[Finding] = []

        for spec in context.settings.baselines.metrics:
            rule = context.rule_for(spec.rule, self.category)
            if rule is None:
                continue

            baseline = context.baselines.get((spec.metric, spec.entity_type, spec.period))
            if baseline is None or baseline.sample_size == 0:
                logger.warning("No usable baseline for %s/%s; skipping", spec.metric, spec.entity_type)
                continue

            start = context.now - timedelta(days=spec.detection_days)
            try:
                frame = context.query(
                    f"recent values for {spec.metric}",
                    context.source.fetch_metric_values,
                    spec.table,
                    spec.id_column,
                    spec.value_column,
                    spec.time_column,
                    start,
                    context.now,
                )
            except DataAccessError as exc:
                logger.error("Outlier query failed for %s: %s", spec.metric, exc)
                context.record_issue(self.category, spec.metric, exc)
                continue

            threshold = rule.threshold_or(DEFAULT_Z_THRESHOLD)
            flagged: Dict[str, Finding] = {}
            for entity_id, value in zip(frame["entity_id"], frame["value"]):
                try:
                    evidence = evaluate_outlier(spec.metric, float(value), baseline, threshold)
                except DetectionError as exc:
                    logger.warning("Skipping %s %s: %s", spec.entity_type, entity_id, exc)
                    context.record_issue(self.category, f"{spec.metric}:{entity_id}", exc)
                    continue
                if evidence is None:
                    continue

                finding = self.finding(context, rule, spec.entity_type, entity_id, outlier_score(evidence), evidence)
                previous = flagged.get(entity_id)
                if previous is None or finding.score > previous.score:
                    flagged[entity_id] = finding

            logger.info("%s: %d outliers among %d recent values", spec.metric, len(flagged), len(frame))
            findings.extend(flagged.values())

        return findings
