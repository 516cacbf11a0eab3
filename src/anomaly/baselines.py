"""
Baseline calculation for statistical outlier detection.

For each configured metric the calculator pulls raw values over a trailing
window and stores mean, sample standard deviation, median, and quartiles.
Percentiles use linear interpolation between closest ranks; the standard
deviation is the sample (n-1) estimate and is 0 for a single value.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

import numpy as np

from src.core.config import MetricSpec
from src.core.exceptions import DataAccessError
from src.dataset.source import DataSource, run_query

from .schema import BaselineRefreshResult, DetectionRule, RuleCategory, ScanIssue, StatisticalBaseline
from .store.baselines import BaselineStore

logger = logging.getLogger(__name__)


def compute_baseline_stats(values: Iterable[float]) -> Dict[str, float]:
    """
    Summary statistics for a non-empty sample.

    Returns:
        Dict with mean, stddev, median, q1, q3, sample_size.

    Raises:
        ValueError: If values is empty or contains non-finite numbers.
    """
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        raise ValueError("cannot compute a baseline from an empty sample")
    if not np.all(np.isfinite(arr)):
        raise ValueError("baseline sample contains non-finite values")

    q1, median, q3 = np.percentile(arr, [25, 50, 75])
    stddev = float(np.std(arr, ddof=1)) if arr.size > 1 else 0.0
    return {
        "mean": float(np.mean(arr)),
        "stddev": stddev,
        "median": float(median),
        "q1": float(q1),
        "q3": float(q3),
        "sample_size": int(arr.size),
    }


def baseline_window(spec: MetricSpec, now: datetime) -> Tuple[datetime, datetime]:
    """[start, end) of the values a metric's baseline is computed from."""
    start = now - timedelta(days=spec.baseline_days)
    end = now - timedelta(days=spec.detection_days) if spec.exclude_detection_window else now
    return start, end


@dataclass
class BaselineCalculator:
    """
    Refreshes stored baselines from the external dataset.

    Only metrics bound to an active statistical rule are refreshed. A metric
    whose query fails is marked failed; one with no values keeps its previous
    baseline (stale). Neither stops the remaining metrics.
    """

    source: DataSource
    store: BaselineStore
    metrics: Sequence[MetricSpec]
    query_timeout: Optional[float] = None

    def refresh_baselines(
        self,
        rules: Mapping[str, DetectionRule],
        now: Optional[datetime] = None,
    ) -> BaselineRefreshResult:
        """
        Recompute every eligible metric baseline.

        Args:
            rules: Active rules keyed by name
            now: Reference time for the trailing windows (defaults to UTC now)
        """
        now = now or datetime.now(timezone.utc)
        started = time.perf_counter()
        result = BaselineRefreshResult()

        for spec in self.metrics:
            rule = rules.get(spec.rule)
            if rule is None:
                logger.debug("Skipping baseline %s: rule %s inactive or unknown", spec.metric, spec.rule)
                result.skipped.append(spec.metric)
                continue
            if rule.category != RuleCategory.STATISTICAL:
                result.skipped.append(spec.metric)
                result.issues.append(
                    ScanIssue(
                        category="baselines",
                        scope=spec.metric,
                        error_type="ConfigurationError",
                        message=f"Rule {rule.name} is {rule.category.value}, not statistical",
                    )
                )
                continue

            self._refresh_metric(spec, now, result)

        result.execution_time_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Baseline refresh: %d refreshed, %d stale, %d failed, %d skipped",
            len(result.refreshed), len(result.stale), len(result.failed), len(result.skipped),
        )
        return result

    def _refresh_metric(self, spec: MetricSpec, now: datetime, result: BaselineRefreshResult) -> None:
        start, end = baseline_window(spec, now)
        try:
            frame = run_query(
                self.source.fetch_metric_values,
                spec.table,
                spec.id_column,
                spec.value_column,
                spec.time_column,
                start,
                end,
                timeout=self.query_timeout,
                description=f"baseline query for {spec.metric}",
            )
        except DataAccessError as exc:
            logger.error("Baseline query failed for %s: %s", spec.metric, exc)
            result.failed.append(spec.metric)
            result.issues.append(
                ScanIssue(category="baselines", scope=spec.metric, error_type="DataAccessError", message=str(exc))
            )
            return

        if frame.empty:
            logger.warning("No values for %s in baseline window; keeping previous baseline", spec.metric)
            result.stale.append(spec.metric)
            result.issues.append(
                ScanIssue(
                    category="baselines",
                    scope=spec.metric,
                    error_type="EmptySample",
                    message=f"No values between {start.isoformat()} and {end.isoformat()}",
                )
            )
            return

        try:
            stats = compute_baseline_stats(frame["value"])
        except ValueError as exc:
            logger.warning("Unusable sample for %s: %s; keeping previous baseline", spec.metric, exc)
            result.stale.append(spec.metric)
            result.issues.append(
                ScanIssue(category="baselines", scope=spec.metric, error_type="InvalidSample", message=str(exc))
            )
            return

        self.store.upsert(
            StatisticalBaseline(
                metric_name=spec.metric,
                entity_type=spec.entity_type,
                time_period=spec.period,
                calculated_at=now,
                **stats,
            )
        )
        result.refreshed.append(spec.metric)
        logger.debug(
            "Baseline %s/%s: n=%d mean=%.4f stddev=%.4f",
            spec.metric, spec.entity_type, stats["sample_size"], stats["mean"], stats["stddev"],
        )
