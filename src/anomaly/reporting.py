"""
Read-only summaries over the anomaly store.

Report sections:
- by_severity: critical first, down to low
- by_entity_type / by_status: highest count first
- top_rules: most-triggered rules, limited to top_rules_limit

Alerts compare a counted KPI against its configured threshold and fire when
the count exceeds it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from src.core.config import AlertThreshold, ReportingConfig

from .schema import Alert, AnomalyReport, CountRow, Severity
from .scoring import SEVERITY_ORDER
from .store.anomalies import AnomalyStore

logger = logging.getLogger(__name__)


def _by_count(counts: Dict[str, int], limit: Optional[int] = None) -> List[CountRow]:
    rows = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    if limit is not None:
        rows = rows[:limit]
    return [CountRow(key=key, count=count) for key, count in rows]


def evaluate_alerts(thresholds: List[AlertThreshold], total: int, counts: Dict[str, Dict[str, int]]) -> List[Alert]:
    alerts = []
    for threshold in thresholds:
        if threshold.kpi == "total":
            observed = total
            label = "total anomalies"
        else:
            observed = counts.get(threshold.kpi, {}).get(threshold.key or "", 0)
            label = f"{threshold.kpi}={threshold.key} anomalies"

        if observed > threshold.threshold:
            alerts.append(
                Alert(
                    name=threshold.name,
                    kpi=threshold.kpi,
                    key=threshold.key,
                    observed=observed,
                    threshold=threshold.threshold,
                    level=Severity(threshold.level),
                    message=f"{observed} {label} exceeds threshold {threshold.threshold}",
                )
            )
    return alerts


class AnomalyReporter:
    def __init__(self, store: AnomalyStore, settings: ReportingConfig):
        self.store = store
        self.settings = settings

    def generate_report(self, window_days: Optional[int] = None, now: Optional[datetime] = None) -> AnomalyReport:
        """
        Summarize anomalies detected in the trailing window.

        Args:
            window_days: Look-back window (defaults to the configured window)
            now: End of the window (defaults to UTC now)
        """
        if window_days is None:
            window_days = self.settings.window_days
        if window_days < 1:
            raise ValueError("window_days must be at least 1")
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=window_days)

        counts = {dim: self.store.count_by(dim, since) for dim in ("severity", "entity_type", "status", "rule")}
        total = sum(counts["status"].values())

        by_severity = [
            CountRow(key=s.value, count=counts["severity"][s.value])
            for s in reversed(SEVERITY_ORDER)
            if s.value in counts["severity"]
        ]
        alerts = evaluate_alerts(self.settings.alerts, total, counts)
        for alert in alerts:
            logger.warning("Alert %s: %s", alert.name, alert.message)

        return AnomalyReport(
            window_days=window_days,
            since=since,
            generated_at=now,
            total=total,
            by_severity=by_severity,
            by_entity_type=_by_count(counts["entity_type"]),
            by_status=_by_count(counts["status"]),
            top_rules=_by_count(counts["rule"], self.settings.top_rules_limit),
            alerts=alerts,
        )
