"""
Behavioral pattern detection.

Entity-scoped heuristics over a rolling window. The comparison for each
heuristic kind lives here; thresholds come from the bound rule:

- action_count: actions in window > threshold
- cumulative_value: summed value in window > threshold
- distinct_values: distinct values in window > threshold
- first_action_latency: days from registration to first action < threshold
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pandas as pd

from src.core.config import HeuristicSpec
from src.core.exceptions import DataAccessError, DetectionError
from src.dataset.source import normalize_id

from .detectors import Detector, ScanContext
from .schema import BehavioralEvidence, DetectionRule, Finding, RuleCategory
from .scoring import exceedance_ratio

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = {
    "action_count": 4.0,
    "cumulative_value": 50000.0,
    "first_action_latency": 7.0,
    "distinct_values": 2.0,
}

SECONDS_PER_DAY = 86400.0


def _span_days(first: pd.Timestamp, last: pd.Timestamp) -> float:
    return (last - first).total_seconds() / SECONDS_PER_DAY


def latency_days(registered_at: datetime, first_action_at: datetime) -> float:
    """
    Days between registration and the first action.

    Raises:
        DetectionError: If the action precedes the registration.
    """
    days = (first_action_at - registered_at).total_seconds() / SECONDS_PER_DAY
    if days < 0:
        raise DetectionError(
            f"first action at {first_action_at.isoformat()} precedes registration at {registered_at.isoformat()}"
        )
    return days


class BehavioralPatternDetector(Detector):
    category = RuleCategory.BEHAVIORAL

    def run(self, context: ScanContext) -> List[Finding]:
        findings: List[Finding] = []
        for spec in context.settings.behavioral.heuristics:
            rule = context.rule_for(spec.rule, self.category)
            if rule is None:
                continue
            try:
                findings.extend(self._evaluate(context, spec, rule))
            except DataAccessError as exc:
                logger.error("Heuristic %s failed: %s", spec.rule, exc)
                context.record_issue(self.category, spec.rule, exc)
        return findings

    def _evaluate(self, context: ScanContext, spec: HeuristicSpec, rule: DetectionRule) -> List[Finding]:
        columns = [spec.entity_column] + ([spec.value_column] if spec.value_column else [])
        events = context.query(
            f"events for {spec.rule}",
            context.source.fetch_events,
            spec.table,
            spec.time_column,
            columns,
            context.now - timedelta(days=spec.window_days),
            context.now,
        )
        if events.empty:
            return []

        registrations: Optional[Dict[str, pd.Timestamp]] = None
        if spec.kind == "first_action_latency":
            registrations = self._registrations(context, spec)

        threshold = rule.threshold_or(DEFAULT_THRESHOLDS[spec.kind])
        events = events.dropna(subset=[spec.entity_column])
        events = events.assign(_entity=events[spec.entity_column].map(normalize_id))

        findings = []
        for entity_id, group in events.groupby("_entity", sort=True):
            try:
                finding = self._check_entity(context, spec, rule, threshold, entity_id, group, registrations)
            except DetectionError as exc:
                logger.warning("Skipping %s %s for %s: %s", spec.entity_type, entity_id, spec.rule, exc)
                context.record_issue(self.category, f"{spec.rule}:{entity_id}", exc)
                continue
            if finding is not None:
                findings.append(finding)

        logger.info("%s: %d entities flagged", spec.rule, len(findings))
        return findings

    def _registrations(self, context: ScanContext, spec: HeuristicSpec) -> Dict[str, pd.Timestamp]:
        records = context.query(
            f"registrations for {spec.rule}",
            context.source.fetch_records,
            spec.registration_table,
            [spec.registration_id_column, spec.registration_time_column],
        )
        times = pd.to_datetime(records[spec.registration_time_column], utc=True, errors="coerce")
        return {
            normalize_id(entity): ts
            for entity, ts in zip(records[spec.registration_id_column], times)
            if not pd.isna(ts)
        }

    def _check_entity(
        self,
        context: ScanContext,
        spec: HeuristicSpec,
        rule: DetectionRule,
        threshold: float,
        entity_id: str,
        group: pd.DataFrame,
        registrations: Optional[Dict[str, pd.Timestamp]],
    ) -> Optional[Finding]:
        times = group[spec.time_column]
        first, last = times.iloc[0], times.iloc[-1]

        if spec.kind == "action_count":
            observed = float(len(group))
            flagged = observed > threshold
            score = exceedance_ratio(observed, threshold)
        elif spec.kind == "cumulative_value":
            values = pd.to_numeric(group[spec.value_column], errors="coerce")
            if values.isna().all():
                raise DetectionError(f"no numeric {spec.value_column} values")
            observed = float(values.sum())
            flagged = observed > threshold
            score = exceedance_ratio(observed, threshold)
        elif spec.kind == "distinct_values":
            observed = float(group[spec.value_column].dropna().nunique())
            flagged = observed > threshold
            score = exceedance_ratio(observed, threshold)
        else:
            registered = registrations.get(entity_id) if registrations else None
            if registered is None:
                logger.debug("No registration for %s %s; skipping", spec.entity_type, entity_id)
                return None
            observed = latency_days(registered, first)
            flagged = observed < threshold
            score = threshold / max(observed, 1.0)

        if not flagged:
            return None

        evidence = BehavioralEvidence(
            heuristic=spec.kind,
            observed=observed,
            threshold=threshold,
            window_days=spec.window_days,
            event_count=len(group),
            first_event_at=first.to_pydatetime(),
            last_event_at=last.to_pydatetime(),
            time_span_days=_span_days(first, last),
        )
        return self.finding(context, rule, spec.entity_type, entity_id, score, evidence)
