"""
Temporal and sequence detection.

Hourly deviation compares each entity against its own hour-of-day profile:
activity is counted per hour the entity was active in, and an hour is flagged
when its count sits more than threshold sample standard deviations from the
entity's mean over those hours (in either direction) and the hour lies in the
unusual window. Entities active in fewer than two hours have no profile.

Rapid sequence looks at events between one actor and one counterparty and
flags the longest run of consecutive gaps shorter than max_gap_seconds when it
holds at least min_repeat gaps.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from src.core.exceptions import DataAccessError, DetectionError
from src.dataset.source import normalize_id

from .detectors import Detector, ScanContext
from .schema import DetectionRule, Finding, HourlyDeviationEvidence, RapidSequenceEvidence, RuleCategory

logger = logging.getLogger(__name__)

DEFAULT_HOURLY_Z = 3.0
DEFAULT_MIN_REPEAT = 3


def in_hour_window(hour: int, start: int, end: int) -> bool:
    """Inclusive hour window; wraps past midnight when start > end."""
    if start <= end:
        return start <= hour <= end
    return hour >= start or hour <= end


def hourly_profile(hours: Sequence[int]) -> pd.Series:
    """Event counts indexed by the hours of day that have events, ascending."""
    return pd.Series(np.asarray(hours, dtype=int)).value_counts().sort_index()


def hourly_deviation(
    counts: pd.Series,
    threshold: float,
    window_start: int,
    window_end: int,
) -> Optional[HourlyDeviationEvidence]:
    """
    Most deviant flagged hour of an entity's hourly profile, or None.

    Args:
        counts: Event counts indexed by active hour (see hourly_profile)

    Raises:
        DetectionError: If fewer than two hours are active or the profile
            has no variance.
    """
    if len(counts) < 2:
        raise DetectionError("hourly profile needs at least two active hours")
    mean = float(counts.mean())
    std = float(counts.std(ddof=1))
    if std <= 0.0:
        raise DetectionError("hourly profile has zero variance")

    z_scores = (counts - mean) / std
    flagged = [
        int(h) for h, z in z_scores.items() if in_hour_window(int(h), window_start, window_end) and abs(z) > threshold
    ]
    if not flagged:
        return None

    peak = max(flagged, key=lambda h: (abs(z_scores[h]), -h))
    return HourlyDeviationEvidence(
        hour=peak,
        count=int(counts[peak]),
        hourly_mean=mean,
        hourly_stddev=std,
        z_score=float(z_scores[peak]),
        flagged_hours=flagged,
    )


def longest_rapid_run(gaps: Sequence[float], max_gap: float) -> Tuple[int, int]:
    """
    Longest run of consecutive gaps below max_gap.

    Returns:
        (start index, length); length 0 when no gap qualifies. Ties keep the
        earliest run.
    """
    best_start, best_len = 0, 0
    run_start, run_len = 0, 0
    for i, gap in enumerate(gaps):
        if gap < max_gap:
            if run_len == 0:
                run_start = i
            run_len += 1
            if run_len > best_len:
                best_start, best_len = run_start, run_len
        else:
            run_len = 0
    return best_start, best_len


def rapid_sequence(
    times: Sequence[pd.Timestamp],
    counterparty_id: str,
    max_gap_seconds: float,
    min_repeat: int,
) -> Optional[RapidSequenceEvidence]:
    """Evidence for the longest qualifying burst in time-ordered events, or None."""
    if len(times) < 2:
        return None
    gaps = [(b - a).total_seconds() for a, b in zip(times[:-1], times[1:])]
    start, length = longest_rapid_run(gaps, max_gap_seconds)
    if length < min_repeat:
        return None

    run = gaps[start : start + length]
    return RapidSequenceEvidence(
        counterparty_id=counterparty_id,
        count=length + 1,
        min_gap_seconds=min(run),
        avg_gap_seconds=sum(run) / len(run),
        max_gap_seconds=max(run),
        first_event_at=times[start].to_pydatetime(),
        last_event_at=times[start + length].to_pydatetime(),
    )


class TemporalSequenceDetector(Detector):
    category = RuleCategory.TEMPORAL

    def run(self, context: ScanContext) -> List[Finding]:
        findings: List[Finding] = []
        temporal = context.settings.temporal

        rule = context.rule_for(temporal.hourly.rule, self.category)
        if rule is not None:
            try:
                findings.extend(self._hourly(context, rule))
            except DataAccessError as exc:
                logger.error("Hourly deviation query failed: %s", exc)
                context.record_issue(self.category, rule.name, exc)

        rule = context.rule_for(temporal.rapid_sequence.rule, self.category)
        if rule is not None:
            try:
                findings.extend(self._rapid(context, rule))
            except DataAccessError as exc:
                logger.error("Rapid sequence query failed: %s", exc)
                context.record_issue(self.category, rule.name, exc)

        return findings

    def _hourly(self, context: ScanContext, rule: DetectionRule) -> List[Finding]:
        spec = context.settings.temporal.hourly
        events = context.query(
            f"events for {rule.name}",
            context.source.fetch_events,
            spec.table,
            spec.time_column,
            [spec.entity_column],
            context.now - timedelta(days=spec.window_days),
            context.now,
        )
        if events.empty:
            return []

        threshold = rule.threshold_or(DEFAULT_HOURLY_Z)
        events = events.dropna(subset=[spec.entity_column])
        events = events.assign(_entity=events[spec.entity_column].map(normalize_id))
        findings = []
        for entity_id, group in events.groupby("_entity", sort=True):
            counts = hourly_profile(group[spec.time_column].dt.hour)
            try:
                evidence = hourly_deviation(counts, threshold, spec.unusual_hour_start, spec.unusual_hour_end)
            except DetectionError as exc:
                logger.debug("Skipping %s %s: %s", spec.entity_type, entity_id, exc)
                continue
            if evidence is not None:
                findings.append(
                    self.finding(context, rule, spec.entity_type, entity_id, abs(evidence.z_score), evidence)
                )

        logger.info("%s: %d entities flagged", rule.name, len(findings))
        return findings

    def _rapid(self, context: ScanContext, rule: DetectionRule) -> List[Finding]:
        spec = context.settings.temporal.rapid_sequence
        events = context.query(
            f"events for {rule.name}",
            context.source.fetch_events,
            spec.table,
            spec.time_column,
            [spec.actor_column, spec.counterparty_column],
            context.now - timedelta(days=spec.window_days),
            context.now,
        )
        if events.empty:
            return []

        min_repeat = max(int(rule.threshold_or(DEFAULT_MIN_REPEAT)), 1)
        events = events.dropna(subset=[spec.actor_column, spec.counterparty_column])
        events = events.assign(
            _actor=events[spec.actor_column].map(normalize_id),
            _counterparty=events[spec.counterparty_column].map(normalize_id),
        )

        best: Dict[str, RapidSequenceEvidence] = {}
        for (actor, counterparty), group in events.groupby(["_actor", "_counterparty"], sort=True):
            evidence = rapid_sequence(
                list(group[spec.time_column]), counterparty, spec.max_gap_seconds, min_repeat
            )
            if evidence is None:
                continue
            previous = best.get(actor)
            if previous is None or evidence.count > previous.count:
                best[actor] = evidence

        findings = [
            self.finding(context, rule, spec.entity_type, actor, float(evidence.count), evidence)
            for actor, evidence in best.items()
        ]
        logger.info("%s: %d actors flagged", rule.name, len(findings))
        return findings
