"""
Network and relationship detection.

Clustering groups entities by shared identifying attributes and reports every
member of an oversized group as its own anomaly. Relationship checks look at
actor/counterparty transaction pairs for self-dealing and excessive volume.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

import pandas as pd

from src.core.exceptions import DataAccessError
from src.dataset.source import normalize_id

from .detectors import Detector, ScanContext
from .schema import ClusterEvidence, DetectionRule, Finding, RelationshipEvidence, RuleCategory

logger = logging.getLogger(__name__)

DEFAULT_CLUSTER_SIZE = 10.0
DEFAULT_SHARED_CONTACT_SIZE = 3.0
DEFAULT_MIN_SELF_DEALING = 1.0
DEFAULT_PAIR_COUNT = 20.0

SELF_DEALING_SCORE = 5.0
VOLUME_SCORE = 3.0


def _cluster_evidence(row: pd.Series, group_columns: List[str], count_columns: List[str], shared: bool) -> ClusterEvidence:
    return ClusterEvidence(
        group_key={c: str(row[c]) for c in group_columns},
        member_count=int(row["member_count"]),
        member_ids=list(row["member_ids"]),
        distinct_contacts={c: int(row[f"distinct_{c}"]) for c in count_columns},
        shared_contact=shared,
    )


class NetworkRelationshipDetector(Detector):
    category = RuleCategory.PATTERN

    def run(self, context: ScanContext) -> List[Finding]:
        findings: List[Finding] = []
        findings.extend(self._guarded(context, "clustering", self._clusters))
        findings.extend(self._guarded(context, "relationships", self._relationships))
        return findings

    def _guarded(self, context: ScanContext, scope: str, check) -> List[Finding]:
        try:
            return check(context)
        except DataAccessError as exc:
            logger.error("Network %s check failed: %s", scope, exc)
            context.record_issue(self.category, scope, exc)
            return []

    def _clusters(self, context: ScanContext) -> List[Finding]:
        spec = context.settings.network.clustering
        size_rule = context.rule_for(spec.rule, self.category)
        contact_rule = context.rule_for(spec.shared_contact_rule, self.category) if spec.contact_column else None
        if size_rule is None and contact_rule is None:
            return []

        count_columns = [c for c in [spec.contact_column, *spec.extra_contact_columns] if c]
        filters = {spec.status_column: spec.active_value} if spec.status_column else None
        groups = context.query(
            "attribute groups",
            context.source.fetch_attribute_groups,
            spec.table,
            spec.id_column,
            spec.group_columns,
            count_columns,
            filters,
        )

        size_limit = size_rule.threshold_or(DEFAULT_CLUSTER_SIZE) if size_rule else None
        contact_limit = contact_rule.threshold_or(DEFAULT_SHARED_CONTACT_SIZE) if contact_rule else None

        findings = []
        flagged_groups = 0
        for _, row in groups.iterrows():
            members = int(row["member_count"])
            hits: List[Tuple[DetectionRule, bool]] = []
            if size_limit is not None and members > size_limit:
                hits.append((size_rule, False))
            if (
                contact_limit is not None
                and members > contact_limit
                and int(row[f"distinct_{spec.contact_column}"]) == 1
            ):
                hits.append((contact_rule, True))
            if not hits:
                continue

            flagged_groups += 1
            for rule, shared in hits:
                evidence = _cluster_evidence(row, spec.group_columns, count_columns, shared)
                for member in evidence.member_ids:
                    findings.append(self.finding(context, rule, spec.entity_type, member, float(members), evidence))

        logger.info("Clustering: %d groups flagged, %d member findings", flagged_groups, len(findings))
        return findings

    def _relationships(self, context: ScanContext) -> List[Finding]:
        spec = context.settings.network.relationships
        self_rule = context.rule_for(spec.self_dealing_rule, self.category)
        volume_rule = context.rule_for(spec.volume_rule, self.category)
        if self_rule is None and volume_rule is None:
            return []

        events = context.query(
            "relationship transactions",
            context.source.fetch_events,
            spec.table,
            spec.time_column,
            [spec.actor_column, spec.counterparty_column, spec.amount_column],
            context.now - timedelta(days=spec.window_days),
            context.now,
        )
        events = events.dropna(subset=[spec.actor_column, spec.counterparty_column])
        if events.empty:
            return []

        pairs = (
            events.assign(
                actor=events[spec.actor_column].map(normalize_id),
                counterparty=events[spec.counterparty_column].map(normalize_id),
                amount=pd.to_numeric(events[spec.amount_column], errors="coerce").fillna(0.0),
            )
            .groupby(["actor", "counterparty"], sort=True)
            .agg(transaction_count=("amount", "size"), total_value=("amount", "sum"))
            .reset_index()
        )

        owners: Optional[Dict[str, str]] = None
        if self_rule is not None:
            try:
                owners = self._owners(context)
            except DataAccessError as exc:
                logger.error("Ownership lookup failed: %s", exc)
                context.record_issue(self.category, self_rule.name, exc)

        self_dealing: Dict[str, Finding] = {}
        volume: Dict[str, Finding] = {}
        min_self = self_rule.threshold_or(DEFAULT_MIN_SELF_DEALING) if self_rule else None
        max_count = volume_rule.threshold_or(DEFAULT_PAIR_COUNT) if volume_rule else None

        for pair in pairs.itertuples(index=False):
            count = int(pair.transaction_count)
            total = float(pair.total_value)
            is_self = owners is not None and owners.get(pair.counterparty) == pair.actor

            if is_self and count >= min_self:
                self._keep_largest(
                    self_dealing, context, self_rule, spec.entity_type, pair.counterparty,
                    SELF_DEALING_SCORE, self._pair_evidence("self_dealing", pair, count, total, True, spec.window_days),
                )
            if max_count is not None and (count > max_count or total > spec.value_threshold):
                self._keep_largest(
                    volume, context, volume_rule, spec.entity_type, pair.counterparty,
                    VOLUME_SCORE, self._pair_evidence("excessive_bilateral_volume", pair, count, total, is_self, spec.window_days),
                )

        findings = list(self_dealing.values()) + list(volume.values())
        logger.info("Relationships: %d self-dealing, %d high-volume", len(self_dealing), len(volume))
        return findings

    def _owners(self, context: ScanContext) -> Dict[str, str]:
        spec = context.settings.network.relationships
        records = context.query(
            "counterparty owners",
            context.source.fetch_records,
            spec.owner_table,
            [spec.owner_key_column, spec.owner_column],
        ).dropna()
        return {
            normalize_id(key): normalize_id(owner)
            for key, owner in zip(records[spec.owner_key_column], records[spec.owner_column])
        }

    @staticmethod
    def _pair_evidence(reason, pair, count: int, total: float, is_self: bool, window_days: int) -> RelationshipEvidence:
        return RelationshipEvidence(
            reason=reason,
            counterparty_id=pair.actor,
            transaction_count=count,
            total_value=total,
            self_dealing=is_self,
            window_days=window_days,
        )

    def _keep_largest(
        self,
        bucket: Dict[str, Finding],
        context: ScanContext,
        rule: DetectionRule,
        entity_type: str,
        entity_id: str,
        score: float,
        evidence: RelationshipEvidence,
    ) -> None:
        previous = bucket.get(entity_id)
        if previous is not None and previous.evidence.transaction_count >= evidence.transaction_count:
            return
        bucket[entity_id] = self.finding(context, rule, entity_type, entity_id, score, evidence)
