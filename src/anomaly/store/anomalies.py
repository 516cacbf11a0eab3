"""
Anomaly store: idempotent persistence of findings and the investigation lifecycle.

Lifecycle:

    pending ──► false_positive        (terminal)
       │
       └──────► confirmed ──► resolved (terminal)

No transition may return to pending. Repeated scans never duplicate an open
finding: while a pending anomaly exists for a (rule, entity) pair, upserting
another finding for the same pair is a no-op.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from src.core.exceptions import AnomalyNotFoundError, ConfigurationError, InvalidTransitionError, PersistenceError

from ..schema import Anomaly, AnomalyFilters, DetectionRule, Finding, ResolutionStatus, RuleCategory, Severity, evidence_adapter
from .database import Database
from .orm import AnomalyRecord, RuleRecord

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[ResolutionStatus, frozenset] = {
    ResolutionStatus.PENDING: frozenset({ResolutionStatus.FALSE_POSITIVE, ResolutionStatus.CONFIRMED}),
    ResolutionStatus.CONFIRMED: frozenset({ResolutionStatus.RESOLVED}),
    ResolutionStatus.FALSE_POSITIVE: frozenset(),
    ResolutionStatus.RESOLVED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)

_DIMENSIONS = {
    "severity": RuleRecord.severity,
    "entity_type": AnomalyRecord.entity_type,
    "status": AnomalyRecord.resolution_status,
    "rule": RuleRecord.name,
}


def _to_anomaly(record: AnomalyRecord) -> Anomaly:
    return Anomaly(
        id=record.id,
        rule_id=record.rule_id,
        rule_name=record.rule.name,
        category=RuleCategory(record.rule.category),
        severity=Severity(record.rule.severity),
        entity_type=record.entity_type,
        entity_id=record.entity_id,
        anomaly_score=record.anomaly_score,
        details=evidence_adapter.validate_python(record.anomaly_details),
        detected_at=record.detected_at,
        investigated_at=record.investigated_at,
        resolution_status=ResolutionStatus(record.resolution_status),
        investigation_notes=record.investigation_notes,
    )


class AnomalyStore:
    """
    Persistence for anomalies.

    All writes take the database write lock, so concurrent upserts for the same
    (rule, entity) key are serialized; the partial unique index on pending rows
    backs the same guarantee at the database level.
    """

    def __init__(self, database: Database):
        self.database = database

    def upsert_finding(self, finding: Finding, rule: DetectionRule) -> bool:
        """
        Insert a pending anomaly unless one is already open for (rule, entity).

        Args:
            finding: Candidate produced by a detector
            rule: The registered rule the finding belongs to (must have an id)

        Returns:
            True if a new anomaly was created, False if an open one already existed.
        """
        if rule.id is None:
            raise PersistenceError(f"Rule {rule.name} is not registered")

        with self.database.write_lock:
            try:
                with self.database.session() as session:
                    open_id = session.scalar(
                        select(AnomalyRecord.id).where(
                            AnomalyRecord.rule_id == rule.id,
                            AnomalyRecord.entity_type == finding.entity_type,
                            AnomalyRecord.entity_id == finding.entity_id,
                            AnomalyRecord.resolution_status == ResolutionStatus.PENDING.value,
                        )
                    )
                    if open_id is not None:
                        logger.debug(
                            "Open anomaly %s already covers %s %s/%s",
                            open_id, rule.name, finding.entity_type, finding.entity_id,
                        )
                        return False

                    session.add(
                        AnomalyRecord(
                            rule_id=rule.id,
                            entity_type=finding.entity_type,
                            entity_id=finding.entity_id,
                            anomaly_score=finding.score,
                            anomaly_details=finding.evidence.model_dump(mode="json"),
                            detected_at=finding.detected_at,
                            resolution_status=ResolutionStatus.PENDING.value,
                        )
                    )
            except PersistenceError as exc:
                # Lost an insert race against the open-finding index: the open row wins.
                if isinstance(exc.__cause__, IntegrityError):
                    logger.debug("Duplicate open finding ignored for %s %s", rule.name, finding.entity_id)
                    return False
                raise
        return True

    def get(self, anomaly_id: int) -> Anomaly:
        with self.database.session() as session:
            record = session.get(AnomalyRecord, anomaly_id)
            if record is None:
                raise AnomalyNotFoundError(f"Unknown anomaly: {anomaly_id}")
            return _to_anomaly(record)

    def transition(
        self,
        anomaly_id: int,
        new_status: ResolutionStatus,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Anomaly:
        """
        Move an anomaly through the investigation lifecycle.

        Notes are appended to any existing investigation notes. investigated_at
        records the time of the latest transition.

        Raises:
            ConfigurationError: If new_status is not a known status
            AnomalyNotFoundError: If the anomaly does not exist
            InvalidTransitionError: If the current status is terminal or the
                move is not allowed
        """
        try:
            new_status = ResolutionStatus(new_status)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown resolution status: {new_status}") from exc

        with self.database.write_lock, self.database.session() as session:
            record = session.get(AnomalyRecord, anomaly_id)
            if record is None:
                raise AnomalyNotFoundError(f"Unknown anomaly: {anomaly_id}")

            current = ResolutionStatus(record.resolution_status)
            if current in TERMINAL_STATUSES:
                raise InvalidTransitionError(f"Anomaly {anomaly_id} is already {current.value}")
            if new_status not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(
                    f"Cannot move anomaly {anomaly_id} from {current.value} to {new_status.value}"
                )

            record.resolution_status = new_status.value
            record.investigated_at = now or datetime.now(timezone.utc)
            if notes:
                record.investigation_notes = (
                    f"{record.investigation_notes}\n{notes}" if record.investigation_notes else notes
                )
            session.flush()
            updated = _to_anomaly(record)

        logger.info("Anomaly %s moved %s -> %s", anomaly_id, current.value, new_status.value)
        return updated

    def query(self, filters: Optional[AnomalyFilters] = None) -> List[Anomaly]:
        filters = filters or AnomalyFilters()
        stmt = select(AnomalyRecord).join(AnomalyRecord.rule)

        if filters.entity_type is not None:
            stmt = stmt.where(AnomalyRecord.entity_type == filters.entity_type)
        if filters.entity_id is not None:
            stmt = stmt.where(AnomalyRecord.entity_id == filters.entity_id)
        if filters.severity is not None:
            stmt = stmt.where(RuleRecord.severity == filters.severity.value)
        if filters.status is not None:
            stmt = stmt.where(AnomalyRecord.resolution_status == filters.status.value)
        if filters.rule_name is not None:
            stmt = stmt.where(RuleRecord.name == filters.rule_name)
        if filters.detected_from is not None:
            stmt = stmt.where(AnomalyRecord.detected_at >= filters.detected_from)
        if filters.detected_to is not None:
            stmt = stmt.where(AnomalyRecord.detected_at < filters.detected_to)

        stmt = (
            stmt.order_by(AnomalyRecord.detected_at.desc(), AnomalyRecord.id.desc())
            .offset(filters.offset)
            .limit(filters.limit)
        )
        with self.database.session() as session:
            return [_to_anomaly(r) for r in session.scalars(stmt).unique()]

    def count_by(self, dimension: str, since: Optional[datetime] = None) -> Dict[str, int]:
        """
        Count anomalies grouped by severity, entity_type, status, or rule.

        Args:
            dimension: One of "severity", "entity_type", "status", "rule"
            since: Only count anomalies detected at or after this time
        """
        if dimension not in _DIMENSIONS:
            raise ValueError(f"Unknown dimension: {dimension}")
        column = _DIMENSIONS[dimension]

        stmt = select(column, func.count(AnomalyRecord.id)).join(RuleRecord, AnomalyRecord.rule_id == RuleRecord.id)
        if since is not None:
            stmt = stmt.where(AnomalyRecord.detected_at >= since)
        stmt = stmt.group_by(column)

        with self.database.session() as session:
            return {str(key): int(count) for key, count in session.execute(stmt)}

    def count_pending(self, rule_name: Optional[str] = None) -> int:
        stmt = (
            select(func.count(AnomalyRecord.id))
            .join(RuleRecord, AnomalyRecord.rule_id == RuleRecord.id)
            .where(AnomalyRecord.resolution_status == ResolutionStatus.PENDING.value)
        )
        if rule_name is not None:
            stmt = stmt.where(RuleRecord.name == rule_name)
        with self.database.session() as session:
            return int(session.scalar(stmt) or 0)
