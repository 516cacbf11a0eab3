"""
Rule registry backed by the detection_rules table.

Rules are created and edited by operators and are read-only to detectors.
Names are globally unique; inactive rules are listed but never evaluated.
"""

import logging
from typing import Any, List, Mapping, Optional, Union

from pydantic import ValidationError
from sqlalchemy import select

from src.core.exceptions import ConfigurationError, RuleNotFoundError

from ..schema import DetectionRule, RuleCategory, Severity
from .database import Database
from .orm import RuleRecord

logger = logging.getLogger(__name__)


DEFAULT_RULES: List[DetectionRule] = [
    DetectionRule(
        name="transaction_amount_outlier",
        description="Detects transactions with unusual amounts",
        category=RuleCategory.STATISTICAL,
        threshold_value=3.0,
        severity=Severity.MEDIUM,
    ),
    DetectionRule(
        name="permit_cost_outlier",
        description="Detects permits with unusual cost estimates",
        category=RuleCategory.STATISTICAL,
        threshold_value=3.0,
        severity=Severity.MEDIUM,
    ),
    DetectionRule(
        name="excessive_permit_applications",
        description="More than 4 permit applications by one citizen within 30 days",
        category=RuleCategory.BEHAVIORAL,
        threshold_value=4.0,
        severity=Severity.HIGH,
    ),
    DetectionRule(
        name="excessive_permit_value",
        description="Estimated permit cost per citizen above 50,000 within 30 days",
        category=RuleCategory.BEHAVIORAL,
        threshold_value=50000.0,
        severity=Severity.HIGH,
    ),
    DetectionRule(
        name="suspicious_voting_behavior",
        description="First vote cast within 7 days of voter registration",
        category=RuleCategory.BEHAVIORAL,
        threshold_value=7.0,
        severity=Severity.MEDIUM,
    ),
    DetectionRule(
        name="voting_method_diversity",
        description="More than 2 distinct voting methods used by one citizen",
        category=RuleCategory.BEHAVIORAL,
        threshold_value=2.0,
        severity=Severity.MEDIUM,
    ),
    DetectionRule(
        name="unusual_time_patterns",
        description="Activity spike during unusual hours relative to the entity's own profile",
        category=RuleCategory.TEMPORAL,
        threshold_value=3.0,
        severity=Severity.MEDIUM,
    ),
    DetectionRule(
        name="rapid_sequence_activity",
        description="Rapid sequence of actions between the same parties (automated behavior)",
        category=RuleCategory.TEMPORAL,
        threshold_value=3.0,
        severity=Severity.HIGH,
    ),
    DetectionRule(
        name="address_clustering_anomaly",
        description="More than 10 entities registered at the same address",
        category=RuleCategory.PATTERN,
        threshold_value=10.0,
        severity=Severity.HIGH,
    ),
    DetectionRule(
        name="shared_contact_clustering",
        description="More than 3 entities at one address sharing a single contact",
        category=RuleCategory.PATTERN,
        threshold_value=3.0,
        severity=Severity.HIGH,
    ),
    DetectionRule(
        name="self_dealing_transactions",
        description="Counterparty owner transacting with their own organization",
        category=RuleCategory.PATTERN,
        threshold_value=1.0,
        severity=Severity.CRITICAL,
    ),
    DetectionRule(
        name="merchant_customer_anomaly",
        description="More than 20 transactions between one merchant and one customer",
        category=RuleCategory.PATTERN,
        threshold_value=20.0,
        severity=Severity.CRITICAL,
    ),
]


def _to_rule(record: RuleRecord) -> DetectionRule:
    return DetectionRule(
        id=record.id,
        name=record.name,
        description=record.description,
        category=RuleCategory(record.category),
        threshold_value=record.threshold_value,
        severity=Severity(record.severity),
        is_active=record.is_active,
        created_at=record.created_at,
    )


class RuleRegistry:
    """
    CRUD for detection rules.

    Example:
        >>> registry = RuleRegistry(database)
        >>> registry.create({"name": "big_orders", "category": "statistical",
        ...                  "threshold_value": 4.0, "severity": "high"})
        >>> registry.set_active("big_orders", False)
    """

    def __init__(self, database: Database):
        self.database = database

    def create(self, rule: Union[DetectionRule, Mapping[str, Any]]) -> DetectionRule:
        """
        Register a new rule.

        Raises:
            ConfigurationError: If the definition is invalid (blank name,
                unknown category or severity) or the name is already taken.
        """
        if not isinstance(rule, DetectionRule):
            try:
                rule = DetectionRule.model_validate(dict(rule))
            except ValidationError as exc:
                raise ConfigurationError(f"Invalid detection rule: {exc}") from exc

        with self.database.write_lock, self.database.session() as session:
            existing = session.scalar(select(RuleRecord.id).where(RuleRecord.name == rule.name))
            if existing is not None:
                raise ConfigurationError(f"Detection rule already exists: {rule.name}")

            record = RuleRecord(
                name=rule.name,
                description=rule.description,
                category=rule.category.value,
                threshold_value=rule.threshold_value,
                severity=rule.severity.value,
                is_active=rule.is_active,
            )
            session.add(record)
            session.flush()
            created = _to_rule(record)

        logger.info("Registered detection rule %s (%s)", created.name, created.category.value)
        return created

    def get(self, name: str) -> DetectionRule:
        with self.database.session() as session:
            record = session.scalar(select(RuleRecord).where(RuleRecord.name == name))
            if record is None:
                raise RuleNotFoundError(f"Unknown detection rule: {name}")
            return _to_rule(record)

    def list(self, category: Optional[RuleCategory] = None, active_only: bool = False) -> List[DetectionRule]:
        stmt = select(RuleRecord).order_by(RuleRecord.name)
        if category is not None:
            stmt = stmt.where(RuleRecord.category == RuleCategory(category).value)
        if active_only:
            stmt = stmt.where(RuleRecord.is_active.is_(True))

        with self.database.session() as session:
            return [_to_rule(r) for r in session.scalars(stmt)]

    def set_active(self, name: str, active: bool) -> DetectionRule:
        with self.database.write_lock, self.database.session() as session:
            record = session.scalar(select(RuleRecord).where(RuleRecord.name == name))
            if record is None:
                raise RuleNotFoundError(f"Unknown detection rule: {name}")
            record.is_active = bool(active)
            session.flush()
            updated = _to_rule(record)

        logger.info("Detection rule %s %s", name, "activated" if active else "deactivated")
        return updated

    def seed_defaults(self) -> int:
        """
        Install the default rule set, leaving existing names untouched.

        Returns:
            Number of rules created.
        """
        existing = {r.name for r in self.list()}
        created = 0
        for rule in DEFAULT_RULES:
            if rule.name in existing:
                continue
            self.create(rule)
            created += 1
        logger.info("Initialized %d default detection rules", created)
        return created
