"""
SQLAlchemy models for the anomaly store.

Three tables:
- detection_rules: operator-defined rules, unique by name
- statistical_baselines: one row per (metric, entity type, period), replaced in place
- anomalies: findings with investigation state

The anomalies table carries a partial unique index on (rule, entity) limited
to pending rows, so at most one open finding can exist per rule and entity
while closed findings accumulate as history.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .types import UTCDateTime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class RuleRecord(Base):
    """Detection rule row."""

    __tablename__ = "detection_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    threshold_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    severity: Mapped[str] = mapped_column(String(16), default="medium", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    anomalies: Mapped[list["AnomalyRecord"]] = relationship(back_populates="rule")

    __table_args__ = (
        CheckConstraint(
            "category IN ('statistical', 'behavioral', 'temporal', 'pattern')",
            name="ck_detection_rules_category",
        ),
        CheckConstraint(
            "severity IN ('low', 'medium', 'high', 'critical')",
            name="ck_detection_rules_severity",
        ),
    )


class BaselineRecord(Base):
    """Statistical baseline row."""

    __tablename__ = "statistical_baselines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    metric_name: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    time_period: Mapped[str] = mapped_column(String(32), nullable=False)
    baseline_mean: Mapped[float] = mapped_column(Float, nullable=False)
    baseline_stddev: Mapped[float] = mapped_column(Float, nullable=False)
    baseline_median: Mapped[float] = mapped_column(Float, nullable=False)
    baseline_q1: Mapped[float] = mapped_column(Float, nullable=False)
    baseline_q3: Mapped[float] = mapped_column(Float, nullable=False)
    sample_size: Mapped[int] = mapped_column(Integer, nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("metric_name", "entity_type", "time_period", name="uq_baseline_metric_entity_period"),
        CheckConstraint("baseline_stddev >= 0", name="ck_baseline_stddev_non_negative"),
    )


class AnomalyRecord(Base):
    """Detected anomaly row."""

    __tablename__ = "anomalies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(ForeignKey("detection_rules.id"), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    anomaly_score: Mapped[float] = mapped_column(Float, nullable=False)
    anomaly_details: Mapped[dict] = mapped_column(JSON, nullable=False)
    detected_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    investigated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    resolution_status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False)
    investigation_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    rule: Mapped[RuleRecord] = relationship(back_populates="anomalies", lazy="joined")

    __table_args__ = (
        CheckConstraint(
            "resolution_status IN ('pending', 'false_positive', 'confirmed', 'resolved')",
            name="ck_anomalies_resolution_status",
        ),
        CheckConstraint("anomaly_score >= 0", name="ck_anomalies_score_non_negative"),
        Index("ix_anomalies_entity", "entity_type", "entity_id"),
        Index("ix_anomalies_detected_at", "detected_at"),
        Index("ix_anomalies_status", "resolution_status"),
        Index(
            "uq_anomalies_open_finding",
            "rule_id",
            "entity_type",
            "entity_id",
            unique=True,
            sqlite_where=text("resolution_status = 'pending'"),
            postgresql_where=text("resolution_status = 'pending'"),
        ),
    )
