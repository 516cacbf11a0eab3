"""
Baseline store backed by the statistical_baselines table.
"""

import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select

from ..schema import StatisticalBaseline
from .database import Database
from .orm import BaselineRecord

logger = logging.getLogger(__name__)

BaselineKey = Tuple[str, str, str]


def _to_baseline(record: BaselineRecord) -> StatisticalBaseline:
    return StatisticalBaseline(
        metric_name=record.metric_name,
        entity_type=record.entity_type,
        time_period=record.time_period,
        mean=record.baseline_mean,
        stddev=record.baseline_stddev,
        median=record.baseline_median,
        q1=record.baseline_q1,
        q3=record.baseline_q3,
        sample_size=record.sample_size,
        calculated_at=record.calculated_at,
    )


class BaselineStore:
    """Keyed by (metric, entity type, period); upsert replaces in place."""

    def __init__(self, database: Database):
        self.database = database

    def upsert(self, baseline: StatisticalBaseline) -> StatisticalBaseline:
        with self.database.write_lock, self.database.session() as session:
            record = session.scalar(
                select(BaselineRecord).where(
                    BaselineRecord.metric_name == baseline.metric_name,
                    BaselineRecord.entity_type == baseline.entity_type,
                    BaselineRecord.time_period == baseline.time_period,
                )
            )
            if record is None:
                record = BaselineRecord(
                    metric_name=baseline.metric_name,
                    entity_type=baseline.entity_type,
                    time_period=baseline.time_period,
                )
                session.add(record)

            record.baseline_mean = baseline.mean
            record.baseline_stddev = baseline.stddev
            record.baseline_median = baseline.median
            record.baseline_q1 = baseline.q1
            record.baseline_q3 = baseline.q3
            record.sample_size = baseline.sample_size
            record.calculated_at = baseline.calculated_at
            session.flush()
            return _to_baseline(record)

    def get(self, metric_name: str, entity_type: str, time_period: str) -> Optional[StatisticalBaseline]:
        with self.database.session() as session:
            record = session.scalar(
                select(BaselineRecord).where(
                    BaselineRecord.metric_name == metric_name,
                    BaselineRecord.entity_type == entity_type,
                    BaselineRecord.time_period == time_period,
                )
            )
            return _to_baseline(record) if record is not None else None

    def list(self) -> List[StatisticalBaseline]:
        stmt = select(BaselineRecord).order_by(
            BaselineRecord.metric_name, BaselineRecord.entity_type, BaselineRecord.time_period
        )
        with self.database.session() as session:
            return [_to_baseline(r) for r in session.scalars(stmt)]

    def snapshot(self) -> Dict[BaselineKey, StatisticalBaseline]:
        """All baselines keyed by (metric, entity type, period), detached from the database."""
        return {(b.metric_name, b.entity_type, b.time_period): b for b in self.list()}
