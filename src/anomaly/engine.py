"""
Anomaly detection engine.

Facade over the rule registry, baseline store, anomaly store, scan
orchestrator, and reporter. This is the surface schedulers and the operator
server call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from src.core.config import Config, config
from src.core.exceptions import ConfigurationError
from src.dataset.source import DataSource

from .detectors import Detector
from .orchestrator import ScanOrchestrator
from .reporting import AnomalyReporter
from .schema import Anomaly, AnomalyFilters, AnomalyReport, ResolutionStatus, ScanReport
from .store.anomalies import AnomalyStore
from .store.baselines import BaselineStore
from .store.database import Database
from .store.rules import RuleRegistry


@dataclass
class AnomalyEngine:
    """
    Periodic batch anomaly scanner.

    Notes:
    - The database schema is created on construction if missing.
    - The dataset is only ever read.
    - detectors overrides the default one-per-category strategy set.
    """

    source: DataSource
    settings: Config = field(default_factory=lambda: config)
    database: Optional[Database] = None
    detectors: Optional[Sequence[Detector]] = None

    def __post_init__(self) -> None:
        if self.database is None:
            self.database = Database(self.settings.database_url)
        self.database.create_all()

        self.rules = RuleRegistry(self.database)
        self.baselines = BaselineStore(self.database)
        self.anomalies = AnomalyStore(self.database)
        self._orchestrator = ScanOrchestrator(
            source=self.source,
            registry=self.rules,
            baseline_store=self.baselines,
            anomaly_store=self.anomalies,
            settings=self.settings,
            detectors=self.detectors,
        )
        self._reporter = AnomalyReporter(self.anomalies, self.settings.reporting)

    def run_full_scan(self, now: Optional[datetime] = None) -> ScanReport:
        return self._orchestrator.run_full_scan(now=now)

    def list_anomalies(self, filters: Union[AnomalyFilters, Mapping[str, Any], None] = None) -> List[Anomaly]:
        if filters is not None and not isinstance(filters, AnomalyFilters):
            try:
                filters = AnomalyFilters.model_validate(dict(filters))
            except ValidationError as exc:
                raise ConfigurationError(f"Invalid anomaly filters: {exc}") from exc
        return self.anomalies.query(filters)

    def update_investigation(
        self,
        anomaly_id: int,
        status: Union[ResolutionStatus, str],
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Anomaly:
        return self.anomalies.transition(anomaly_id, status, notes=notes, now=now)

    def generate_report(self, window_days: Optional[int] = None, now: Optional[datetime] = None) -> AnomalyReport:
        return self._reporter.generate_report(window_days=window_days, now=now)

    def close(self) -> None:
        self.database.dispose()
