"""
Scan orchestration.

One scan cycle:
1. Check the dataset is reachable (fatal if not).
2. Refresh baselines (fatal only if every attempted metric fails on data access).
3. Run each detector category on a worker pool, bounded by the scan timeout.
4. Upsert findings on the calling thread.
5. Assemble the ScanReport.

Failures below the dataset level never escape: they degrade the affected
metric, entity, or category and are listed in the report.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from src.core.config import Config, config
from src.core.exceptions import ConfigurationError, DataAccessError, PersistenceError
from src.dataset.source import DataSource

from .baselines import BaselineCalculator
from .behavioral import BehavioralPatternDetector
from .detectors import Detector, ScanContext
from .network import NetworkRelationshipDetector
from .outliers import StatisticalOutlierDetector
from .schema import (
    BaselineRefreshResult,
    CategoryResult,
    CategoryStatus,
    DetectionRule,
    Finding,
    RuleCategory,
    ScanIssue,
    ScanReport,
    ScanStatus,
)
from .store.anomalies import AnomalyStore
from .store.baselines import BaselineStore
from .store.rules import RuleRegistry
from .temporal import TemporalSequenceDetector

logger = logging.getLogger(__name__)

_HEALTHY = {CategoryStatus.ANOMALIES_FOUND, CategoryStatus.CLEAN, CategoryStatus.SKIPPED}


def default_detectors() -> List[Detector]:
    return [
        StatisticalOutlierDetector(),
        BehavioralPatternDetector(),
        TemporalSequenceDetector(),
        NetworkRelationshipDetector(),
    ]


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _timed_run(detector: Detector, context: ScanContext) -> Tuple[List[Finding], int]:
    started = time.perf_counter()
    findings = detector.run(context)
    return findings, _elapsed_ms(started)


class ScanOrchestrator:
    """
    Runs full scan cycles against one dataset and one anomaly store.

    Example:
        >>> orchestrator = ScanOrchestrator(source, registry, baseline_store, anomaly_store)
        >>> report = orchestrator.run_full_scan()
        >>> report.status, report.total_created
    """

    def __init__(
        self,
        source: DataSource,
        registry: RuleRegistry,
        baseline_store: BaselineStore,
        anomaly_store: AnomalyStore,
        settings: Optional[Config] = None,
        detectors: Optional[Sequence[Detector]] = None,
    ):
        self.source = source
        self.registry = registry
        self.baseline_store = baseline_store
        self.anomaly_store = anomaly_store
        self.settings = settings or config
        self.detectors = list(detectors) if detectors is not None else default_detectors()

    def run_full_scan(self, now: Optional[datetime] = None) -> ScanReport:
        started_at = datetime.now(timezone.utc)
        started = time.perf_counter()
        now = now or started_at
        scan_id = str(uuid4())
        logger.info("Scan %s started (reference time %s)", scan_id, now.isoformat())

        try:
            self.source.check_available()
        except DataAccessError as exc:
            logger.error("Scan %s aborted: dataset unavailable: %s", scan_id, exc)
            return self._failed(scan_id, started_at, started, BaselineRefreshResult(), str(exc))

        rules = {r.name: r for r in self.registry.list(active_only=True)}
        calculator = BaselineCalculator(
            source=self.source,
            store=self.baseline_store,
            metrics=self.settings.baselines.metrics,
            query_timeout=self.settings.scan.query_timeout_seconds,
        )
        baselines = calculator.refresh_baselines(rules, now)
        if baselines.dataset_unavailable:
            message = f"No metric could be read from the dataset ({len(baselines.failed)} failed)"
            logger.error("Scan %s aborted: %s", scan_id, message)
            return self._failed(scan_id, started_at, started, baselines, message)

        context = ScanContext(
            source=self.source,
            settings=self.settings,
            rules=rules,
            baselines=self.baseline_store.snapshot(),
            now=now,
            scan_id=scan_id,
        )
        outcomes, timings = self._run_detectors(context)
        categories = self._persist(context, outcomes, timings, rules)

        issues = list(baselines.issues) + context.issues
        healthy = not baselines.failed and all(c.status in _HEALTHY for c in categories)
        report = ScanReport(
            scan_id=scan_id,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            execution_time_ms=_elapsed_ms(started),
            status=ScanStatus.COMPLETED if healthy else ScanStatus.PARTIAL,
            baselines=baselines,
            categories=categories,
            issues=issues,
        )
        logger.info(
            "Scan %s %s in %dms: %d findings, %d new anomalies, %d issues",
            scan_id, report.status.value, report.execution_time_ms,
            report.total_findings, report.total_created, len(issues),
        )
        for category in categories:
            logger.info(
                "  %s: %s (%d findings, %d new)",
                category.category.value, category.status.value, category.findings_count, category.anomalies_created,
            )
        return report

    def _run_detectors(self, context: ScanContext) -> Tuple[Dict[RuleCategory, object], Dict[RuleCategory, int]]:
        """
        Run detectors concurrently.

        Returns a map of category to either its findings or a terminal
        CategoryResult (skipped, failed, or timed out), plus the run time of
        each category that finished.
        """
        outcomes: Dict[RuleCategory, object] = {}
        timings: Dict[RuleCategory, int] = {}
        futures: Dict[Future, Detector] = {}

        executor = ThreadPoolExecutor(max_workers=self.settings.scan.max_workers, thread_name_prefix="detector")
        try:
            for detector in self.detectors:
                if not context.rules_for(detector.category):
                    logger.info("No active %s rules; skipping detector", detector.category.value)
                    outcomes[detector.category] = CategoryResult(
                        category=detector.category, status=CategoryStatus.SKIPPED
                    )
                    continue
                futures[executor.submit(_timed_run, detector, context)] = detector

            done, not_done = wait(futures, timeout=self.settings.scan.scan_timeout_seconds)

            for future in done:
                category = futures[future].category
                try:
                    findings, elapsed = future.result()
                except Exception as exc:
                    logger.exception("Detector %s failed", category.value)
                    context.record_issue(category, category.value, exc)
                    outcomes[category] = CategoryResult(
                        category=category, status=CategoryStatus.FAILED, error=f"{type(exc).__name__}: {exc}"
                    )
                    continue
                outcomes[category] = findings
                timings[category] = elapsed

            for future in not_done:
                category = futures[future].category
                future.cancel()
                message = f"Detector exceeded scan timeout of {self.settings.scan.scan_timeout_seconds:.1f}s"
                logger.error("Detector %s timed out", category.value)
                context.record_issue(category, category.value, TimeoutError(message))
                outcomes[category] = CategoryResult(
                    category=category,
                    status=CategoryStatus.TIMEOUT,
                    execution_time_ms=int(self.settings.scan.scan_timeout_seconds * 1000),
                    error=message,
                )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return outcomes, timings

    def _persist(
        self,
        context: ScanContext,
        outcomes: Dict[RuleCategory, object],
        timings: Dict[RuleCategory, int],
        rules: Dict[str, DetectionRule],
    ) -> List[CategoryResult]:
        results: List[CategoryResult] = []
        for detector in self.detectors:
            category = detector.category
            outcome = outcomes.get(category)
            if isinstance(outcome, CategoryResult):
                results.append(outcome)
                continue

            findings: List[Finding] = outcome or []
            created = 0
            for finding in findings:
                rule = rules.get(finding.rule_name)
                if rule is None:
                    context.record_issue(
                        category,
                        finding.rule_name,
                        ConfigurationError(f"Finding references inactive or unknown rule {finding.rule_name}"),
                    )
                    continue
                try:
                    if self.anomaly_store.upsert_finding(finding, rule):
                        created += 1
                except PersistenceError as exc:
                    logger.error("Could not store finding %s/%s: %s", finding.rule_name, finding.entity_id, exc)
                    context.record_issue(category, f"{finding.rule_name}:{finding.entity_id}", exc)

            if context.issues_for(category):
                status = CategoryStatus.PARTIAL
            elif findings:
                status = CategoryStatus.ANOMALIES_FOUND
            else:
                status = CategoryStatus.CLEAN

            results.append(
                CategoryResult(
                    category=category,
                    status=status,
                    findings_count=len(findings),
                    anomalies_created=created,
                    execution_time_ms=timings.get(category, 0),
                )
            )
        return results

    @staticmethod
    def _failed(
        scan_id: str,
        started_at: datetime,
        started: float,
        baselines: BaselineRefreshResult,
        message: str,
    ) -> ScanReport:
        return ScanReport(
            scan_id=scan_id,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            execution_time_ms=_elapsed_ms(started),
            status=ScanStatus.FAILED,
            baselines=baselines,
            issues=list(baselines.issues)
            + [ScanIssue(category="dataset", scope="dataset", error_type="DataAccessError", message=message)],
            fatal_error=message,
        )
