"""
Detector contract and the per-scan context shared by all detectors.

Each rule category is evaluated by exactly one Detector. Detectors read the
dataset through the context, look thresholds up on their rules, and return
Findings; they never write to the anomaly store.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from src.core.config import Config
from src.core.exceptions import ConfigurationError
from src.dataset.source import DataSource, run_query

from .schema import DetectionRule, Finding, FindingEvidence, RuleCategory, ScanIssue, StatisticalBaseline

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ScanContext:
    """
    Read-only view of one scan cycle.

    Notes:
    - rules holds active rules only, keyed by name.
    - baselines is a snapshot taken after the refresh step; detectors running
      on worker threads never touch the database.
    - issues may be recorded from any thread.
    """

    source: DataSource
    settings: Config
    rules: Dict[str, DetectionRule]
    baselines: Dict[Tuple[str, str, str], StatisticalBaseline]
    now: datetime
    scan_id: str = ""
    _issues: List[ScanIssue] = field(default_factory=list, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def rules_for(self, category: RuleCategory) -> List[DetectionRule]:
        return [r for r in self.rules.values() if r.category == category]

    def rule_for(self, name: str, category: RuleCategory) -> Optional[DetectionRule]:
        """
        Active rule bound to a detection spec, or None if it should not run.

        A rule registered under another category is a configuration mistake;
        it is recorded as an issue and the spec is skipped.
        """
        rule = self.rules.get(name)
        if rule is None:
            logger.debug("Rule %s inactive or unknown; skipping", name)
            return None
        if rule.category != category:
            self.record_issue(
                category,
                name,
                ConfigurationError(f"Rule {name} is {rule.category.value}, expected {category.value}"),
            )
            return None
        return rule

    def record_issue(self, category: RuleCategory, scope: str, exc: BaseException) -> None:
        issue = ScanIssue(
            category=RuleCategory(category).value,
            scope=scope,
            error_type=type(exc).__name__,
            message=str(exc),
        )
        with self._lock:
            self._issues.append(issue)

    def issues_for(self, category: RuleCategory) -> List[ScanIssue]:
        with self._lock:
            return [i for i in self._issues if i.category == RuleCategory(category).value]

    @property
    def issues(self) -> List[ScanIssue]:
        with self._lock:
            return list(self._issues)

    def query(self, description: str, func: Callable[..., T], *args: Any) -> T:
        """Run a dataset query under the configured per-query timeout."""
        return run_query(func, *args, timeout=self.settings.scan.query_timeout_seconds, description=description)


class Detector(ABC):
    """Strategy interface: one implementation per rule category."""

    category: RuleCategory

    @abstractmethod
    def run(self, context: ScanContext) -> List[Finding]:
        """
        Evaluate every active rule of this category.

        Per-entity and per-spec failures are recorded on the context and
        skipped; an exception escaping run() fails the whole category.
        """

    def finding(
        self,
        context: ScanContext,
        rule: DetectionRule,
        entity_type: str,
        entity_id: str,
        score: float,
        evidence: FindingEvidence,
    ) -> Finding:
        return Finding(
            rule_name=rule.name,
            category=self.category,
            entity_type=entity_type,
            entity_id=entity_id,
            score=max(float(score), 0.0),
            evidence=evidence,
            detected_at=context.now,
        )
