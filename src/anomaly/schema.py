"""
Schema definitions for anomaly detection.

All anomaly outputs are deterministic and explainable. Every finding carries a
typed evidence payload whose `kind` tag identifies the detection method, so
consumers can rely on a concrete shape per method instead of a free-form map.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, TypeAdapter, field_validator


class RuleCategory(str, Enum):
    """Detection categories; each maps to exactly one detector."""

    STATISTICAL = "statistical"
    BEHAVIORAL = "behavioral"
    TEMPORAL = "temporal"
    PATTERN = "pattern"


class Severity(str, Enum):
    """Severity levels for detection rules."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ResolutionStatus(str, Enum):
    """Investigation lifecycle states."""

    PENDING = "pending"
    FALSE_POSITIVE = "false_positive"
    CONFIRMED = "confirmed"
    RESOLVED = "resolved"


class DetectionRule(BaseModel):
    """
    Operator-defined detection rule.

    Fields:
    - name: globally unique rule name
    - category: selects the detector that evaluates the rule
    - threshold_value: rule-specific threshold (z-score, count, value, days)
    - severity: severity attached to every anomaly the rule produces
    - is_active: inactive rules are never evaluated
    """

    id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=128)
    description: str = ""
    category: RuleCategory
    threshold_value: Optional[float] = None
    severity: Severity = Severity.MEDIUM
    is_active: bool = True
    created_at: Optional[datetime] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("rule name must not be blank")
        return value

    def threshold_or(self, default: float) -> float:
        return default if self.threshold_value is None else float(self.threshold_value)


class StatisticalBaseline(BaseModel):
    """
    Baseline statistics for one metric of one entity type.

    Fields:
    - mean / stddev: sample mean and sample standard deviation
    - median / q1 / q3: linearly interpolated percentiles
    - sample_size: number of values used
    """

    metric_name: str
    entity_type: str
    time_period: str
    mean: float
    stddev: float = Field(ge=0.0)
    median: float
    q1: float
    q3: float
    sample_size: int = Field(ge=0)
    calculated_at: datetime

    @property
    def iqr(self) -> float:
        return self.q3 - self.q1


class OutlierEvidence(BaseModel):
    """Statistical outlier: raw value against its baseline snapshot."""

    kind: Literal["statistical_outlier"] = "statistical_outlier"
    metric: str
    value: float
    baseline_mean: float
    baseline_stddev: float
    baseline_median: float
    baseline_q1: float
    baseline_q3: float
    baseline_sample_size: int
    z_score: Optional[float] = None
    iqr_lower: float
    iqr_upper: float
    methods: List[Literal["z_score", "iqr"]]
    degenerate_iqr: bool = False


class BehavioralEvidence(BaseModel):
    """Entity-scoped heuristic measured over a rolling window."""

    kind: Literal["behavioral_pattern"] = "behavioral_pattern"
    heuristic: str
    observed: float
    threshold: float
    window_days: int
    event_count: int
    first_event_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    time_span_days: Optional[float] = None


class HourlyDeviationEvidence(BaseModel):
    """Hour-of-day spike relative to the entity's own hourly profile."""

    kind: Literal["hourly_deviation"] = "hourly_deviation"
    hour: int = Field(ge=0, le=23)
    count: int
    hourly_mean: float
    hourly_stddev: float
    z_score: float
    flagged_hours: List[int]


class RapidSequenceEvidence(BaseModel):
    """Run of closely spaced events between one actor and one counterparty."""

    kind: Literal["rapid_sequence"] = "rapid_sequence"
    counterparty_id: str
    count: int
    min_gap_seconds: float
    avg_gap_seconds: float
    max_gap_seconds: float
    first_event_at: datetime
    last_event_at: datetime


class ClusterEvidence(BaseModel):
    """Group of entities sharing an identifying attribute."""

    kind: Literal["attribute_cluster"] = "attribute_cluster"
    group_key: Dict[str, str]
    member_count: int
    member_ids: List[str]
    distinct_contacts: Dict[str, int] = Field(default_factory=dict)
    shared_contact: bool = False


class RelationshipEvidence(BaseModel):
    """Actor/counterparty transaction relationship."""

    kind: Literal["relationship"] = "relationship"
    reason: Literal["self_dealing", "excessive_bilateral_volume"]
    counterparty_id: str
    transaction_count: int
    total_value: float
    self_dealing: bool
    window_days: int


FindingEvidence = Annotated[
    Union[
        OutlierEvidence,
        BehavioralEvidence,
        HourlyDeviationEvidence,
        RapidSequenceEvidence,
        ClusterEvidence,
        RelationshipEvidence,
    ],
    Field(discriminator="kind"),
]

evidence_adapter: TypeAdapter = TypeAdapter(FindingEvidence)


class Finding(BaseModel):
    """
    Candidate anomaly produced by a detector, before persistence.

    Fields:
    - rule_name: triggering rule
    - entity_type / entity_id: flagged business record
    - score: non-negative anomaly score (method-specific scale)
    - evidence: typed payload for the detection method
    """

    rule_name: str
    category: RuleCategory
    entity_type: str
    entity_id: str
    score: float = Field(ge=0.0)
    evidence: FindingEvidence
    detected_at: datetime


class Anomaly(BaseModel):
    """
    Persisted anomaly with investigation state.

    Created by a scan in `pending` state; mutated only by the investigation
    workflow afterwards.
    """

    id: int
    rule_id: int
    rule_name: str
    category: RuleCategory
    severity: Severity
    entity_type: str
    entity_id: str
    anomaly_score: float = Field(ge=0.0)
    details: FindingEvidence
    detected_at: datetime
    investigated_at: Optional[datetime] = None
    resolution_status: ResolutionStatus = ResolutionStatus.PENDING
    investigation_notes: Optional[str] = None


class AnomalyFilters(BaseModel):
    """Query filters for listing anomalies. Date range is [detected_from, detected_to)."""

    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    severity: Optional[Severity] = None
    status: Optional[ResolutionStatus] = None
    rule_name: Optional[str] = None
    detected_from: Optional[datetime] = None
    detected_to: Optional[datetime] = None
    limit: int = Field(100, ge=1, le=10000)
    offset: int = Field(0, ge=0)


class ScanIssue(BaseModel):
    """A partial failure recorded during a scan."""

    category: str
    scope: str
    error_type: str
    message: str


class BaselineRefreshResult(BaseModel):
    """Outcome of the baseline refresh step."""

    refreshed: List[str] = Field(default_factory=list)
    stale: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    execution_time_ms: int = 0
    issues: List[ScanIssue] = Field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.refreshed) + len(self.stale) + len(self.failed)

    @property
    def dataset_unavailable(self) -> bool:
        """True when every attempted metric failed on data access."""
        return self.attempted > 0 and len(self.failed) == self.attempted


class CategoryStatus(str, Enum):
    ANOMALIES_FOUND = "ANOMALIES_FOUND"
    CLEAN = "CLEAN"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    SKIPPED = "SKIPPED"


class CategoryResult(BaseModel):
    """Per-category scan result."""

    category: RuleCategory
    status: CategoryStatus
    findings_count: int = 0
    anomalies_created: int = 0
    execution_time_ms: int = 0
    error: Optional[str] = None


class ScanStatus(str, Enum):
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class ScanReport(BaseModel):
    """
    Result of one scan cycle.

    A report is always produced. FAILED means the dataset was unreachable and
    no detection ran; PARTIAL means at least one metric, entity, or category
    degraded and the issues list says which and why.
    """

    scan_id: str = Field(default_factory=lambda: str(uuid4()))
    started_at: datetime
    finished_at: datetime
    execution_time_ms: int
    status: ScanStatus
    baselines: BaselineRefreshResult
    categories: List[CategoryResult] = Field(default_factory=list)
    issues: List[ScanIssue] = Field(default_factory=list)
    fatal_error: Optional[str] = None

    @property
    def total_findings(self) -> int:
        return sum(c.findings_count for c in self.categories)

    @property
    def total_created(self) -> int:
        return sum(c.anomalies_created for c in self.categories)


class CountRow(BaseModel):
    key: str
    count: int


class Alert(BaseModel):
    """KPI threshold breach raised by the reporter."""

    name: str
    kpi: str
    key: Optional[str] = None
    observed: int
    threshold: int
    level: Severity
    message: str


class AnomalyReport(BaseModel):
    """Summary of anomalies detected within a look-back window."""

    window_days: int
    since: datetime
    generated_at: datetime
    total: int
    by_severity: List[CountRow]
    by_entity_type: List[CountRow]
    by_status: List[CountRow]
    top_rules: List[CountRow]
    alerts: List[Alert] = Field(default_factory=list)
