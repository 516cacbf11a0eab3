"""
Anomaly module: batch anomaly detection over the external business dataset.

Implements baselines, four detector strategies, the anomaly store lifecycle,
scan orchestration, and reporting.
"""

from .schema import (
	Alert,
	Anomaly,
	AnomalyFilters,
	AnomalyReport,
	CategoryStatus,
	DetectionRule,
	Finding,
	ResolutionStatus,
	RuleCategory,
	ScanReport,
	ScanStatus,
	Severity,
	StatisticalBaseline,
)
from .baselines import BaselineCalculator, compute_baseline_stats
from .behavioral import BehavioralPatternDetector
from .detectors import Detector, ScanContext
from .engine import AnomalyEngine
from .network import NetworkRelationshipDetector
from .orchestrator import ScanOrchestrator, default_detectors
from .outliers import StatisticalOutlierDetector, evaluate_outlier
from .reporting import AnomalyReporter
from .temporal import TemporalSequenceDetector

__all__ = [
	"AnomalyEngine",
	"ScanOrchestrator",
	"AnomalyReporter",
	"BaselineCalculator",
	"compute_baseline_stats",
	"Detector",
	"ScanContext",
	"default_detectors",
	"StatisticalOutlierDetector",
	"BehavioralPatternDetector",
	"TemporalSequenceDetector",
	"NetworkRelationshipDetector",
	"evaluate_outlier",
	"Alert",
	"Anomaly",
	"AnomalyFilters",
	"AnomalyReport",
	"CategoryStatus",
	"DetectionRule",
	"Finding",
	"ResolutionStatus",
	"RuleCategory",
	"ScanReport",
	"ScanStatus",
	"Severity",
	"StatisticalBaseline",
]
