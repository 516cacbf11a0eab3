"""
Anomaly store: relational persistence for rules, baselines, and anomalies.
"""

from .anomalies import ALLOWED_TRANSITIONS, TERMINAL_STATUSES, AnomalyStore
from .baselines import BaselineStore
from .database import Database
from .rules import DEFAULT_RULES, RuleRegistry

__all__ = [
	"Database",
	"RuleRegistry",
	"DEFAULT_RULES",
	"BaselineStore",
	"AnomalyStore",
	"ALLOWED_TRANSITIONS",
	"TERMINAL_STATUSES",
]
