"""
Custom exceptions for the Anomaly Scan Engine.

These exceptions provide clear error semantics across the system.
Use them to distinguish between bad rule definitions, unreachable data,
per-entity algorithm failures, storage conflicts, and illegal lifecycle moves.
"""


class AnomalyEngineError(Exception):
    """Base exception for anomaly engine failures."""
    pass


class ConfigurationError(AnomalyEngineError):
    """Raised when a rule definition or detection configuration is invalid."""
    pass


class DataAccessError(AnomalyEngineError):
    """Raised when the external dataset is unreachable or a query times out."""
    pass


class DetectionError(AnomalyEngineError):
    """Raised when a detection algorithm cannot evaluate a specific entity."""
    pass


class PersistenceError(AnomalyEngineError):
    """Raised when a write to the anomaly store conflicts or fails."""
    pass


class InvalidTransitionError(AnomalyEngineError):
    """Raised when an investigation status change is not allowed."""
    pass


class RuleNotFoundError(AnomalyEngineError):
    """Raised when a detection rule name is not registered."""
    pass


class AnomalyNotFoundError(AnomalyEngineError):
    """Raised when an anomaly identifier does not exist."""
    pass
