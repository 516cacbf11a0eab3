"""
Core module: Configuration, logging, and exception handling.
"""

from .config import Config, config
from .exceptions import (
    AnomalyEngineError,
    AnomalyNotFoundError,
    ConfigurationError,
    DataAccessError,
    DetectionError,
    InvalidTransitionError,
    PersistenceError,
    RuleNotFoundError,
)

__all__ = [
    "Config",
    "config",
    "AnomalyEngineError",
    "AnomalyNotFoundError",
    "ConfigurationError",
    "DataAccessError",
    "DetectionError",
    "InvalidTransitionError",
    "PersistenceError",
    "RuleNotFoundError",
]
