"""
Scoring primitives shared by the detectors.

Pure functions only: z-scores, IQR bounds, exceedance ratios, and severity
ordering. No I/O and no configuration lookups.
"""

from __future__ import annotations

import math
from typing import Optional, Tuple

from .schema import Severity

IQR_MULTIPLIER = 1.5

SEVERITY_ORDER = [
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
]


def z_score(value: float, mean: float, stddev: float) -> Optional[float]:
    """
    Absolute z-score of value against mean/stddev.

    Returns None when stddev is zero (no variance), so callers skip the z test
    instead of dividing by zero.
    """
    if stddev <= 0.0 or math.isnan(stddev):
        return None
    return abs(value - mean) / stddev


def iqr_bounds(q1: float, q3: float, multiplier: float = IQR_MULTIPLIER) -> Tuple[float, float]:
    """
    Tukey fences: [Q1 - k*IQR, Q3 + k*IQR].

    With Q1 == Q3 the fences collapse to [Q1, Q3], so every value different
    from the quartile lies outside them.
    """
    iqr = q3 - q1
    return q1 - multiplier * iqr, q3 + multiplier * iqr


def iqr_distance(value: float, lower: float, upper: float, iqr: float) -> float:
    """
    Distance from value to the nearest fence, in IQR units.

    Falls back to raw distance when the IQR is zero.
    """
    if lower <= value <= upper:
        return 0.0
    distance = lower - value if value < lower else value - upper
    return distance / iqr if iqr > 0 else distance


def exceedance_ratio(observed: float, threshold: float) -> float:
    """
    observed / threshold, clamped at zero; raw observed if threshold is not positive.
    """
    if threshold <= 0:
        return max(observed, 0.0)
    return max(observed / threshold, 0.0)

