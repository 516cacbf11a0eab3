"""
Dataset module: read-only access to the external business records.

    CSV / JSON exports
        ↓
    Loading (src/dataset/loader.py) → Dict[str, DataFrame]
        ↓
    DataFrameSource (src/dataset/source.py) → DataSource interface
        ↓
    Baseline calculator and detectors (src/anomaly)
"""

from src.dataset.loader import load_table, load_tables
from src.dataset.source import DataFrameSource, DataSource, normalize_id, run_query

__all__ = [
    "DataSource",
    "DataFrameSource",
    "normalize_id",
    "run_query",
    "load_table",
    "load_tables",
]
