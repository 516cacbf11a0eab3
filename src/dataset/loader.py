"""
Table loading from CSV and JSON exports.

The scheduled scan reads business tables exported as files (one file per
table, table name = file stem). Supports:
- CSV with a header row
- JSON array of objects
- NDJSON (one object per line)

Design:
- Format detection from the file extension, or explicit format
- A malformed file fails that table only; the rest of the directory loads
- Returns pandas DataFrames, not engine types
"""

import logging
from pathlib import Path
from typing import Dict, Union

import pandas as pd

from src.core.exceptions import DataAccessError

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = {".csv": "csv", ".json": "json", ".ndjson": "ndjson", ".jsonl": "ndjson"}


def load_table(filepath: Union[str, Path], format: str = "auto", encoding: str = "utf-8") -> pd.DataFrame:
    """
    Load a single table file into a DataFrame.

    Args:
        filepath: Path to the table file
        format: "csv", "json", "ndjson", or "auto" to detect from the suffix
        encoding: File encoding (default utf-8)

    Returns:
        DataFrame with one row per record

    Raises:
        DataAccessError: If the file is missing, unreadable, or the format is unknown
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise DataAccessError(f"Table file not found: {filepath}")

    if format == "auto":
        format = SUPPORTED_SUFFIXES.get(filepath.suffix.lower(), "")

    try:
        if format == "csv":
            frame = pd.read_csv(filepath, encoding=encoding)
        elif format == "json":
            content = filepath.read_text(encoding=encoding).lstrip("\ufeff").strip()
            # JSON arrays and NDJSON both commonly use the .json suffix
            frame = pd.read_json(filepath, lines=not content.startswith("["), encoding=encoding)
        elif format == "ndjson":
            frame = pd.read_json(filepath, lines=True, encoding=encoding)
        else:
            raise DataAccessError(f"Unknown table format for {filepath}")
    except DataAccessError:
        raise
    except (ValueError, OSError, pd.errors.ParserError) as e:
        logger.error(f"Error reading table file {filepath}: {e}")
        raise DataAccessError(f"Failed to read table {filepath.name}: {e}") from e

    # Normalize BOM in header if present
    frame.columns = [c.lstrip("\ufeff") if isinstance(c, str) else c for c in frame.columns]
    return frame


def load_tables(directory: Union[str, Path]) -> Dict[str, pd.DataFrame]:
    """
    Load every supported table file in a directory.

    Args:
        directory: Directory containing one file per table

    Returns:
        Dict mapping table name (file stem) -> DataFrame

    Raises:
        DataAccessError: If the directory does not exist

    Notes:
        - Unreadable files are logged and skipped
        - When two files share a stem, the first in sorted order wins
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise DataAccessError(f"Dataset directory not found: {directory}")

    tables: Dict[str, pd.DataFrame] = {}
    for path in sorted(directory.iterdir()):
        if path.suffix.lower() not in SUPPORTED_SUFFIXES:
            continue
        if path.stem in tables:
            logger.warning(f"Duplicate table {path.stem}: ignoring {path.name}")
            continue
        try:
            tables[path.stem] = load_table(path)
        except DataAccessError as e:
            logger.warning(f"Skipping table file {path.name}: {e}")
            continue
        logger.info(f"Loaded table {path.stem} ({len(tables[path.stem])} rows)")

    return tables
