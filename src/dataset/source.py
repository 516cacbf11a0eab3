"""
Read-only access to the external business dataset.

The engine never owns or writes business records. Detectors and the baseline
calculator reach the data only through the DataSource interface:

- metric values for an entity type within a time range
- ordered events (optionally filtered by time) for actor/counterparty analysis
- attribute groupings with member counts
- plain record lookups (registrations, ownership)

DataFrameSource serves the interface from in-memory pandas tables, which is
what the CLI loads from CSV/JSON exports and what the tests build directly.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, TypeVar

import pandas as pd

from src.core.exceptions import DataAccessError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def normalize_id(value: Any) -> str:
    """
    Canonical string form of an entity identifier.

    pandas widens integer columns containing nulls to float, so 12 and 12.0
    must map to the same identity.
    """
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def run_query(func: Callable[..., T], *args: Any, timeout: Optional[float] = None, description: str = "query") -> T:
    """
    Run a dataset query with a time budget.

    Raises:
        DataAccessError: If the query exceeds timeout seconds. Errors raised
            by the query itself propagate unchanged. A timed-out worker thread
            is abandoned rather than joined.
    """
    if timeout is None:
        return func(*args)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dataset-query")
    future = executor.submit(func, *args)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError as exc:
        logger.error("%s timed out after %.1fs", description, timeout)
        raise DataAccessError(f"{description} timed out after {timeout:.1f}s") from exc
    finally:
        executor.shutdown(wait=False)


class DataSource(ABC):
    """
    Abstract read-only dataset.

    Every method returns a new DataFrame; callers may mutate the result.
    Implementations raise DataAccessError for unknown tables, unknown columns,
    or an unreachable backend.
    """

    @abstractmethod
    def check_available(self) -> None:
        """Raise DataAccessError if the dataset cannot be reached at all."""

    @abstractmethod
    def fetch_metric_values(
        self,
        table: str,
        id_column: str,
        value_column: str,
        time_column: str,
        start: datetime,
        end: datetime,
    ) -> pd.DataFrame:
        """
        Fetch metric values observed in [start, end).

        Returns:
            DataFrame with columns entity_id (str), value (float), observed_at
            (UTC timestamp). Rows with a null value are dropped.
        """

    @abstractmethod
    def fetch_events(
        self,
        table: str,
        time_column: str,
        columns: Sequence[str],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> pd.DataFrame:
        """
        Fetch events ordered by time_column, optionally limited to [start, end).

        Returns:
            DataFrame with the requested columns plus time_column as UTC
            timestamps, sorted ascending by time.
        """

    @abstractmethod
    def fetch_attribute_groups(
        self,
        table: str,
        id_column: str,
        group_columns: Sequence[str],
        count_columns: Sequence[str] = (),
        filters: Optional[Mapping[str, Any]] = None,
    ) -> pd.DataFrame:
        """
        Group records sharing the same values of group_columns.

        Returns:
            One row per group: the group_columns, member_ids (sorted list of
            str), member_count (distinct members), and distinct_<column> for
            each of count_columns. Records with a null group value are ignored.
        """

    @abstractmethod
    def fetch_records(self, table: str, columns: Sequence[str]) -> pd.DataFrame:
        """Fetch the given columns of every record in table."""


class DataFrameSource(DataSource):
    """
    DataSource backed by named pandas DataFrames.

    Example:
        >>> source = DataFrameSource({"orders": orders_frame})
        >>> source.fetch_metric_values("orders", "order_id", "total_amount",
        ...                            "order_date", start, end)
    """

    def __init__(self, tables: Mapping[str, pd.DataFrame]):
        self._tables: Dict[str, pd.DataFrame] = dict(tables)

    @property
    def table_names(self) -> list[str]:
        return sorted(self._tables)

    def check_available(self) -> None:
        if not self._tables:
            raise DataAccessError("Dataset has no tables loaded")

    def fetch_metric_values(
        self,
        table: str,
        id_column: str,
        value_column: str,
        time_column: str,
        start: datetime,
        end: datetime,
    ) -> pd.DataFrame:
        frame = self._select(table, [id_column, value_column, time_column])
        frame[time_column] = self._to_utc(frame[time_column], table, time_column)
        frame = frame[(frame[time_column] >= start) & (frame[time_column] < end)]

        values = pd.to_numeric(frame[value_column], errors="coerce")
        result = pd.DataFrame(
            {
                "entity_id": frame[id_column].map(normalize_id),
                "value": values,
                "observed_at": frame[time_column],
            }
        )
        return result[result["value"].notna()].reset_index(drop=True)

    def fetch_events(
        self,
        table: str,
        time_column: str,
        columns: Sequence[str],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> pd.DataFrame:
        wanted = list(dict.fromkeys([*columns, time_column]))
        frame = self._select(table, wanted)
        frame[time_column] = self._to_utc(frame[time_column], table, time_column)
        frame = frame[frame[time_column].notna()]
        if start is not None:
            frame = frame[frame[time_column] >= start]
        if end is not None:
            frame = frame[frame[time_column] < end]
        return frame.sort_values(time_column, kind="stable").reset_index(drop=True)

    def fetch_attribute_groups(
        self,
        table: str,
        id_column: str,
        group_columns: Sequence[str],
        count_columns: Sequence[str] = (),
        filters: Optional[Mapping[str, Any]] = None,
    ) -> pd.DataFrame:
        filters = dict(filters or {})
        wanted = list(dict.fromkeys([id_column, *group_columns, *count_columns, *filters]))
        frame = self._select(table, wanted)

        for column, expected in filters.items():
            frame = frame[frame[column] == expected]
        frame = frame.dropna(subset=list(group_columns))

        output_columns = [*group_columns, "member_ids", "member_count"] + [f"distinct_{c}" for c in count_columns]
        if frame.empty:
            return pd.DataFrame(columns=output_columns)

        records = []
        for key, group in frame.groupby(list(group_columns), sort=True):
            key = key if isinstance(key, tuple) else (key,)
            members = sorted(set(group[id_column].map(normalize_id)))
            record: Dict[str, Any] = dict(zip(group_columns, key))
            record["member_ids"] = members
            record["member_count"] = len(members)
            for column in count_columns:
                record[f"distinct_{column}"] = int(group[column].nunique())
            records.append(record)
        return pd.DataFrame(records, columns=output_columns)

    def fetch_records(self, table: str, columns: Sequence[str]) -> pd.DataFrame:
        return self._select(table, list(columns)).reset_index(drop=True)

    def _select(self, table: str, columns: Sequence[str]) -> pd.DataFrame:
        if table not in self._tables:
            raise DataAccessError(f"Unknown table: {table}")
        frame = self._tables[table]
        missing = [c for c in columns if c not in frame.columns]
        if missing:
            raise DataAccessError(f"Table {table} is missing columns: {', '.join(missing)}")
        return frame.loc[:, list(columns)].copy()

    @staticmethod
    def _to_utc(series: pd.Series, table: str, column: str) -> pd.Series:
        try:
            return pd.to_datetime(series, utc=True)
        except (ValueError, TypeError) as exc:
            raise DataAccessError(f"Column {table}.{column} is not a timestamp column: {exc}") from exc
