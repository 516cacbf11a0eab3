"""
Pytest configuration and shared fixtures.

Provides test configuration, in-memory anomaly stores, and a synthetic
business dataset for unit and integration tests.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Dict

import pandas as pd
import pytest

from src.anomaly.detectors import ScanContext
from src.anomaly.store import AnomalyStore, BaselineStore, Database, RuleRegistry
from src.core.config import Config
from src.dataset import DataFrameSource

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

# 50 values at 50 + a and 50 at 50 - a give mean 50 and sample stddev 10.
SPREAD = math.sqrt(99.0)
OUTLIER_ORDER_ID = "9001"


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def test_config(tmp_path) -> Config:
    """
    Fixture providing test configuration with an in-memory database.

    Ensures tests run consistently regardless of .env settings.
    """
    return Config(
        database_url="sqlite://",
        logs_dir=tmp_path / "logs",
        dataset_dir=tmp_path / "data",
        log_level="WARNING",
    )


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def registry(database) -> RuleRegistry:
    return RuleRegistry(database)


@pytest.fixture
def seeded_registry(registry) -> RuleRegistry:
    registry.seed_defaults()
    return registry


@pytest.fixture
def baseline_store(database) -> BaselineStore:
    return BaselineStore(database)


@pytest.fixture
def anomaly_store(database) -> AnomalyStore:
    return AnomalyStore(database)


def build_orders() -> pd.DataFrame:
    """
    100 historical orders (mean 50, stddev 10) outside the 7-day detection
    window, two ordinary recent orders, and one recent outlier of 200.

    Orders fall between 10:00 and 12:00 UTC; customer k always buys from
    merchant k % 5, five times each.
    """
    rows = []
    for i in range(100):
        rows.append(
            {
                "order_id": str(1000 + i),
                "customer_citizen_id": f"C{i % 20}",
                "merchant_id": f"M{i % 5}",
                "total_amount": 50.0 + SPREAD if i % 2 == 0 else 50.0 - SPREAD,
                "order_date": NOW - timedelta(days=8 + i % 80, minutes=i),
            }
        )
    rows.append(
        {"order_id": "9000", "customer_citizen_id": "C1", "merchant_id": "M1",
         "total_amount": 50.0, "order_date": NOW - timedelta(days=1)}
    )
    rows.append(
        {"order_id": "9002", "customer_citizen_id": "C2", "merchant_id": "M2",
         "total_amount": 50.0, "order_date": NOW - timedelta(days=2)}
    )
    rows.append(
        {"order_id": OUTLIER_ORDER_ID, "customer_citizen_id": "C3", "merchant_id": "M3",
         "total_amount": 200.0, "order_date": NOW - timedelta(days=3)}
    )
    return pd.DataFrame(rows)


def build_tables() -> Dict[str, pd.DataFrame]:
    """A clean dataset in which only the outlier order is anomalous."""
    citizens = pd.DataFrame(
        {
            "citizen_id": [f"C{i}" for i in range(20)],
            "street_address": [f"{i} Main Street" for i in range(20)],
            "city": ["Springfield"] * 20,
            "email": [f"c{i}@example.org" for i in range(20)],
            "phone": [f"555-01{i:02d}" for i in range(20)],
            "status": ["active"] * 20,
            "registered_date": [datetime(2020, 1, 1, tzinfo=timezone.utc)] * 20,
        }
    )
    merchants = pd.DataFrame(
        {
            "merchant_id": [f"M{i}" for i in range(5)],
            "owner_citizen_id": [f"C{100 + i}" for i in range(5)],
        }
    )
    permits = pd.DataFrame(
        {
            "permit_id": [f"P{i}" for i in range(10)],
            "citizen_id": [f"C{i}" for i in range(10)],
            "estimated_cost": [1000.0 + 100.0 * i for i in range(10)],
            "submitted_date": [NOW - timedelta(days=40 + 25 * i) for i in range(10)],
        }
    )
    votes = pd.DataFrame(
        {
            "vote_id": [f"V{i}" for i in range(5)],
            "citizen_id": [f"C{i}" for i in range(5)],
            "election_date": [datetime(2024, 11, 5, 15, tzinfo=timezone.utc)] * 5,
            "vote_method": ["in_person", "mail", "in_person", "early", "mail"],
        }
    )
    return {
        "orders": build_orders(),
        "citizens": citizens,
        "merchants": merchants,
        "permit_applications": permits,
        "voting_records": votes,
    }


@pytest.fixture
def dataset_tables() -> Dict[str, pd.DataFrame]:
    return build_tables()


@pytest.fixture
def outlier_order_id() -> str:
    return OUTLIER_ORDER_ID


@pytest.fixture
def make_context(test_config):
    """Factory for a ScanContext over in-memory tables and the given active rules."""

    def _make(tables, rules, baselines=None, now=NOW, settings=None):
        return ScanContext(
            source=DataFrameSource(tables),
            settings=settings or test_config,
            rules={r.name: r for r in rules},
            baselines=baselines or {},
            now=now,
        )

    return _make


def pytest_configure(config):
    """
    Pytest hook for custom configuration.

    Registers custom markers used throughout tests.
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running (deferred CI)")
