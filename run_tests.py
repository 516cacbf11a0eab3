#!/usr/bin/env python
"""
Quick reference: running the anomaly engine test suites.

Execute this file or use the commands below directly.
"""

import subprocess
import sys


SUITES = [
    ("Unit Tests - Dataset", "pytest tests/unit/test_dataset.py -v"),
    ("Unit Tests - Baselines", "pytest tests/unit/test_baselines.py -v"),
    ("Unit Tests - Rule Registry", "pytest tests/unit/test_rule_registry.py -v"),
    ("Unit Tests - Anomaly Store", "pytest tests/unit/test_anomaly_store.py -v"),
    ("Unit Tests - Outliers", "pytest tests/unit/test_outliers.py -v"),
    ("Unit Tests - Behavioral", "pytest tests/unit/test_behavioral.py -v"),
    ("Unit Tests - Temporal", "pytest tests/unit/test_temporal.py -v"),
    ("Unit Tests - Network", "pytest tests/unit/test_network.py -v"),
    ("Unit Tests - Orchestrator", "pytest tests/unit/test_orchestrator.py -v"),
    ("Unit Tests - Reporting", "pytest tests/unit/test_reporting.py -v"),
    ("Integration Tests - Full Scan", "pytest tests/integration/ -v -m integration"),
    ("All Tests with Coverage", "pytest tests/ -v --cov=src --cov=backend --cov-report=html"),
]


def run_tests() -> int:
    """Run every suite; returns the number of failed suites."""

    print("=" * 70)
    print("RUNNING ANOMALY ENGINE TEST SUITE")
    print("=" * 70)

    failed = 0
    for name, cmd in SUITES:
        print(f"\n{'='*70}")
        print(name)
        print(f"{'='*70}")
        print(f"Command: {cmd}\n")
        result = subprocess.run(cmd, shell=True)
        if result.returncode != 0:
            failed += 1
            print(f"FAILED: {name}")
        else:
            print(f"passed: {name}")
    return failed


def print_quick_commands() -> None:
    print("\nQuick test commands:")
    print("  pytest tests/unit/ -v              # All unit tests")
    print("  pytest tests/integration/ -v       # All integration tests")
    print("  pytest tests/ -v -m 'not slow'     # Skip timeout tests")
    print("  pytest tests/ -v -k network        # Tests matching 'network'")


if __name__ == "__main__":
    failures = run_tests()
    print_quick_commands()
    sys.exit(1 if failures else 0)
