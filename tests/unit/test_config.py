"""
Unit tests for configuration and logging setup.
"""

import logging

import pytest
from pydantic import ValidationError

from src.core.config import Config, HeuristicSpec, HourlyDeviationSpec, MetricSpec
from src.core.logging_config import setup_logging


class TestConfig:
    """Test settings defaults, environment overrides, and validation."""

    def test_defaults(self, tmp_path):
        """Default catalogues cover both metrics and all heuristic kinds."""
        settings = Config(logs_dir=tmp_path / "logs")

        assert [m.metric for m in settings.baselines.metrics] == ["transaction_amount", "permit_cost"]
        kinds = {h.kind for h in settings.behavioral.heuristics}
        assert kinds == {"action_count", "cumulative_value", "first_action_latency", "distinct_values"}
        assert settings.temporal.hourly.unusual_hour_start == 0
        assert settings.temporal.hourly.unusual_hour_end == 6
        assert settings.reporting.window_days == 7
        assert (tmp_path / "logs").is_dir()

    def test_environment_overrides(self, tmp_path, monkeypatch):
        """Nested sections are overridable with ANOMALY_<SECTION>__<FIELD>."""
        monkeypatch.setenv("ANOMALY_DATABASE_URL", "sqlite:///override.db")
        monkeypatch.setenv("ANOMALY_SCAN__MAX_WORKERS", "2")
        monkeypatch.setenv("ANOMALY_REPORTING__WINDOW_DAYS", "14")

        settings = Config(logs_dir=tmp_path / "logs")

        assert settings.database_url == "sqlite:///override.db"
        assert settings.scan.max_workers == 2
        assert settings.reporting.window_days == 14

    def test_detection_window_must_be_shorter_than_baseline(self):
        with pytest.raises(ValidationError):
            MetricSpec(
                metric="m", entity_type="order", rule="r", table="orders",
                id_column="id", value_column="v", time_column="t",
                baseline_days=7, detection_days=7,
            )

    def test_heuristic_requires_its_columns(self):
        with pytest.raises(ValidationError):
            HeuristicSpec(kind="cumulative_value", rule="r", entity_type="citizen",
                          table="permits", entity_column="citizen_id", time_column="t")
        with pytest.raises(ValidationError):
            HeuristicSpec(kind="first_action_latency", rule="r", entity_type="citizen",
                          table="votes", entity_column="citizen_id", time_column="t")
        with pytest.raises(ValidationError):
            HeuristicSpec(kind="median_age", rule="r", entity_type="citizen",
                          table="votes", entity_column="citizen_id", time_column="t")

    def test_unusual_hours_are_clock_hours(self):
        with pytest.raises(ValidationError):
            HourlyDeviationSpec(unusual_hour_end=24)


class TestSetupLogging:
    """Test logger configuration."""

    def test_handlers_attached_once(self, test_config):
        logger = setup_logging("anomaly_test_logger", settings=test_config)
        again = setup_logging("anomaly_test_logger", settings=test_config)

        try:
            assert again is logger
            assert len(logger.handlers) == 2
            assert logger.level == logging.WARNING
            logger.warning("baseline left stale")
            for handler in logger.handlers:
                handler.flush()
            log_file = test_config.logs_dir / "anomaly_test_logger.log"
            assert "baseline left stale" in log_file.read_text(encoding="utf-8")
        finally:
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)
