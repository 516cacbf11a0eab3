"""
Integration tests for the operator HTTP backend and CLI.
"""

import json
import logging
import threading
from http.server import ThreadingHTTPServer
from urllib.error import HTTPError
from urllib.request import Request, urlopen

import pytest

import backend.main as backend_main
from src.anomaly import AnomalyEngine
from src.dataset import DataFrameSource


@pytest.fixture
def engine(dataset_tables, test_config, database, now, monkeypatch):
    engine = AnomalyEngine(source=DataFrameSource(dataset_tables), settings=test_config, database=database)
    engine.rules.seed_defaults()
    engine.run_full_scan(now=now)
    monkeypatch.setattr(backend_main, "ENGINE", engine)
    return engine


@pytest.fixture
def base_url(engine):
    server = ThreadingHTTPServer(("127.0.0.1", 0), backend_main.BackendHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


def _call(url, payload=None):
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    method = "POST" if payload is not None else "GET"
    request = Request(url, data=data, method=method, headers={"Content-Type": "application/json"})
    try:
        with urlopen(request, timeout=5) as response:
            return response.status, json.loads(response.read())
    except HTTPError as exc:
        return exc.code, json.loads(exc.read())


@pytest.mark.integration
class TestBackendHTTP:
    """Test the operator endpoints against a scanned engine."""

    def test_health(self, base_url):
        assert _call(f"{base_url}/health") == (200, {"status": "ok"})

    def test_list_and_filter_anomalies(self, base_url, outlier_order_id):
        status, body = _call(f"{base_url}/anomalies?entity_type=order")
        assert status == 200
        assert body["total_count"] == 1
        assert body["anomalies"][0]["entity_id"] == outlier_order_id
        assert body["anomalies"][0]["details"]["kind"] == "statistical_outlier"

        status, body = _call(f"{base_url}/anomalies?severity=critical")
        assert (status, body["total_count"]) == (200, 0)

        status, _ = _call(f"{base_url}/anomalies?limit=0")
        assert status == 400

    def test_investigation_lifecycle(self, base_url, engine):
        anomaly_id = engine.list_anomalies()[0].id

        status, body = _call(
            f"{base_url}/anomalies/{anomaly_id}/investigation", {"status": "confirmed", "notes": "refund fraud"}
        )
        assert status == 200
        assert body["resolution_status"] == "confirmed"
        assert body["investigation_notes"] == "refund fraud"

        status, body = _call(f"{base_url}/anomalies/{anomaly_id}/investigation", {"status": "pending"})
        assert status == 409
        assert body["error"] == "InvalidTransitionError"

        status, _ = _call(f"{base_url}/anomalies/99999/investigation", {"status": "confirmed"})
        assert status == 404

        status, _ = _call(f"{base_url}/anomalies/{anomaly_id}/investigation", {"notes": "no status"})
        assert status == 400

        status, body = _call(f"{base_url}/anomalies/{anomaly_id}/investigation", {"status": "archived"})
        assert (status, body["error"]) == (400, "ConfigurationError")

    def test_rule_management(self, base_url):
        status, body = _call(f"{base_url}/rules", {"name": "large_refunds", "category": "statistical"})
        assert status == 201
        assert body["is_active"] is True

        status, _ = _call(f"{base_url}/rules", {"name": "large_refunds", "category": "statistical"})
        assert status == 400

        status, body = _call(f"{base_url}/rules/large_refunds/active", {"active": False})
        assert (status, body["is_active"]) == (200, False)

        status, _ = _call(f"{base_url}/rules/missing_rule/active", {"active": True})
        assert status == 404

        status, body = _call(f"{base_url}/rules?category=statistical&active_only=true")
        assert status == 200
        assert [r["name"] for r in body["rules"]] == ["permit_cost_outlier", "transaction_amount_outlier"]

    def test_report(self, base_url):
        status, body = _call(f"{base_url}/reports?window_days=30000")
        assert status == 200
        assert body["window_days"] == 30000
        assert body["total"] == 1

        status, _ = _call(f"{base_url}/reports?window_days=0")
        assert status == 400

    def test_unknown_route(self, base_url):
        status, _ = _call(f"{base_url}/nowhere")
        assert status == 404


@pytest.fixture
def cli_loggers(test_config, monkeypatch):
    """Point CLI log files at the test logs dir and detach handlers afterwards."""
    monkeypatch.setattr("src.core.logging_config.config", test_config)
    yield
    for name in ("backend", "src"):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)


@pytest.mark.integration
def test_cli_seed_rules(engine, cli_loggers, capsys):
    assert backend_main.main(["seed-rules"]) == 0

    output = json.loads(capsys.readouterr().out)
    assert output["created"] == 0
    assert "merchant_customer_anomaly" in output["rules"]
