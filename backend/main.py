"""
Operator backend for the anomaly scan engine.

Commands:
- scan: run one full scan cycle and print the report (for schedulers)
- report: print the anomaly summary for a look-back window
- seed-rules: install the default detection rules
- serve: HTTP server exposing scans, anomaly queries, investigation updates,
  reports, and rule management
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from dotenv import load_dotenv
from pydantic import BaseModel

from src.anomaly import AnomalyEngine, ScanStatus
from src.core.config import config
from src.core.exceptions import (
    AnomalyEngineError,
    AnomalyNotFoundError,
    ConfigurationError,
    DataAccessError,
    InvalidTransitionError,
    RuleNotFoundError,
)
from src.core.logging_config import setup_logging
from src.dataset import DataFrameSource, load_tables

load_dotenv()

logger = logging.getLogger("backend")

ENGINE: Optional[AnomalyEngine] = None

_ERROR_STATUS = {
    ConfigurationError: 400,
    AnomalyNotFoundError: 404,
    RuleNotFoundError: 404,
    InvalidTransitionError: 409,
    DataAccessError: 503,
}


def _parse_bool(value: object, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _error_status(exc: AnomalyEngineError) -> int:
    for exc_type, status in _ERROR_STATUS.items():
        if isinstance(exc, exc_type):
            return status
    return 500


def _dump(model: BaseModel) -> Dict[str, object]:
    return model.model_dump(mode="json")


def build_engine() -> AnomalyEngine:
    source = DataFrameSource(load_tables(config.dataset_dir))
    logger.info("Loaded dataset tables from %s: %s", config.dataset_dir, ", ".join(source.table_names) or "none")
    return AnomalyEngine(source=source, settings=config)


def _engine() -> AnomalyEngine:
    global ENGINE
    if ENGINE is None:
        ENGINE = build_engine()
    return ENGINE


class BackendHandler(BaseHTTPRequestHandler):
    server_version = "AnomalyEngine/1.0"

    def _send_json(self, status: int, payload: object) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _read_json(self) -> Optional[Dict[str, object]]:
        length = int(self.headers.get("Content-Length", "0"))
        if length <= 0:
            return None
        data = self.rfile.read(length)
        try:
            payload = json.loads(data.decode("utf-8"))
        except json.JSONDecodeError:
            return None
        return payload if isinstance(payload, dict) else None

    def _route(self) -> Tuple[str, Dict[str, str]]:
        parsed = urlparse(self.path)
        query = {key: values[-1] for key, values in parse_qs(parsed.query).items()}
        return parsed.path.rstrip("/") or "/", query

    def _dispatch(self, handler, *args) -> None:
        try:
            handler(*args)
        except AnomalyEngineError as exc:
            self._send_json(_error_status(exc), {"detail": str(exc), "error": type(exc).__name__})
        except ValueError as exc:
            self._send_json(400, {"detail": str(exc)})

    def do_OPTIONS(self) -> None:
        self.send_response(204)
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        self.end_headers()

    def do_GET(self) -> None:
        path, query = self._route()

        if path == "/health":
            self._send_json(200, {"status": "ok"})
            return
        if path == "/anomalies":
            self._dispatch(self._handle_list_anomalies, query)
            return
        if path == "/reports":
            self._dispatch(self._handle_report, query)
            return
        if path == "/rules":
            self._dispatch(self._handle_list_rules, query)
            return

        self._send_json(404, {"detail": "Not found"})

    def do_POST(self) -> None:
        path, _ = self._route()
        parts = path.strip("/").split("/")

        if path == "/scans":
            self._dispatch(self._handle_scan)
            return
        if len(parts) == 3 and parts[0] == "anomalies" and parts[2] == "investigation":
            self._dispatch(self._handle_investigation, parts[1])
            return
        if path == "/rules":
            self._dispatch(self._handle_create_rule)
            return
        if len(parts) == 3 and parts[0] == "rules" and parts[2] == "active":
            self._dispatch(self._handle_rule_active, parts[1])
            return

        self._send_json(404, {"detail": "Not found"})

    def _handle_list_anomalies(self, query: Dict[str, str]) -> None:
        filters = {
            key: value
            for key, value in query.items()
            if key in {"entity_type", "entity_id", "severity", "status", "rule_name",
                       "detected_from", "detected_to", "limit", "offset"}
        }
        anomalies = _engine().list_anomalies(filters)
        self._send_json(200, {"anomalies": [_dump(a) for a in anomalies], "total_count": len(anomalies)})

    def _handle_report(self, query: Dict[str, str]) -> None:
        window = query.get("window_days")
        report = _engine().generate_report(window_days=int(window) if window else None)
        self._send_json(200, _dump(report))

    def _handle_list_rules(self, query: Dict[str, str]) -> None:
        rules = _engine().rules.list(
            category=query.get("category"),
            active_only=_parse_bool(query.get("active_only"), False),
        )
        self._send_json(200, {"rules": [_dump(r) for r in rules], "total_count": len(rules)})

    def _handle_scan(self) -> None:
        report = _engine().run_full_scan()
        status = 200 if report.status != ScanStatus.FAILED else 503
        payload = _dump(report)
        payload["total_findings"] = report.total_findings
        payload["total_created"] = report.total_created
        self._send_json(status, payload)

    def _handle_investigation(self, raw_id: str) -> None:
        payload = self._read_json() or {}
        if not raw_id.isdigit():
            self._send_json(400, {"detail": "Invalid anomaly id"})
            return
        if "status" not in payload:
            self._send_json(400, {"detail": "Missing status"})
            return
        anomaly = _engine().update_investigation(int(raw_id), str(payload["status"]), payload.get("notes"))
        self._send_json(200, _dump(anomaly))

    def _handle_create_rule(self) -> None:
        payload = self._read_json()
        if payload is None:
            self._send_json(400, {"detail": "Expected a JSON object"})
            return
        rule = _engine().rules.create(payload)
        self._send_json(201, _dump(rule))

    def _handle_rule_active(self, name: str) -> None:
        payload = self._read_json() or {}
        if "active" not in payload:
            self._send_json(400, {"detail": "Missing active"})
            return
        rule = _engine().rules.set_active(name, _parse_bool(payload["active"], True))
        self._send_json(200, _dump(rule))


def run(host: str, port: int) -> None:
    logger.info("Starting anomaly engine server on %s:%s", host, port)
    logger.info("DATABASE_URL=%s DATASET_DIR=%s", config.database_url, config.dataset_dir)
    _engine()
    server = ThreadingHTTPServer((host, port), BackendHandler)
    server.serve_forever()


def _print(payload: object) -> None:
    print(json.dumps(payload, indent=2))


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Anomaly scan engine")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the operator HTTP server")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    sub.add_parser("scan", help="Run one full scan cycle")

    report = sub.add_parser("report", help="Summarize recent anomalies")
    report.add_argument("--window-days", type=int, default=None)

    sub.add_parser("seed-rules", help="Install the default detection rules")

    args = parser.parse_args(argv)
    setup_logging("backend")
    setup_logging("src", log_file="engine.log")

    if args.command == "serve":
        run(args.host, args.port)
        return 0

    engine = _engine()
    if args.command == "seed-rules":
        created = engine.rules.seed_defaults()
        _print({"created": created, "rules": [r.name for r in engine.rules.list()]})
        return 0
    if args.command == "report":
        _print(_dump(engine.generate_report(window_days=args.window_days)))
        return 0

    scan_report = engine.run_full_scan()
    _print(_dump(scan_report))
    return 1 if scan_report.status == ScanStatus.FAILED else 0


if __name__ == "__main__":
    sys.exit(main())
