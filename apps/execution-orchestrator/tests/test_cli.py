from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path

import yaml
from typer.testing import CliRunner

from spec_normalizer.models import BodyEncoding, OperationBinding, ProtocolKind
from scenario_generator.models import ExpectedOutcome, GenerationBatch, Scenario, ScenarioCategory
from execution_orchestrator.main import app

runner = CliRunner()


def _start_target() -> tuple[HTTPServer, threading.Thread, list[dict[str, str]]]:
    seen: list[dict[str, str]] = []

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self) -> None:  # noqa: N802 - HTTP handler requirement
            length = int(self.headers.get("Content-Length", "0"))
            self.rfile.read(length)
            seen.append({"path": self.path, "x-env": self.headers.get("X-Env", "")})
            status = 201 if self.path == "/orders" else 404
            body = json.dumps({"ok": status == 201}).encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format: str, *args: object) -> None:  # pragma: no cover - silence logs
            return

    server = HTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, thread, seen


def _scenario(scenario_id: str, path: str) -> Scenario:
    return Scenario(
        scenario_id=scenario_id,
        operation_id="createOrder",
        category=ScenarioCategory.VALID,
        input={"body": {"sku": scenario_id}},
        expected=ExpectedOutcome(status_codes=[201]),
        binding=OperationBinding(protocol=ProtocolKind.REST, method="POST", path=path, body_encoding=BodyEncoding.JSON),
    )


def _bundle(tmp_path: Path) -> Path:
    batch = GenerationBatch(scenarios=[_scenario("order-ok", "/orders"), _scenario("order-missing", "/nowhere")])
    bundle_file = tmp_path / "scenarios.yaml"
    bundle_file.write_text(yaml.safe_dump(batch.model_dump(mode="json"), sort_keys=False), encoding="utf-8")
    return bundle_file


def test_execute_writes_records_and_summary(tmp_path: Path) -> None:
    server, thread, seen = _start_target()
    base_url = f"http://127.0.0.1:{server.server_address[1]}"
    config = tmp_path / "config.yaml"
    config.write_text(
        yaml.safe_dump({"target": {"headers": {"X-Env": "qa"}}, "execution": {"workers": 2, "retry_budget": 0}}),
        encoding="utf-8",
    )

    result = runner.invoke(
        app,
        [
            "--bundle",
            str(_bundle(tmp_path)),
            "--target",
            base_url,
            "--config",
            str(config),
            "--output-dir",
            str(tmp_path / "runs"),
            "--run-id",
            "cli-run",
            "--output-format",
            "json",
        ],
    )

    server.shutdown()
    thread.join(timeout=2)

    assert result.exit_code == 0, result.output
    run_dir = tmp_path / "runs" / "cli-run"
    records = [json.loads(line) for line in (run_dir / "records.jsonl").read_text(encoding="utf-8").splitlines()]
    by_id = {record["scenario"]["scenario_id"]: record for record in records}
    assert set(by_id) == {"order-ok", "order-missing"}
    assert by_id["order-ok"]["state"] == "succeeded"
    assert by_id["order-ok"]["response"]["status_code"] == 201
    assert by_id["order-missing"]["state"] == "succeeded"
    assert by_id["order-missing"]["response"]["status_code"] == 404
    assert {entry["x-env"] for entry in seen} == {"qa"}

    summary = json.loads((run_dir / "summary.json").read_text(encoding="utf-8"))
    assert summary["total"] == 2
    assert summary["states"] == {"succeeded": 2}

    events = [json.loads(line) for line in result.stdout.splitlines() if line.startswith("{")]
    assert events[0]["event"] == "run_started"
    assert events[-1]["event"] == "run_finished"


def test_header_option_requires_separator(tmp_path: Path) -> None:
    result = runner.invoke(app, ["--bundle", str(_bundle(tmp_path)), "--header", "broken"])

    assert result.exit_code != 0
