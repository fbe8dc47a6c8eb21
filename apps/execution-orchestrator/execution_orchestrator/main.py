"""CLI entrypoint for the execution orchestrator."""

from __future__ import annotations

import asyncio
import json
import sys
import time
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import typer
import yaml
from pydantic import ValidationError

if __package__ in {None, ""}:
    current_file = Path(__file__).resolve()
    package_root = current_file.parents[1]
    apps_dir = current_file.parents[2]
    for candidate in (package_root, apps_dir / "spec-normalizer", apps_dir / "scenario-generator"):
        candidate_str = str(candidate)
        if candidate_str not in sys.path and candidate.exists():
            sys.path.insert(0, candidate_str)
    __package__ = "execution_orchestrator"

from scenario_generator.bundle import load_bundle
from scenario_generator.models import Scenario

from .console_reporter import ConsoleReporter, get_output_format
from .models import ExecutionPolicy, TargetConfig
from .orchestrator import ExecutionOrchestrator

app = typer.Typer(help="Execute scenario bundles against a live target system.")

DEFAULT_OUTPUT_DIR = Path("artifacts/executions")


def _load_config(config_path: Optional[Path]) -> dict[str, Any]:
    if config_path is None:
        return {}
    text = config_path.read_text(encoding="utf-8")
    payload = json.loads(text) if config_path.suffix.lower() == ".json" else yaml.safe_load(text) or {}
    if not isinstance(payload, dict):
        raise typer.BadParameter("Config file must deserialize into a mapping")
    return payload


def parse_pairs(pairs: list[str], separator: str, what: str) -> dict[str, str]:
    result: dict[str, str] = {}
    for item in pairs:
        if separator not in item:
            raise typer.BadParameter(f"{what} must be in key{separator}value format")
        key, value = item.split(separator, 1)
        key = key.strip()
        if not key:
            raise typer.BadParameter(f"{what} key cannot be empty")
        result[key] = value.strip()
    return result


def build_target(
    raw_config: dict[str, Any],
    base_url: Optional[str],
    headers: list[str],
    variables: list[str],
) -> TargetConfig:
    payload = dict(raw_config.get("target") or {})
    if base_url:
        payload["base_url"] = base_url
    payload["headers"] = {**(payload.get("headers") or {}), **parse_pairs(headers, ":", "Header")}
    payload["variables"] = {**(payload.get("variables") or {}), **parse_pairs(variables, "=", "Variable")}
    try:
        return TargetConfig.model_validate(payload)
    except ValidationError as exc:
        raise typer.BadParameter(str(exc)) from exc


def build_policy(raw_config: dict[str, Any], **overrides: Any) -> ExecutionPolicy:
    payload = dict(raw_config.get("execution") or {})
    payload.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return ExecutionPolicy.model_validate(payload)
    except ValidationError as exc:
        raise typer.BadParameter(str(exc)) from exc


async def _execute(
    orchestrator: ExecutionOrchestrator,
    scenarios: list[Scenario],
    reporter: ConsoleReporter,
    records_file: Path,
) -> Counter[str]:
    states: Counter[str] = Counter()
    with records_file.open("w", encoding="utf-8") as handle:
        async for record in orchestrator.stream(scenarios):
            states[record.state.value] += 1
            handle.write(record.model_dump_json() + "\n")
            reporter.report(
                record.scenario_id,
                record.scenario.operation_id,
                record.state.value,
                record.duration_ms,
                record.error,
            )
    return states


@app.command()
def execute(
    bundle: Path = typer.Option(..., exists=True, help="Scenario bundle directory or scenarios.yaml file."),
    target: Optional[str] = typer.Option(None, help="Base URL of the system under test."),
    config: Optional[Path] = typer.Option(None, exists=True, help="YAML/JSON with 'target' and 'execution' sections."),
    output_dir: Path = typer.Option(DEFAULT_OUTPUT_DIR, help="Directory for run artifacts."),
    run_id: Optional[str] = typer.Option(None, help="Run identifier (defaults to a timestamp)."),
    output_format: Optional[str] = typer.Option(None, help="Console output: auto, rich, plain or json."),
    workers: Optional[int] = typer.Option(None, min=1, help="Concurrent workers."),
    header: list[str] = typer.Option([], "--header", "-H", help="Extra 'Name: value' header."),
    var: list[str] = typer.Option([], "--var", help="Template variable name=value for ${name} placeholders."),
) -> None:
    """Execute every scenario of a bundle and record one ExecutionRecord per line."""

    raw_config = _load_config(config)
    target_config = build_target(raw_config, target, header, var)
    policy = build_policy(raw_config, workers=workers)
    batch = load_bundle(bundle)

    resolved_run_id = run_id or datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    run_dir = output_dir / resolved_run_id
    run_dir.mkdir(parents=True, exist_ok=True)

    reporter = ConsoleReporter(output_format=get_output_format(output_format))
    reporter.start(total=len(batch.scenarios), title=resolved_run_id)
    started = time.perf_counter()
    orchestrator = ExecutionOrchestrator(target_config, policy)
    states = asyncio.run(_execute(orchestrator, batch.scenarios, reporter, run_dir / "records.jsonl"))
    duration_ms = (time.perf_counter() - started) * 1000

    summary = {
        "run_id": resolved_run_id,
        "total": len(batch.scenarios),
        "states": dict(sorted(states.items())),
        "duration_ms": round(duration_ms, 3),
    }
    (run_dir / "summary.json").write_text(json.dumps(summary, indent=2), encoding="utf-8")
    reporter.finish(summary["states"], "completed", duration_ms)


def run() -> None:
    """Console_scripts hook."""

    app()


if __name__ == "__main__":  # pragma: no cover
    run()
