"""CLI entrypoint for the end-to-end pipeline."""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, NoReturn, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

if __package__ in {None, ""}:
    current_file = Path(__file__).resolve()
    package_root = current_file.parents[1]
    apps_dir = current_file.parents[2]
    extra_paths = [
        package_root,
        apps_dir / "spec-normalizer",
        apps_dir / "scenario-generator",
        apps_dir / "execution-orchestrator",
        apps_dir / "response-validator",
    ]
    for candidate in extra_paths:
        candidate_str = str(candidate)
        if candidate_str not in sys.path and candidate.exists():
            sys.path.insert(0, candidate_str)
    __package__ = "pipeline_runner"

from spec_normalizer.errors import SpecError
from spec_normalizer.models import ProtocolKind
from spec_normalizer.normalizers import normalize_spec
from scenario_generator.bundle import load_bundle
from scenario_generator.prompts import PromptLibrary
from execution_orchestrator.console_reporter import ConsoleReporter, get_output_format
from response_validator.models import Strictness

from .aggregator import RunOutcome, RunReport, failed_to_start
from .logging_utils import configure_logging, get_log_format
from .pipeline import Pipeline
from .runs import RunRegistry, RunStatus
from .settings import PipelineSettings, load_settings
from .storage import FileResultStore, FileSpecStore, MemorySpecStore, RunFilter

app = typer.Typer(help="Generate, execute and validate API test runs end to end.")
console = Console()

DEFAULT_CATALOG_DIR = Path("workspace/catalog")
DEFAULT_RESULTS_DIR = Path("artifacts/runs")

_EXIT_CODES = {
    RunOutcome.PASSED: 0,
    RunOutcome.FAILED: 1,
    RunOutcome.ERRORED: 1,
    RunOutcome.FAILED_TO_START: 2,
}


def _settings(config: Optional[Path], overrides: dict[str, Any]) -> PipelineSettings:
    try:
        return load_settings(config, overrides=overrides)
    except (ValidationError, ValueError) as exc:
        raise typer.BadParameter(str(exc)) from exc


def _default_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _configure(settings: PipelineSettings, output_format: Optional[str]) -> ConsoleReporter:
    log_format = settings.logging.format or get_log_format(output_format)
    configure_logging(settings.logging.level, log_format)
    return ConsoleReporter(output_format=get_output_format(output_format))


def _finish(report: RunReport) -> NoReturn:
    if report.error:
        message = f"{report.error_tag}: {report.error}" if report.error_tag else report.error
        typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=_EXIT_CODES[report.status])


@app.command("run")
def run_pipeline(
    spec: Path = typer.Option(..., exists=True, dir_okay=False, help="OpenAPI or WSDL document."),
    target: Optional[str] = typer.Option(None, help="Base URL of the system under test."),
    kind: Optional[ProtocolKind] = typer.Option(None, help="Force the protocol instead of guessing from the suffix."),
    config: Optional[Path] = typer.Option(None, exists=True, help="YAML/JSON pipeline configuration."),
    catalog_dir: Path = typer.Option(DEFAULT_CATALOG_DIR, help="Spec store root (models and scenario bundles)."),
    results_dir: Path = typer.Option(DEFAULT_RESULTS_DIR, help="Result store root."),
    run_id: Optional[str] = typer.Option(None, help="Run identifier (defaults to a timestamp)."),
    limit: Optional[int] = typer.Option(None, min=1, help="Scenarios requested per operation."),
    workers: Optional[int] = typer.Option(None, min=1, help="Concurrent execution workers."),
    strictness: Optional[Strictness] = typer.Option(None, help="Payload comparison strictness."),
    prompt_library: Optional[Path] = typer.Option(
        None, exists=True, dir_okay=False, help="Optional prompt YAML overriding the templates."
    ),
    api_key: Optional[str] = typer.Option(None, envvar="ATP_COMPLETION_API_KEY", help="Completion API key."),
    output_format: Optional[str] = typer.Option(None, help="Console output: auto, rich, plain or json."),
) -> None:
    """Normalize a spec, generate scenarios, execute, validate and persist the run."""

    settings = _settings(
        config,
        {
            "target": {"base_url": target},
            "generation": {"per_operation_limit": limit},
            "execution": {"workers": workers},
            "validation": {"strictness": strictness},
            "completion": {"api_key": api_key},
        },
    )
    reporter = _configure(settings, output_format)
    resolved_run_id = run_id or _default_run_id()
    spec_store = FileSpecStore(catalog_dir)
    result_store = FileResultStore(results_dir)

    started = datetime.now(timezone.utc)
    try:
        model = normalize_spec(spec, kind=kind)
    except SpecError as exc:
        report = failed_to_start(exc, run_id=resolved_run_id, started_at=started, finished_at=datetime.now(timezone.utc))
        result_store.persist(report)
        _finish(report)
    spec_id = spec_store.save(model)

    pipeline = Pipeline(
        settings,
        spec_store=spec_store,
        result_store=result_store,
        prompt_library=PromptLibrary.from_file(prompt_library),
        reporter=reporter,
    )

    async def _submit_and_wait() -> RunStatus:
        registry = RunRegistry(pipeline.run_stored)
        registry.submit_run(spec_id, settings.target, settings.generation, run_id=resolved_run_id)
        state = await registry.wait(resolved_run_id)
        return state.status

    status = asyncio.run(_submit_and_wait())
    try:
        report = result_store.fetch(resolved_run_id)
    except LookupError:
        reporter.print_error(f"Run {resolved_run_id} ended as {status.value} without a report")
        raise typer.Exit(code=1)
    _finish(report)


@app.command("execute")
def execute_bundle(
    bundle: Path = typer.Option(..., exists=True, help="Scenario bundle directory or scenarios.yaml file."),
    target: Optional[str] = typer.Option(None, help="Base URL of the system under test."),
    config: Optional[Path] = typer.Option(None, exists=True, help="YAML/JSON pipeline configuration."),
    results_dir: Path = typer.Option(DEFAULT_RESULTS_DIR, help="Result store root."),
    run_id: Optional[str] = typer.Option(None, help="Run identifier (defaults to a timestamp)."),
    workers: Optional[int] = typer.Option(None, min=1, help="Concurrent execution workers."),
    strictness: Optional[Strictness] = typer.Option(None, help="Payload comparison strictness."),
    output_format: Optional[str] = typer.Option(None, help="Console output: auto, rich, plain or json."),
) -> None:
    """Execute an existing bundle with streaming validation and persist the report."""

    settings = _settings(
        config,
        {
            "target": {"base_url": target},
            "execution": {"workers": workers},
            "validation": {"strictness": strictness},
        },
    )
    reporter = _configure(settings, output_format)
    try:
        batch = load_bundle(bundle)
    except (ValidationError, ValueError) as exc:
        raise typer.BadParameter(f"Invalid scenario bundle {bundle}: {exc}") from exc
    spec_id = bundle.name if bundle.is_dir() else bundle.parent.name
    pipeline = Pipeline(
        settings,
        spec_store=MemorySpecStore(),
        result_store=FileResultStore(results_dir),
        reporter=reporter,
    )
    report = asyncio.run(
        pipeline.execute(
            batch.scenarios,
            settings.target,
            run_id=run_id or _default_run_id(),
            spec_id=spec_id,
            failures=batch.failures,
        )
    )
    _finish(report)


@app.command()
def history(
    results_dir: Path = typer.Option(DEFAULT_RESULTS_DIR, help="Result store root."),
    status: Optional[RunOutcome] = typer.Option(None, help="Only runs with this status."),
    spec_id: Optional[str] = typer.Option(None, help="Only runs of this spec."),
    limit: Optional[int] = typer.Option(None, min=1, help="Maximum number of runs."),
    output_format: Optional[str] = typer.Option(None, help="plain table or json lines."),
) -> None:
    """List persisted run summaries, newest first."""

    summaries = FileResultStore(results_dir).query(RunFilter(status=status, spec_id=spec_id, limit=limit))
    if (output_format or "").lower() == "json":
        for summary in summaries:
            typer.echo(json.dumps(summary.model_dump(mode="json"), ensure_ascii=False))
        return
    table = Table(show_header=True, header_style="bold cyan")
    for column in ("Run", "Spec", "Status", "Pass", "Fail", "Error", "Started"):
        table.add_column(column)
    for summary in summaries:
        table.add_row(
            summary.run_id,
            summary.spec_id or "-",
            summary.status.value,
            str(summary.counts.get("pass", 0)),
            str(summary.counts.get("fail", 0)),
            str(summary.counts.get("error", 0)),
            summary.started_at.isoformat() if summary.started_at else "-",
        )
    console.print(table)


def run() -> None:
    """Console_scripts hook."""

    app()


if __name__ == "__main__":  # pragma: no cover
    run()
