"""Spec and result storage collaborators (in-memory and file-based)."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol
import xml.etree.ElementTree as ET

from pydantic import BaseModel, Field

from spec_normalizer.catalog import MODEL_FILE, load_model, persist_model
from spec_normalizer.models import ApiModel
from scenario_generator.bundle import BUNDLE_FILE, load_bundle, write_bundle
from scenario_generator.models import GenerationBatch
from response_validator.models import Classification

from .aggregator import RunOutcome, RunReport


class NotFoundError(LookupError):
    """Unknown spec or run identifier."""


class RunFilter(BaseModel):
    status: Optional[RunOutcome] = None
    spec_id: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)


class RunSummary(BaseModel):
    run_id: str
    spec_id: Optional[str] = None
    status: RunOutcome
    counts: dict[str, int] = Field(default_factory=dict)
    error_tag: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: float = 0.0

    @classmethod
    def from_report(cls, report: RunReport) -> "RunSummary":
        return cls(
            run_id=report.run_id or "",
            spec_id=report.spec_id,
            status=report.status,
            counts=dict(report.counts),
            error_tag=report.error_tag,
            started_at=report.started_at,
            finished_at=report.finished_at,
            duration_ms=report.duration_ms,
        )


class SpecStore(Protocol):
    def save(self, model: ApiModel) -> str: ...

    def fetch(self, spec_id: str) -> ApiModel: ...

    def save_scenarios(self, spec_id: str, batch: GenerationBatch) -> None: ...

    def fetch_scenarios(self, spec_id: str) -> GenerationBatch: ...


class ResultStore(Protocol):
    def persist(self, report: RunReport) -> str: ...

    def fetch(self, run_id: str) -> RunReport: ...

    def query(self, run_filter: Optional[RunFilter] = None) -> list[RunSummary]: ...


class MemorySpecStore:
    def __init__(self) -> None:
        self._models: dict[str, ApiModel] = {}
        self._scenarios: dict[str, GenerationBatch] = {}

    def save(self, model: ApiModel) -> str:
        self._models[model.spec_id] = model
        return model.spec_id

    def fetch(self, spec_id: str) -> ApiModel:
        try:
            return self._models[spec_id]
        except KeyError:
            raise NotFoundError(f"Unknown spec id '{spec_id}'") from None

    def save_scenarios(self, spec_id: str, batch: GenerationBatch) -> None:
        self.fetch(spec_id)
        self._scenarios[spec_id] = batch

    def fetch_scenarios(self, spec_id: str) -> GenerationBatch:
        self.fetch(spec_id)
        try:
            return self._scenarios[spec_id]
        except KeyError:
            raise NotFoundError(f"No scenarios stored for spec '{spec_id}'") from None


class FileSpecStore:
    """``<root>/<spec id>/model.json`` plus the ``scenarios.yaml`` bundle beside it."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def save(self, model: ApiModel) -> str:
        persist_model(model, self.root)
        return model.spec_id

    def fetch(self, spec_id: str) -> ApiModel:
        snapshot = self.root / spec_id / MODEL_FILE
        if not snapshot.is_file():
            raise NotFoundError(f"Unknown spec id '{spec_id}'")
        return load_model(snapshot)

    def save_scenarios(self, spec_id: str, batch: GenerationBatch) -> None:
        write_bundle(batch, self.fetch(spec_id), self.root)

    def fetch_scenarios(self, spec_id: str) -> GenerationBatch:
        bundle = self.root / spec_id / BUNDLE_FILE
        if not bundle.is_file():
            raise NotFoundError(f"No scenarios stored for spec '{spec_id}'")
        return load_bundle(bundle)


def _new_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


def _with_run_id(report: RunReport) -> RunReport:
    return report if report.run_id else report.model_copy(update={"run_id": _new_run_id()})


def _matches(summary: RunSummary, run_filter: RunFilter) -> bool:
    if run_filter.status is not None and summary.status is not run_filter.status:
        return False
    if run_filter.spec_id is not None and summary.spec_id != run_filter.spec_id:
        return False
    return True


def _newest_first(summaries: list[RunSummary], run_filter: Optional[RunFilter]) -> list[RunSummary]:
    run_filter = run_filter or RunFilter()
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    selected = [summary for summary in summaries if _matches(summary, run_filter)]
    selected.sort(key=lambda summary: (summary.started_at or epoch, summary.run_id), reverse=True)
    return selected[: run_filter.limit] if run_filter.limit else selected


class MemoryResultStore:
    def __init__(self) -> None:
        self._reports: dict[str, RunReport] = {}

    def persist(self, report: RunReport) -> str:
        report = _with_run_id(report)
        self._reports[report.run_id or ""] = report
        return report.run_id or ""

    def fetch(self, run_id: str) -> RunReport:
        try:
            return self._reports[run_id]
        except KeyError:
            raise NotFoundError(f"Unknown run id '{run_id}'") from None

    def query(self, run_filter: Optional[RunFilter] = None) -> list[RunSummary]:
        return _newest_first([RunSummary.from_report(report) for report in self._reports.values()], run_filter)


class FileResultStore:
    """Writes ``summary.json``, ``events.jsonl`` and ``results.junit.xml`` per run."""

    SUMMARY_FILE = "summary.json"
    EVENTS_FILE = "events.jsonl"
    JUNIT_FILE = "results.junit.xml"

    def __init__(self, root: Path) -> None:
        self.root = root

    def persist(self, report: RunReport) -> str:
        report = _with_run_id(report)
        run_id = report.run_id or ""
        run_dir = self.root / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        (run_dir / self.SUMMARY_FILE).write_text(report.model_dump_json(indent=2), encoding="utf-8")
        with (run_dir / self.EVENTS_FILE).open("w", encoding="utf-8") as events:
            for verdict in report.verdicts:
                events.write(json.dumps(verdict.model_dump(mode="json"), ensure_ascii=False) + "\n")
        self._write_junit(report, run_dir / self.JUNIT_FILE)
        return run_id

    def fetch(self, run_id: str) -> RunReport:
        summary_file = self.root / run_id / self.SUMMARY_FILE
        if not summary_file.is_file():
            raise NotFoundError(f"Unknown run id '{run_id}'")
        return RunReport.model_validate_json(summary_file.read_text(encoding="utf-8"))

    def query(self, run_filter: Optional[RunFilter] = None) -> list[RunSummary]:
        if not self.root.exists():
            return []
        summaries = [
            RunSummary.from_report(RunReport.model_validate_json(path.read_text(encoding="utf-8")))
            for path in self.root.glob(f"*/{self.SUMMARY_FILE}")
        ]
        return _newest_first(summaries, run_filter)

    @staticmethod
    def _write_junit(report: RunReport, junit_file: Path) -> None:
        suite = ET.Element(
            "testsuite",
            attrib={
                "name": report.run_id or "run",
                "tests": str(report.total),
                "failures": str(report.counts.get(Classification.FAIL.value, 0)),
                "errors": str(report.counts.get(Classification.ERROR.value, 0)),
            },
        )
        for verdict in report.verdicts:
            case = ET.SubElement(
                suite,
                "testcase",
                attrib={
                    "classname": verdict.operation_id,
                    "name": verdict.scenario_id,
                    "time": str(verdict.duration_ms / 1000),
                },
            )
            if verdict.classification is Classification.FAIL:
                failure = ET.SubElement(
                    case,
                    "failure",
                    attrib={"message": f"{len(verdict.mismatches)} mismatch(es)"},
                )
                failure.text = "\n".join(
                    f"{mismatch.path}: {mismatch.message} (expected={mismatch.expected!r}, actual={mismatch.actual!r})"
                    for mismatch in verdict.mismatches
                )
            elif verdict.classification is Classification.ERROR:
                error = ET.SubElement(case, "error", attrib={"message": verdict.reason or "Scenario could not be evaluated"})
                error.text = verdict.terminal_state
        tree = ET.ElementTree(suite)
        tree.write(junit_file, encoding="utf-8", xml_declaration=True)
