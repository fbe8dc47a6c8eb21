"""CLI entrypoint for the response validator."""

from __future__ import annotations

import sys
from collections import Counter
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console

if __package__ in {None, ""}:
    current_file = Path(__file__).resolve()
    package_root = current_file.parents[1]
    apps_dir = current_file.parents[2]
    for candidate in (
        package_root,
        apps_dir / "spec-normalizer",
        apps_dir / "scenario-generator",
        apps_dir / "execution-orchestrator",
    ):
        candidate_str = str(candidate)
        if candidate_str not in sys.path and candidate.exists():
            sys.path.insert(0, candidate_str)
    __package__ = "response_validator"

from execution_orchestrator.models import ExecutionRecord

from .models import Strictness
from .validator import ResponseValidator

app = typer.Typer(help="Validate recorded executions and emit verdicts.")
console = Console()


@app.command()
def check(
    records: Path = typer.Option(..., exists=True, dir_okay=False, help="records.jsonl written by the orchestrator."),
    strictness: Strictness = typer.Option(Strictness.LENIENT, help="lenient ignores extra fields, strict flags them."),
    output: Optional[Path] = typer.Option(None, help="Verdict file (defaults to verdicts.jsonl next to the records)."),
) -> None:
    """Validate every record and write one verdict per line."""

    validator = ResponseValidator(strictness)
    destination = output or records.with_name("verdicts.jsonl")
    counts: Counter[str] = Counter()
    with records.open("r", encoding="utf-8") as source, destination.open("w", encoding="utf-8") as sink:
        for line_no, line in enumerate(source, start=1):
            if not line.strip():
                continue
            try:
                record = ExecutionRecord.model_validate_json(line)
            except ValidationError as exc:
                raise typer.BadParameter(f"{records}:{line_no}: {exc.errors()[0]['msg']}") from exc
            verdict = validator.validate(record)
            counts[verdict.classification.value] += 1
            sink.write(verdict.model_dump_json() + "\n")

    summary = ", ".join(f"{key}={value}" for key, value in sorted(counts.items())) or "no records"
    console.print(f"[green]Verdicts written to {destination}[/] ({summary})")
    if counts.get("fail") or counts.get("error"):
        raise typer.Exit(code=1)


def run() -> None:
    """Console_scripts hook."""

    app()


if __name__ == "__main__":  # pragma: no cover
    run()
