"""Entry point for the spec-normalizer application."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import typer

if __package__ in {None, ""}:
    sys.path.append(str(Path(__file__).resolve().parents[1]))
    __package__ = "spec_normalizer"

from .catalog import persist_model
from .errors import SpecError
from .models import ProtocolKind
from .normalizers import normalize_spec

app = typer.Typer(help="Normalize OpenAPI/WSDL documents into canonical ApiModel snapshots.")

DEFAULT_OUTPUT = Path("workspace/catalog")


@app.command()
def intake(
    spec: list[Path] = typer.Option(..., exists=True, help="Path to one or more API specifications."),
    kind: Optional[ProtocolKind] = typer.Option(None, help="Force the protocol instead of guessing from the suffix."),
    output_dir: Path = typer.Option(DEFAULT_OUTPUT, help="Directory for normalized ApiModel snapshots."),
    title: Optional[str] = typer.Option(None, help="Override the API title stored in the model."),
) -> None:
    """Normalize provided specifications into canonical ApiModel snapshots."""

    for spec_path in spec:
        try:
            model = normalize_spec(spec_path, kind=kind, title_override=title)
        except SpecError as exc:
            typer.secho(f"{exc.tag}: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=2) from exc

        snapshot_path = persist_model(model, output_dir)
        typer.secho(
            f"Saved {len(model.operations)} operation(s) -> {snapshot_path}",
            fg=typer.colors.GREEN,
        )


def run() -> None:
    """CLI entry point for console_scripts."""

    app()


if __name__ == "__main__":  # pragma: no cover
    run()
