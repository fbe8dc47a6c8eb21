"""CLI entrypoint for the scenario generator."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

import typer
import yaml
from pydantic import ValidationError

if __package__ in {None, ""}:
    current_file = Path(__file__).resolve()
    package_root = current_file.parents[1]
    apps_dir = current_file.parents[2]
    extra_paths = [package_root, apps_dir / "spec-normalizer"]
    for candidate in extra_paths:
        candidate_str = str(candidate)
        if candidate_str not in sys.path and candidate.exists():
            sys.path.insert(0, candidate_str)
    __package__ = "scenario_generator"

from spec_normalizer.catalog import load_model
from spec_normalizer.models import ApiModel

from .bundle import write_bundle
from .completion import CompletionServiceUnavailableError
from .prompts import PromptLibrary
from .settings import CompletionSettings, GenerationSettings, build_generator

app = typer.Typer(help="Generate schema-checked test scenarios from ApiModel snapshots.")

DEFAULT_OUTPUT_DIR = Path("artifacts/scenarios")


def _load_model(path: Path) -> ApiModel:
    try:
        return load_model(path)
    except ValidationError as exc:  # pragma: no cover - user error path
        raise typer.BadParameter(f"Model file {path} is not a valid ApiModel snapshot: {exc}") from exc


def _load_config(config_path: Optional[Path]) -> dict[str, Any]:
    if config_path is None:
        return {}
    text = config_path.read_text(encoding="utf-8")
    payload = json.loads(text) if config_path.suffix.lower() == ".json" else yaml.safe_load(text) or {}
    if not isinstance(payload, dict):
        raise typer.BadParameter("Config file must deserialize into a mapping")
    return payload


@app.command()
def generate(
    model: list[Path] = typer.Option(
        ...,
        exists=True,
        readable=True,
        help="Path(s) to ApiModel JSON snapshots produced by spec-normalizer.",
    ),
    output_dir: Path = typer.Option(DEFAULT_OUTPUT_DIR, help="Destination directory for scenario bundles."),
    limit: Optional[int] = typer.Option(None, min=1, help="Scenarios requested per operation."),
    config: Optional[Path] = typer.Option(
        None, exists=True, help="YAML/JSON file with 'completion' and 'generation' sections."
    ),
    prompt_library: Optional[Path] = typer.Option(
        None, exists=True, dir_okay=False, help="Optional prompt YAML overriding the templates."
    ),
    api_key: Optional[str] = typer.Option(None, envvar="ATP_COMPLETION_API_KEY", help="Completion API key."),
) -> None:
    """Generate scenario bundles (scenarios.yaml)."""

    raw_config = _load_config(config)
    try:
        completion = CompletionSettings.model_validate(raw_config.get("completion") or {})
        generation = GenerationSettings.model_validate(raw_config.get("generation") or {})
    except ValidationError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if api_key:
        completion = completion.model_copy(update={"api_key": api_key})

    generator = build_generator(completion, generation, prompt_library=PromptLibrary.from_file(prompt_library))

    for model_path in model:
        api_model = _load_model(model_path)
        try:
            batch = asyncio.run(generator.generate(api_model, limit))
        except CompletionServiceUnavailableError as exc:
            typer.secho(f"{exc.tag}: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1) from exc
        bundle_dir = write_bundle(batch, api_model, output_dir)
        typer.secho(
            f"{len(batch)} scenario(s), {len(batch.failures)} generation note(s) -> {bundle_dir}",
            fg=typer.colors.GREEN,
        )


def run() -> None:
    """Console_scripts hook."""

    app()


if __name__ == "__main__":  # pragma: no cover
    run()
