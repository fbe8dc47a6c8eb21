"""Scenario bundle persistence (``scenarios.yaml``)."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from spec_normalizer.models import ApiModel

from .models import GenerationBatch

BUNDLE_FILE = "scenarios.yaml"


def write_bundle(batch: GenerationBatch, model: ApiModel, output_dir: Path) -> Path:
    """Write generated scenarios plus failure notes into ``output_dir/<spec id>/``."""

    bundle_dir = output_dir / model.spec_id
    bundle_dir.mkdir(parents=True, exist_ok=True)
    document = {
        "spec_id": model.spec_id,
        "title": model.title,
        "version": model.version,
        "protocol": model.protocol.value,
        "base_url": model.base_url,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        **batch.model_dump(mode="json"),
    }
    _write_yaml(bundle_dir / BUNDLE_FILE, document)
    return bundle_dir


def load_bundle(path: Path) -> GenerationBatch:
    """Load a bundle directory (or the ``scenarios.yaml`` inside it)."""

    bundle_file = path / BUNDLE_FILE if path.is_dir() else path
    data = yaml.safe_load(bundle_file.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Scenario bundle {bundle_file} must contain a mapping")
    return GenerationBatch.model_validate(
        {"scenarios": data.get("scenarios") or [], "failures": data.get("failures") or []}
    )


def _write_yaml(path: Path, payload: dict[str, Any]) -> None:
    path.write_text(yaml.safe_dump(payload, sort_keys=False, allow_unicode=True), encoding="utf-8")
