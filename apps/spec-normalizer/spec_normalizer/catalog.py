"""File layout shared by everything that stores ApiModel snapshots."""

from __future__ import annotations

import json
from pathlib import Path

from .models import ApiModel

MODEL_FILE = "model.json"


def persist_model(model: ApiModel, output_dir: Path) -> Path:
    destination_dir = output_dir / model.spec_id
    destination_dir.mkdir(parents=True, exist_ok=True)
    destination_file = destination_dir / MODEL_FILE
    with destination_file.open("w", encoding="utf-8") as fp:
        json.dump(model.as_serializable(), fp, indent=2, ensure_ascii=False)
    return destination_file


def load_model(path: Path) -> ApiModel:
    """Load a snapshot file, or the ``model.json`` inside a catalog entry directory."""

    snapshot = path / MODEL_FILE if path.is_dir() else path
    return ApiModel.model_validate_json(snapshot.read_text(encoding="utf-8"))
