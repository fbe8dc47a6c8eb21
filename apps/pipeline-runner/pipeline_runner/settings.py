"""Pipeline configuration: defaults < config file < ATP_* environment < CLI options."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, Field

from scenario_generator.settings import CompletionSettings, GenerationSettings
from execution_orchestrator.models import ExecutionPolicy, TargetConfig
from response_validator.models import ValidationSettings

from .logging_utils import LogFormat

ENV_PREFIX = "ATP_"


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: Optional[LogFormat] = None


class PipelineSettings(BaseModel):
    completion: CompletionSettings = Field(default_factory=CompletionSettings)
    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    execution: ExecutionPolicy = Field(default_factory=ExecutionPolicy)
    target: TargetConfig = Field(default_factory=TargetConfig)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def read_config_file(path: Path) -> dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    payload = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text) or {}
    if not isinstance(payload, dict):
        raise ValueError(f"Config file {path} must deserialize into a mapping")
    return payload


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Map ``ATP_<GROUP>_<FIELD>`` variables onto settings groups (scalar fields only)."""

    result: dict[str, dict[str, Any]] = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):].lower()
        for group, group_field in PipelineSettings.model_fields.items():
            prefix = f"{group}_"
            if not name.startswith(prefix):
                continue
            field_name = name[len(prefix):]
            group_model = group_field.annotation
            if isinstance(group_model, type) and field_name in getattr(group_model, "model_fields", {}):
                result.setdefault(group, {})[field_name] = value
            break
    return result


def _merge(base: dict[str, Any], extra: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if value is None:
            continue
        if isinstance(value, Mapping):
            current = merged.get(key)
            merged[key] = _merge(dict(current) if isinstance(current, Mapping) else {}, value)
        else:
            merged[key] = value
    return merged


def load_settings(
    config_path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> PipelineSettings:
    """Build settings; raises ``pydantic.ValidationError`` on invalid values."""

    data: dict[str, Any] = read_config_file(config_path) if config_path else {}
    data = _merge(data, env_overrides(os.environ if environ is None else environ))
    data = _merge(data, overrides or {})
    return PipelineSettings.model_validate(data)
