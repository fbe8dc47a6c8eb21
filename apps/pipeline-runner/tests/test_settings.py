from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from response_validator.models import Strictness
from pipeline_runner.settings import env_overrides, load_settings


def test_defaults_without_any_source() -> None:
    settings = load_settings(environ={})

    assert settings.execution.workers == 4
    assert settings.validation.strictness is Strictness.LENIENT
    assert settings.target.base_url is None
    assert settings.logging.format is None


def test_file_then_environment_then_overrides(tmp_path: Path) -> None:
    config = tmp_path / "pipeline.yaml"
    config.write_text(
        "execution:\n"
        "  workers: 2\n"
        "  retry_budget: 5\n"
        "target:\n"
        "  base_url: http://from-file\n"
        "  headers:\n"
        "    X-Env: staging\n"
        "logging:\n"
        "  format: json\n",
        encoding="utf-8",
    )

    settings = load_settings(
        config,
        environ={"ATP_EXECUTION_WORKERS": "6", "ATP_TARGET_BASE_URL": "http://from-env"},
        overrides={"target": {"base_url": "http://from-cli"}, "execution": {"workers": None}},
    )

    assert settings.execution.workers == 6
    assert settings.execution.retry_budget == 5
    assert settings.target.base_url == "http://from-cli"
    assert settings.target.headers == {"X-Env": "staging"}
    assert settings.logging.format == "json"


def test_json_config_is_accepted(tmp_path: Path) -> None:
    config = tmp_path / "pipeline.json"
    config.write_text('{"validation": {"strictness": "strict"}}', encoding="utf-8")

    assert load_settings(config, environ={}).validation.strictness is Strictness.STRICT


def test_environment_ignores_unknown_names() -> None:
    overrides = env_overrides(
        {
            "ATP_COMPLETION_MODEL": "local-model",
            "ATP_EXECUTION_NOPE": "1",
            "ATP_UNKNOWN_FIELD": "x",
            "HOME": "/root",
        }
    )

    assert overrides == {"completion": {"model": "local-model"}}


def test_invalid_values_are_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        load_settings(environ={"ATP_EXECUTION_WORKERS": "0"})

    config = tmp_path / "list.yaml"
    config.write_text("- not\n- a mapping\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_settings(config, environ={})
