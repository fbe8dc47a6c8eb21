"""Prompt library utilities for the scenario generator."""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from string import Template
from typing import Any

import yaml

_ANSWER_FORMAT = (
    "Answer with a JSON array only. Each item is an object with the keys "
    '"category" (one of ${categories}), "description", "input" (an object with the '
    'sections of the input schema), "expected_status" (list of HTTP status codes), '
    '"expected_fault" (list of SOAP fault codes, may be empty) and optionally '
    '"expected_payload" (a fragment of the expected response body).'
)

DEFAULT_LIBRARY: dict[str, Any] = {
    "defaults": {
        "system": "You are a meticulous API tester. You write concrete test inputs, never prose.",
        "initial": (
            "Propose up to ${count} diverse test scenarios for ${label} (operation ${operation_id}).\n"
            "Cover valid inputs, boundary values, invalid values and missing required fields.\n"
            "Input schema (JSON Schema):\n${input_schema}\n"
            "Success response schema:\n${output_schema}\n"
            "Success status codes: ${success_codes}. Declared error responses: ${error_codes}.\n"
            + _ANSWER_FORMAT
        ),
        "regenerate": (
            "Your previous scenarios for ${label} (operation ${operation_id}) were rejected:\n"
            "${errors}\n"
            "Propose up to ${count} new scenarios. Valid and boundary inputs must satisfy the input "
            "schema exactly; invalid inputs may only break the body.\n"
            "Input schema (JSON Schema):\n${input_schema}\n"
            + _ANSWER_FORMAT
        ),
        "tags": ["generated"],
    },
    "protocols": {
        "rest": {
            "system": (
                "You are a meticulous REST API tester. Inputs use the sections path, query, headers "
                "and body exactly as named in the schema."
            ),
        },
        "soap": {
            "system": (
                "You are a meticulous SOAP API tester. The body section holds the children of the "
                "request element; attributes are written as '@name' keys."
            ),
        },
    },
}


class PromptLibrary:
    """Resolves prompt templates and tags per protocol."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        payload = deepcopy(data) if data else deepcopy(DEFAULT_LIBRARY)
        if not isinstance(payload, dict):
            raise ValueError("Prompt library root must be a mapping")
        self._defaults: dict[str, Any] = {**DEFAULT_LIBRARY["defaults"], **(payload.get("defaults") or {})}
        self._protocols: dict[str, Any] = payload.get("protocols", {}) or {}

    @classmethod
    def from_file(cls, path: Path | None) -> "PromptLibrary":
        if path is None:
            return cls()
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Prompt library {path} must contain a mapping")
        return cls(raw)

    def tags(self) -> list[str]:
        return [str(tag) for tag in self._defaults.get("tags", [])]

    def protocol_block(self, protocol: str) -> dict[str, Any]:
        return self._protocols.get(protocol.lower(), {}) or {}

    def template(self, protocol: str, strategy: str) -> str:
        block = self.protocol_block(protocol)
        template = block.get(strategy) or self._defaults.get(strategy)
        if not template:
            raise KeyError(f"No '{strategy}' prompt template for protocol '{protocol}'")
        return str(template)

    def system_prompt(self, protocol: str, replacements: dict[str, str]) -> str:
        block = self.protocol_block(protocol)
        return _render(block.get("system") or self._defaults.get("system", ""), replacements)

    def render(self, protocol: str, strategy: str, replacements: dict[str, str]) -> str:
        return _render(self.template(protocol, strategy), replacements)


def _render(template: Any, replacements: dict[str, str]) -> str:
    return Template(str(template)).safe_substitute(replacements)
