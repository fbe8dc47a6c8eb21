"""Accept/reject gate applied to every candidate input payload."""

from __future__ import annotations

import re
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from spec_normalizer.models import BodyEncoding, Operation

from .models import ScenarioCategory

UNUSABLE_SCHEMA = "input schema cannot be evaluated"

_SCALAR = {"type": ["string", "integer", "number", "boolean"]}


def envelope_schema(operation: Operation) -> dict[str, Any]:
    """Schema of a request that can still be built, whatever its body holds.

    Negative scenarios are checked against this instead of the full input
    schema: only known sections, and every path parameter present as a scalar.
    """

    sections = operation.input_schema.get("properties") or {}
    properties: dict[str, Any] = {}
    required: list[str] = []
    for section, schema in sections.items():
        if section == "path":
            names = sorted((schema.get("properties") or {}).keys())
            properties["path"] = {
                "type": "object",
                "properties": {name: _SCALAR for name in names},
                "required": names,
                "additionalProperties": False,
            }
            if names:
                required.append("path")
        elif section == "body":
            if operation.binding.body_encoding in {BodyEncoding.XML, BodyEncoding.FORM}:
                properties["body"] = {"type": "object"}
            else:
                properties["body"] = {}
        else:
            properties[section] = {"type": "object"}
    schema: dict[str, Any] = {"type": "object", "properties": properties, "additionalProperties": False}
    if required:
        schema["required"] = required
    return schema


class ScenarioGate:
    """Validates candidate inputs for one operation.

    ``unusable`` is set when the input schema itself cannot be evaluated, for
    example a ``pattern`` written in a regex dialect Python does not accept.
    """

    def __init__(self, operation: Operation) -> None:
        self.operation = operation
        self.unusable: str | None = None
        try:
            Draft202012Validator.check_schema(operation.input_schema)
        except SchemaError as exc:
            self.unusable = f"{UNUSABLE_SCHEMA}: {exc.message}"
        self._full = Draft202012Validator(operation.input_schema)
        self._envelope = Draft202012Validator(envelope_schema(operation))

    def check(self, category: ScenarioCategory, payload: Any) -> list[str]:
        """Return the problems found; an empty list means the payload is accepted."""

        validator = self._envelope if category.negative else self._full
        try:
            errors = sorted(
                validator.iter_errors(payload), key=lambda item: [str(part) for part in item.absolute_path]
            )
        except (re.error, SchemaError) as exc:
            self.unusable = f"{UNUSABLE_SCHEMA}: {exc}"
            return [self.unusable]
        problems = []
        for error in errors:
            location = "/".join(str(part) for part in error.absolute_path) or "<root>"
            problems.append(f"{location}: {error.message}")
        return problems
