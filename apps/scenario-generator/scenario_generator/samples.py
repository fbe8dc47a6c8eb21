"""Deterministic sample values derived from a JSON Schema."""

from __future__ import annotations

import math
from typing import Any

_FORMAT_SAMPLES = {
    "date": "2024-01-01",
    "date-time": "2024-01-01T00:00:00Z",
    "time": "00:00:00",
    "uri": "https://example.com",
    "email": "user@example.com",
    "uuid": "00000000-0000-4000-8000-000000000000",
}
_MAX_DEPTH = 8


def example_from_schema(schema: dict[str, Any]) -> Any:
    """Build the smallest value satisfying ``schema`` that this helper can think of.

    Only required properties are filled and arrays get their minimum length,
    which also keeps recursive ``$defs`` finite.
    """

    return _Sampler(schema.get("$defs") or {}).sample(schema, 0)


class _Sampler:
    def __init__(self, definitions: dict[str, Any]) -> None:
        self.definitions = definitions

    def sample(self, schema: Any, depth: int) -> Any:
        if not isinstance(schema, dict) or depth > _MAX_DEPTH:
            return None
        ref = schema.get("$ref")
        if isinstance(ref, str) and ref.startswith("#/$defs/"):
            return self.sample(self.definitions.get(ref[len("#/$defs/"):], {}), depth + 1)
        if "const" in schema:
            return schema["const"]
        if schema.get("enum"):
            return schema["enum"][0]
        if "default" in schema:
            return schema["default"]
        if "allOf" in schema:
            merged: dict[str, Any] = {}
            for part in schema["allOf"]:
                value = self.sample(part, depth + 1)
                if isinstance(value, dict):
                    merged.update(value)
            return merged
        for combinator in ("anyOf", "oneOf"):
            options = schema.get(combinator)
            if options:
                non_null = [option for option in options if option.get("type") != "null"]
                return self.sample((non_null or options)[0], depth + 1)

        kind = schema.get("type")
        if isinstance(kind, list):
            kind = next((item for item in kind if item != "null"), "null")
        if kind is None:
            kind = "object" if "properties" in schema else "string"

        if kind == "object":
            properties = schema.get("properties") or {}
            return {
                name: self.sample(properties.get(name, {}), depth + 1)
                for name in schema.get("required", [])
            }
        if kind == "array":
            count = int(schema.get("minItems", 0))
            return [self.sample(schema.get("items") or {}, depth + 1) for _ in range(count)]
        if kind == "integer":
            return int(_number(schema, integer=True))
        if kind == "number":
            return _number(schema, integer=False)
        if kind == "boolean":
            return True
        if kind == "null":
            return None
        return _string(schema)


def _number(schema: dict[str, Any], *, integer: bool) -> float:
    step = 1 if integer else 0.5
    low = schema.get("minimum")
    if isinstance(schema.get("exclusiveMinimum"), (int, float)):
        low = schema["exclusiveMinimum"] + step
    high = schema.get("maximum")
    if isinstance(schema.get("exclusiveMaximum"), (int, float)):
        high = schema["exclusiveMaximum"] - step

    if low is not None:
        value = math.ceil(low) if integer else low
    elif high is not None:
        value = min(1, math.floor(high) if integer else high)
    else:
        value = 1
    multiple = schema.get("multipleOf")
    if multiple:
        value = math.ceil(value / multiple) * multiple
    return value


def _string(schema: dict[str, Any]) -> str:
    value = _FORMAT_SAMPLES.get(schema.get("format", ""), "sample")
    minimum = int(schema.get("minLength", 0))
    maximum = schema.get("maxLength")
    if len(value) < minimum:
        value = value + "x" * (minimum - len(value))
    if maximum is not None and len(value) > int(maximum):
        value = value[: int(maximum)]
    return value
