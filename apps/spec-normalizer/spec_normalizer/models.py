"""Pydantic models for the canonical API model."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ProtocolKind(str, Enum):
    """The two protocol families understood by the pipeline."""

    REST = "rest"
    SOAP = "soap"


class BodyEncoding(str, Enum):
    NONE = "none"
    JSON = "json"
    FORM = "form"
    TEXT = "text"
    XML = "xml"


class OperationBinding(BaseModel):
    """Everything needed to address an operation on the wire."""

    model_config = ConfigDict(frozen=True)

    protocol: ProtocolKind
    method: str = "POST"
    path: str | None = None
    endpoint: str | None = None
    body_encoding: BodyEncoding = BodyEncoding.NONE
    soap_action: str | None = None
    soap_version: str | None = None
    namespace: str | None = None
    request_element: str | None = None
    response_element: str | None = None
    qualified_children: bool = False


class Operation(BaseModel):
    """Represents a single callable unit extracted from an input specification."""

    model_config = ConfigDict(frozen=True)

    identifier: str
    summary: str | None = None
    binding: OperationBinding
    input_schema: dict[str, Any] = Field(default_factory=dict)
    output_schema: dict[str, Any] = Field(default_factory=dict)
    success_codes: list[int] = Field(default_factory=lambda: [200])
    error_responses: dict[str, dict[str, Any] | None] = Field(default_factory=dict)

    @property
    def label(self) -> str:
        if self.binding.protocol is ProtocolKind.SOAP:
            return f"SOAP {self.identifier}"
        return f"{self.binding.method} {self.binding.path}"

    def declared_client_errors(self) -> list[int]:
        codes = []
        for key in self.error_responses:
            if key.isdigit() and 400 <= int(key) < 500:
                codes.append(int(key))
        return sorted(codes)


class ApiModel(BaseModel):
    """Normalized, immutable representation of one ingested specification."""

    model_config = ConfigDict(frozen=True)

    protocol: ProtocolKind
    title: str
    version: str = "0"
    base_url: str | None = None
    source_digest: str | None = None
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    operations: list[Operation] = Field(default_factory=list)
    schemas: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _unique_identifiers(self) -> "ApiModel":
        seen: set[str] = set()
        for operation in self.operations:
            if operation.identifier in seen:
                raise ValueError(f"Duplicate operation identifier '{operation.identifier}'")
            seen.add(operation.identifier)
        return self

    @property
    def spec_id(self) -> str:
        slug = re.sub(r"[^a-zA-Z0-9]+", "-", self.title).strip("-").lower() or "spec"
        return f"{slug}-{self.source_digest}" if self.source_digest else slug

    def operation(self, identifier: str) -> Operation:
        for candidate in self.operations:
            if candidate.identifier == identifier:
                return candidate
        raise KeyError(identifier)

    def as_serializable(self) -> dict[str, Any]:
        """Return a JSON-serializable dictionary."""

        return self.model_dump(mode="json")


@dataclass
class SpecContents:
    """What a protocol variant extracts from a parsed document."""

    title: str
    version: str
    base_url: str | None
    operations: list[Operation] = field(default_factory=list)
    schemas: dict[str, dict[str, Any]] = field(default_factory=dict)


def iter_refs(node: Any, pointer: str = "#") -> Iterator[tuple[str, str]]:
    """Yield ``(location, target)`` for every ``$ref`` found under ``node``."""

    if isinstance(node, dict):
        ref = node.get("$ref")
        if isinstance(ref, str):
            yield pointer, ref
        for key, value in node.items():
            yield from iter_refs(value, f"{pointer}/{key}")
    elif isinstance(node, list):
        for index, value in enumerate(node):
            yield from iter_refs(value, f"{pointer}/{index}")


def dangling_references(model: ApiModel) -> list[str]:
    """List every schema reference that does not resolve inside its own schema root."""

    problems: list[str] = []
    roots: list[tuple[str, dict[str, Any]]] = []
    for operation in model.operations:
        roots.append((f"{operation.identifier}.input", operation.input_schema))
        roots.append((f"{operation.identifier}.output", operation.output_schema))
        for code, schema in operation.error_responses.items():
            if schema is not None:
                roots.append((f"{operation.identifier}.error[{code}]", schema))
    for name, schema in model.schemas.items():
        roots.append((f"schemas.{name}", schema))

    for label, root in roots:
        definitions = root.get("$defs", {}) if isinstance(root, dict) else {}
        for location, target in iter_refs(root):
            if not target.startswith("#/$defs/") or target[len("#/$defs/"):] not in definitions:
                problems.append(f"{label}{location[1:]} -> {target}")
    return problems
