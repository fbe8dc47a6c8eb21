"""Helpers for turning API specifications into ApiModel objects."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping

from .errors import MalformedSpecError, UnsupportedFeatureError
from .models import ApiModel, ProtocolKind, SpecContents, dangling_references
from .openapi import extract_openapi_operations, parse_openapi, rest_fault
from .wsdl import extract_wsdl_operations, parse_wsdl, soap_fault


@dataclass(frozen=True)
class ProtocolCapabilities:
    """What the pipeline needs from a protocol: parse, extract operations, read faults."""

    kind: ProtocolKind
    parse: Callable[[bytes], Any]
    extract_operations: Callable[[Any], SpecContents]
    serialize_fault: Callable[[int, str], str | None]


CAPABILITIES: Mapping[ProtocolKind, ProtocolCapabilities] = MappingProxyType(
    {
        ProtocolKind.REST: ProtocolCapabilities(
            kind=ProtocolKind.REST,
            parse=parse_openapi,
            extract_operations=extract_openapi_operations,
            serialize_fault=rest_fault,
        ),
        ProtocolKind.SOAP: ProtocolCapabilities(
            kind=ProtocolKind.SOAP,
            parse=parse_wsdl,
            extract_operations=extract_wsdl_operations,
            serialize_fault=soap_fault,
        ),
    }
)


def capabilities(kind: ProtocolKind | str) -> ProtocolCapabilities:
    return CAPABILITIES[ProtocolKind(kind)]


def normalize(raw: bytes, kind: ProtocolKind | str, *, title_override: str | None = None) -> ApiModel:
    """Normalize raw specification bytes into an immutable ApiModel."""

    if not raw or not raw.strip():
        raise MalformedSpecError("Specification document is empty")
    capability = capabilities(kind)
    document = capability.parse(raw)
    contents = capability.extract_operations(document)

    model = ApiModel(
        protocol=capability.kind,
        title=title_override or contents.title,
        version=contents.version,
        base_url=contents.base_url,
        source_digest=hashlib.sha256(raw).hexdigest()[:16],
        operations=contents.operations,
        schemas=contents.schemas,
    )
    dangling = dangling_references(model)
    if dangling:
        raise UnsupportedFeatureError(f"Unresolved schema references: {', '.join(dangling[:5])}")
    return model


def detect_kind(spec_path: Path) -> ProtocolKind:
    suffix = spec_path.suffix.lower()
    if suffix in {".json", ".yaml", ".yml"}:
        return ProtocolKind.REST
    if suffix in {".wsdl", ".xml"}:
        return ProtocolKind.SOAP
    raise UnsupportedFeatureError(f"Unsupported specification format: {suffix}")


def normalize_spec(
    spec_path: Path,
    *,
    kind: ProtocolKind | str | None = None,
    title_override: str | None = None,
) -> ApiModel:
    """Normalize a supported contract file into an ApiModel object."""

    resolved_kind = ProtocolKind(kind) if kind else detect_kind(spec_path)
    return normalize(spec_path.read_bytes(), resolved_kind, title_override=title_override)
