"""JSON Schema helpers shared by the REST and SOAP normalizers."""

from __future__ import annotations

import re
from typing import Any, Callable

from .errors import UnsupportedFeatureError

_NAME_CLEANUP = re.compile(r"[^A-Za-z0-9_.-]+")


def decode_pointer(ref: str) -> list[str]:
    """Split a local JSON pointer (``#/a/b``) into unescaped segments."""

    fragment = ref[1:] if ref.startswith("#") else ref
    if not fragment:
        return []
    return [part.replace("~1", "/").replace("~0", "~") for part in fragment.lstrip("/").split("/")]


class SchemaInliner:
    """Inlines local ``$ref`` pointers of one source document.

    Recursive definitions cannot be inlined, so they are indexed under the
    ``$defs`` of the schema being produced and referenced as ``#/$defs/<name>``.
    The result never points back into the source document.
    """

    def __init__(
        self,
        document: dict[str, Any],
        *,
        transform: Callable[[dict[str, Any]], dict[str, Any]] | None = None,
    ) -> None:
        self._document = document
        self._transform = transform or upgrade_openapi_keywords

    def inline(self, node: Any) -> dict[str, Any]:
        names: dict[str, str] = {}
        definitions: dict[str, Any] = {}
        resolved = self._walk(node, (), names, definitions)
        if not isinstance(resolved, dict):
            raise UnsupportedFeatureError("Schema must be an object")
        if definitions:
            resolved = {**resolved, "$defs": {**resolved.get("$defs", {}), **definitions}}
        return resolved

    def lookup(self, ref: str) -> Any:
        if not ref.startswith("#"):
            raise UnsupportedFeatureError(f"External reference '{ref}' is not supported")
        node: Any = self._document
        for segment in decode_pointer(ref):
            if isinstance(node, dict) and segment in node:
                node = node[segment]
            elif isinstance(node, list) and segment.isdigit() and int(segment) < len(node):
                node = node[int(segment)]
            else:
                raise UnsupportedFeatureError(f"Unresolvable reference '{ref}'")
        return node

    def _walk(
        self,
        node: Any,
        stack: tuple[str, ...],
        names: dict[str, str],
        definitions: dict[str, Any],
    ) -> Any:
        if isinstance(node, list):
            return [self._walk(item, stack, names, definitions) for item in node]
        if not isinstance(node, dict):
            return node

        ref = node.get("$ref")
        if isinstance(ref, str):
            if ref in stack:
                name = self._definition_name(ref, names)
                if name not in definitions:
                    definitions[name] = {}
                    definitions[name] = self._walk(self.lookup(ref), (ref,), names, definitions)
                return {"$ref": f"#/$defs/{name}"}
            resolved = self._walk(self.lookup(ref), stack + (ref,), names, definitions)
            siblings = {key: value for key, value in node.items() if key != "$ref"}
            if siblings and isinstance(resolved, dict):
                resolved = {**resolved, **self._walk(siblings, stack, names, definitions)}
            return resolved

        walked = {key: self._walk(value, stack, names, definitions) for key, value in node.items()}
        return self._transform(walked)

    @staticmethod
    def _definition_name(ref: str, names: dict[str, str]) -> str:
        if ref in names:
            return names[ref]
        segments = decode_pointer(ref)
        base = _NAME_CLEANUP.sub("_", segments[-1] if segments else "root") or "root"
        name = base
        counter = 2
        taken = set(names.values())
        while name in taken:
            name = f"{base}_{counter}"
            counter += 1
        names[ref] = name
        return name


def upgrade_openapi_keywords(schema: dict[str, Any]) -> dict[str, Any]:
    """Rewrite OpenAPI 3.0 / Swagger schema keywords into JSON Schema 2020-12 form."""

    result = dict(schema)
    if result.get("nullable") is True:
        result.pop("nullable")
        kind = result.get("type")
        if isinstance(kind, str):
            result["type"] = [kind, "null"]
    elif result.get("nullable") is False:
        result.pop("nullable")

    for flag, bound in (("exclusiveMinimum", "minimum"), ("exclusiveMaximum", "maximum")):
        value = result.get(flag)
        if value is True and bound in result:
            result[flag] = result.pop(bound)
        elif isinstance(value, bool):
            result.pop(flag)
    return result


def hoist_definitions(schema: dict[str, Any]) -> dict[str, Any]:
    """Move nested ``$defs`` blocks to the root so ``#/$defs/...`` pointers resolve."""

    collected: dict[str, Any] = {}

    def _strip(node: Any) -> Any:
        if isinstance(node, list):
            return [_strip(item) for item in node]
        if not isinstance(node, dict):
            return node
        nested = node.get("$defs")
        if isinstance(nested, dict):
            for name, definition in nested.items():
                collected.setdefault(name, definition)
        return {key: _strip(value) for key, value in node.items() if key != "$defs"}

    stripped = _strip(schema)
    # definitions may themselves carry nested blocks
    pending = dict(collected)
    while pending:
        name, definition = pending.popitem()
        before = set(collected)
        collected[name] = _strip(definition)
        for added in set(collected) - before:
            pending[added] = collected[added]
    if collected:
        stripped["$defs"] = collected
    return stripped


def object_schema(
    properties: dict[str, Any],
    required: list[str] | None = None,
    *,
    additional: bool = True,
) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = sorted(set(required))
    if not additional:
        schema["additionalProperties"] = False
    return schema
