"""OpenAPI 3.x / Swagger 2.0 variant of the protocol capability set."""

from __future__ import annotations

import re
from typing import Any

import yaml

from .errors import MalformedSpecError, UnsupportedFeatureError
from .models import BodyEncoding, Operation, OperationBinding, ProtocolKind, SpecContents
from .schemas import SchemaInliner, hoist_definitions, object_schema

HTTP_METHODS = ("get", "put", "post", "delete", "patch", "head", "options", "trace")

# Swagger 2.0 keeps schema keywords directly on non-body parameters.
_SWAGGER_PARAM_KEYWORDS = (
    "type",
    "format",
    "items",
    "enum",
    "default",
    "minimum",
    "maximum",
    "exclusiveMinimum",
    "exclusiveMaximum",
    "minLength",
    "maxLength",
    "pattern",
    "minItems",
    "maxItems",
    "uniqueItems",
    "multipleOf",
)
_SERVER_VARIABLE = re.compile(r"\{([^}]+)\}")


def parse_openapi(raw: bytes) -> dict[str, Any]:
    """Load an OpenAPI/Swagger document from JSON or YAML bytes."""

    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise MalformedSpecError(f"Specification is not valid UTF-8: {exc}") from exc
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise MalformedSpecError(f"Specification is not valid JSON/YAML: {exc}") from exc
    if not isinstance(document, dict):
        raise MalformedSpecError("Expected OpenAPI/Swagger document to be an object")
    raw_version = document.get("openapi") or document.get("swagger")
    if raw_version is None:
        raise MalformedSpecError("YAML/JSON file is not an OpenAPI/Swagger document")
    version = str(raw_version)
    if not (version.startswith("3.") or version.startswith("2.")):
        raise UnsupportedFeatureError(f"Unsupported OpenAPI version: {version}")
    if not isinstance(document.get("paths") or {}, dict):
        raise MalformedSpecError("'paths' must be a mapping")
    return document


def extract_openapi_operations(document: dict[str, Any]) -> SpecContents:
    return _OpenApiExtractor(document).extract()


def _mapping(value: Any, where: str, *, optional: bool = True) -> dict[str, Any]:
    """Return ``value`` if it is a mapping; an absent optional section reads as empty."""

    if value is None and optional:
        return {}
    if not isinstance(value, dict):
        raise MalformedSpecError(f"{where} must be a mapping, got {type(value).__name__}")
    return value


def rest_fault(status_code: int, body: str) -> str | None:
    """REST has no fault envelope: an error status is the fault."""

    return str(status_code) if status_code >= 400 else None


class _OpenApiExtractor:
    def __init__(self, document: dict[str, Any]) -> None:
        self.document = document
        self.swagger = "swagger" in document
        self.inliner = SchemaInliner(document)

    def extract(self) -> SpecContents:
        info = _mapping(self.document.get("info"), "'info'")
        operations: list[Operation] = []
        seen: set[str] = set()

        for raw_path, path_item in (self.document.get("paths") or {}).items():
            if not isinstance(path_item, dict):
                continue
            if "$ref" in path_item:
                path_item = _mapping(self.inliner.lookup(path_item["$ref"]), path_item["$ref"], optional=False)
            for method in HTTP_METHODS:
                entry = path_item.get(method)
                if not isinstance(entry, dict):
                    continue
                operation = self._operation(str(raw_path), method, path_item, entry)
                if operation.identifier in seen:
                    raise MalformedSpecError(f"Duplicate operation identifier '{operation.identifier}'")
                seen.add(operation.identifier)
                operations.append(operation)

        return SpecContents(
            title=str(info.get("title") or "API"),
            version=str(info.get("version", "0")),
            base_url=self._base_url(),
            operations=operations,
            schemas=self._component_schemas(),
        )

    def _operation(
        self,
        path: str,
        method: str,
        path_item: dict[str, Any],
        entry: dict[str, Any],
    ) -> Operation:
        sections: dict[str, dict[str, Any]] = {"path": {}, "query": {}, "headers": {}}
        required: dict[str, list[str]] = {"path": [], "query": [], "headers": []}
        body_schema: dict[str, Any] | None = None
        body_required = False
        encoding = BodyEncoding.NONE
        form_fields: dict[str, Any] = {}
        form_required: list[str] = []

        for param in self._parameters(path_item, entry):
            location = param["in"]
            name = str(param["name"])
            if location == "body":
                body_schema = self.inliner.inline(param.get("schema") or {})
                body_required = bool(param.get("required"))
                encoding = BodyEncoding.JSON
                continue
            if location == "formData":
                if param.get("type") == "file":
                    raise UnsupportedFeatureError(f"File upload parameter '{name}' is not supported")
                form_fields[name] = self._parameter_schema(param)
                if param.get("required"):
                    form_required.append(name)
                continue
            if location == "cookie":
                if param.get("required"):
                    raise UnsupportedFeatureError(f"Required cookie parameter '{name}' is not supported")
                continue
            section = {"path": "path", "query": "query", "header": "headers"}.get(location)
            if section is None:
                raise MalformedSpecError(f"Unknown parameter location '{location}' for '{name}'")
            sections[section][name] = self._parameter_schema(param)
            if location == "path" or param.get("required"):
                required[section].append(name)

        if form_fields:
            body_schema = object_schema(form_fields, form_required)
            body_required = bool(form_required)
            encoding = BodyEncoding.FORM

        where = f"{method.upper()} {path}"
        if "requestBody" in entry:
            raw_body = _mapping(entry["requestBody"], f"requestBody of {where}", optional=False)
            body_schema, body_required, encoding = self._request_body(raw_body)

        properties: dict[str, Any] = {
            section: object_schema(props, required[section], additional=(section != "path"))
            for section, props in sections.items()
        }
        top_required = [section for section in sections if required[section]]
        if body_schema is not None:
            properties["body"] = body_schema
            if body_required:
                top_required.append("body")

        success_codes, output_schema, errors = self._responses(
            _mapping(entry.get("responses"), f"responses of {where}")
        )
        identifier = entry.get("operationId") or f"{method.upper()} {path}"

        return Operation(
            identifier=str(identifier),
            summary=entry.get("summary") or entry.get("description"),
            binding=OperationBinding(
                protocol=ProtocolKind.REST,
                method=method.upper(),
                path=path,
                body_encoding=encoding,
            ),
            input_schema=hoist_definitions(object_schema(properties, top_required, additional=False)),
            output_schema=output_schema,
            success_codes=success_codes,
            error_responses=errors,
        )

    def _parameters(self, path_item: dict[str, Any], entry: dict[str, Any]) -> list[dict[str, Any]]:
        merged: dict[tuple[str, str], dict[str, Any]] = {}
        for raw in list(path_item.get("parameters") or []) + list(entry.get("parameters") or []):
            param = self.inliner.lookup(raw["$ref"]) if isinstance(raw, dict) and "$ref" in raw else raw
            if not isinstance(param, dict) or "name" not in param or "in" not in param:
                raise MalformedSpecError(f"Invalid parameter definition: {raw!r}")
            merged[(str(param["in"]), str(param["name"]))] = param
        return list(merged.values())

    def _parameter_schema(self, param: dict[str, Any]) -> dict[str, Any]:
        if "schema" in param:
            return self.inliner.inline(param["schema"])
        if "content" in param:
            for media_type, media in _mapping(param["content"], f"content of '{param['name']}'").items():
                return self.inliner.inline(_mapping(media, f"media type '{media_type}'").get("schema") or {})
        keywords = {key: param[key] for key in _SWAGGER_PARAM_KEYWORDS if key in param}
        return self.inliner.inline(keywords)

    def _request_body(self, raw: dict[str, Any]) -> tuple[dict[str, Any] | None, bool, BodyEncoding]:
        body = _mapping(self.inliner.lookup(raw["$ref"]), raw["$ref"], optional=False) if "$ref" in raw else raw
        content = _mapping(body.get("content"), "requestBody content")
        required = bool(body.get("required"))
        if not content:
            return None, False, BodyEncoding.NONE

        by_kind: dict[BodyEncoding, dict[str, Any]] = {}
        for media_type, media in content.items():
            media_type = str(media_type).lower()
            schema = _mapping(media, f"media type '{media_type}'").get("schema") or {}
            if "json" in media_type or media_type == "*/*":
                by_kind.setdefault(BodyEncoding.JSON, schema)
            elif media_type == "application/x-www-form-urlencoded":
                by_kind.setdefault(BodyEncoding.FORM, schema)
            elif media_type.startswith("text/") or media_type == "application/octet-stream":
                by_kind.setdefault(BodyEncoding.TEXT, {"type": "string"})
        for kind in (BodyEncoding.JSON, BodyEncoding.FORM, BodyEncoding.TEXT):
            if kind in by_kind:
                return self.inliner.inline(by_kind[kind]), required, kind
        raise UnsupportedFeatureError(
            f"Request body media types {sorted(content)} are not supported"
        )

    def _responses(
        self, responses: dict[Any, Any]
    ) -> tuple[list[int], dict[str, Any], dict[str, dict[str, Any] | None]]:
        success: dict[int, dict[str, Any] | None] = {}
        errors: dict[str, dict[str, Any] | None] = {}
        for raw_code, raw_response in responses.items():
            code = str(raw_code)
            response = _mapping(raw_response, f"response '{code}'")
            if "$ref" in response:
                response = _mapping(self.inliner.lookup(response["$ref"]), response["$ref"], optional=False)
            schema = self._response_schema(response)
            if code.isdigit() and 200 <= int(code) < 300:
                success[int(code)] = schema
            elif code.upper() == "2XX":
                success.setdefault(200, schema)
            else:
                errors[code] = schema

        if not success:
            return [200], {}, errors
        codes = sorted(success)
        return codes, success[codes[0]] or {}, errors

    def _response_schema(self, response: dict[str, Any]) -> dict[str, Any] | None:
        if self.swagger:
            schema = response.get("schema")
            return self.inliner.inline(schema) if isinstance(schema, dict) else None
        for media_type, media in _mapping(response.get("content"), "response content").items():
            if "json" in str(media_type).lower() or media_type == "*/*":
                schema = _mapping(media, f"media type '{media_type}'").get("schema")
                return self.inliner.inline(schema) if isinstance(schema, dict) else None
        return None

    def _component_schemas(self) -> dict[str, dict[str, Any]]:
        if self.swagger:
            names, prefix = self.document.get("definitions") or {}, "#/definitions/"
        else:
            names = _mapping(_mapping(self.document.get("components"), "'components'").get("schemas"), "schemas")
            prefix = "#/components/schemas/"
        return {
            str(name): self.inliner.inline({"$ref": prefix + str(name).replace("~", "~0").replace("/", "~1")})
            for name in names
        }

    def _base_url(self) -> str | None:
        if self.swagger:
            host = self.document.get("host")
            base_path = self.document.get("basePath") or ""
            if not host:
                return base_path or None
            scheme = (self.document.get("schemes") or ["http"])[0]
            return f"{scheme}://{host}{base_path}"
        servers = self.document.get("servers") or []
        if not servers or not isinstance(servers[0], dict) or not servers[0].get("url"):
            return None
        server = servers[0]
        variables = _mapping(server.get("variables"), "server variables")

        def _substitute(match: re.Match[str]) -> str:
            variable = _mapping(variables.get(match.group(1)), f"server variable '{match.group(1)}'")
            return str(variable.get("default", ""))

        return _SERVER_VARIABLE.sub(_substitute, str(server["url"]))
