"""Extra assertion kinds evaluated against a captured response."""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Optional
import xml.etree.ElementTree as ET

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, UnknownType

from execution_orchestrator.models import CapturedResponse
from scenario_generator.models import AssertionKind, AssertionSpec

from .json_diff import diff_json
from .models import Mismatch, Strictness
from .xml_diff import text_equal

_PATH_TOKEN = re.compile(r"\.([^.\[\]]+)|\[(\d+)\]|\['([^']*)'\]|\[\"([^\"]*)\"\]")
_MISSING = object()


def resolve_json_path(document: Any, expression: str) -> Any:
    """Resolve a dotted JSONPath subset (``$.a.b[0]['c']``); returns a sentinel when absent."""

    text = expression.strip()
    if text.startswith("$"):
        text = text[1:]
    elif text and not text.startswith((".", "[")):
        text = f".{text}"
    position = 0
    current = document
    while position < len(text):
        match = _PATH_TOKEN.match(text, position)
        if match is None:
            raise ValueError(f"Unsupported JSON path '{expression}'")
        position = match.end()
        name, index, quoted, double_quoted = match.groups()
        if index is not None:
            if not isinstance(current, list) or int(index) >= len(current):
                return _MISSING
            current = current[int(index)]
            continue
        key = name if name is not None else (quoted if quoted is not None else double_quoted)
        if not isinstance(current, dict) or key not in current:
            return _MISSING
        current = current[key]
    return current


def _xpath(root: ET.Element, expression: str) -> list[ET.Element]:
    path = expression.strip()
    if path.startswith("/"):
        path = f".{path}"
    try:
        return root.findall(path)
    except SyntaxError as exc:
        raise ValueError(f"Unsupported XPath '{expression}': {exc}") from exc


class AssertionEvaluator:
    """Evaluates ``AssertionSpec`` entries; each failed check yields one mismatch."""

    def __init__(self, response: CapturedResponse, strictness: Strictness = Strictness.LENIENT) -> None:
        self.response = response
        self.strictness = strictness
        self._json: Any = _MISSING
        self._xml: Optional[ET.Element] = None
        self._handlers: dict[AssertionKind, Callable[[AssertionSpec], Optional[Mismatch]]] = {
            AssertionKind.HEADER_EQUALS: self._header_equals,
            AssertionKind.BODY_CONTAINS: self._body_contains,
            AssertionKind.REGEX_MATCH: self._regex_match,
            AssertionKind.RESPONSE_TIME_BELOW: self._response_time_below,
            AssertionKind.JSON_PATH_EXISTS: self._json_path_exists,
            AssertionKind.JSON_PATH_EQUALS: self._json_path_equals,
            AssertionKind.XPATH_EXISTS: self._xpath_exists,
            AssertionKind.XPATH_EQUALS: self._xpath_equals,
            AssertionKind.JSON_SCHEMA_VALID: self._json_schema_valid,
        }

    def evaluate(self, assertions: list[AssertionSpec]) -> list[Mismatch]:
        mismatches: list[Mismatch] = []
        for spec in assertions:
            try:
                mismatch = self._handlers[spec.kind](spec)
            except ValueError as exc:
                mismatch = Mismatch(path=self._label(spec), expected=spec.expected, message=str(exc))
            if mismatch is not None:
                mismatches.append(mismatch)
        return mismatches

    @staticmethod
    def _label(spec: AssertionSpec) -> str:
        return f"{spec.kind.value}({spec.target})" if spec.target else spec.kind.value

    def _document(self) -> Any:
        if self._json is _MISSING:
            try:
                self._json = json.loads(self.response.body)
            except json.JSONDecodeError as exc:
                raise ValueError(f"response body is not valid JSON: {exc.msg}") from exc
        return self._json

    def _tree(self) -> ET.Element:
        if self._xml is None:
            try:
                self._xml = ET.fromstring(self.response.body)
            except ET.ParseError as exc:
                raise ValueError(f"response body is not valid XML: {exc}") from exc
        return self._xml

    def _header_equals(self, spec: AssertionSpec) -> Optional[Mismatch]:
        actual = self.response.header(spec.target or "")
        if actual is None or actual != str(spec.expected):
            return Mismatch(path=self._label(spec), expected=spec.expected, actual=actual, message="header differs")
        return None

    def _body_contains(self, spec: AssertionSpec) -> Optional[Mismatch]:
        if str(spec.expected) not in self.response.body:
            return Mismatch(path=self._label(spec), expected=spec.expected, message="body does not contain text")
        return None

    def _regex_match(self, spec: AssertionSpec) -> Optional[Mismatch]:
        subject = self.response.body if not spec.target else self.response.header(spec.target) or ""
        try:
            matched = re.search(str(spec.expected), subject) is not None
        except re.error as exc:
            raise ValueError(f"invalid pattern: {exc}") from exc
        if not matched:
            return Mismatch(path=self._label(spec), expected=spec.expected, message="pattern not found")
        return None

    def _response_time_below(self, spec: AssertionSpec) -> Optional[Mismatch]:
        try:
            threshold = float(spec.expected)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"threshold must be a number, got {spec.expected!r}") from exc
        if self.response.elapsed_ms >= threshold:
            return Mismatch(
                path=self._label(spec),
                expected=threshold,
                actual=self.response.elapsed_ms,
                message="response time threshold exceeded",
            )
        return None

    def _json_path_exists(self, spec: AssertionSpec) -> Optional[Mismatch]:
        if resolve_json_path(self._document(), spec.target or "$") is _MISSING:
            return Mismatch(path=self._label(spec), message="path not found")
        return None

    def _json_path_equals(self, spec: AssertionSpec) -> Optional[Mismatch]:
        target = spec.target or "$"
        actual = resolve_json_path(self._document(), target)
        if actual is _MISSING:
            return Mismatch(path=self._label(spec), expected=spec.expected, message="path not found")
        differences = diff_json(spec.expected, actual, self.strictness, target if target.startswith("$") else f"$.{target}")
        if differences:
            return Mismatch(path=self._label(spec), expected=spec.expected, actual=actual, message=differences[0].message)
        return None

    def _xpath_exists(self, spec: AssertionSpec) -> Optional[Mismatch]:
        if not _xpath(self._tree(), spec.target or "."):
            return Mismatch(path=self._label(spec), message="no element matched")
        return None

    def _xpath_equals(self, spec: AssertionSpec) -> Optional[Mismatch]:
        nodes = _xpath(self._tree(), spec.target or ".")
        if not nodes:
            return Mismatch(path=self._label(spec), expected=spec.expected, message="no element matched")
        actual = (nodes[0].text or "").strip()
        expected = "" if spec.expected is None else str(spec.expected)
        if isinstance(spec.expected, bool):
            expected = "true" if spec.expected else "false"
        if not text_equal(expected, actual):
            return Mismatch(path=self._label(spec), expected=spec.expected, actual=actual, message="text differs")
        return None

    def _json_schema_valid(self, spec: AssertionSpec) -> Optional[Mismatch]:
        schema = spec.expected
        if not isinstance(schema, dict):
            raise ValueError(f"expected a JSON Schema object, got {type(schema).__name__}")
        target = spec.target or "$"
        subject = resolve_json_path(self._document(), target)
        if subject is _MISSING:
            return Mismatch(path=self._label(spec), message="path not found")
        try:
            validator = Draft202012Validator(schema)
            errors = sorted(
                validator.iter_errors(subject), key=lambda error: [str(part) for part in error.absolute_path]
            )
        except (re.error, SchemaError, UnknownType) as exc:
            raise ValueError(f"schema cannot be evaluated: {exc}") from exc
        if not errors:
            return None
        first = errors[0]
        location = (target if target.startswith("$") else f"$.{target}") + "".join(
            f"[{part}]" if isinstance(part, int) else f".{part}" for part in first.absolute_path
        )
        return Mismatch(
            path=self._label(spec),
            actual=location,
            message=f"{first.message} ({len(errors)} violation{'s' if len(errors) > 1 else ''})",
        )
