"""Turns a scenario into a concrete HTTP or SOAP request."""

from __future__ import annotations

import base64
import json
import re
from dataclasses import dataclass, field
from string import Template
from typing import Any
from urllib.parse import quote, urlencode
import xml.etree.ElementTree as ET

from spec_normalizer.models import BodyEncoding, ProtocolKind
from scenario_generator.models import Scenario

from .models import TargetConfig

SOAP11_ENVELOPE_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SOAP12_ENVELOPE_NS = "http://www.w3.org/2003/05/soap-envelope"
_PATH_PARAMETER = re.compile(r"\{([^}]+)\}")

ET.register_namespace("soap", SOAP11_ENVELOPE_NS)
ET.register_namespace("env", SOAP12_ENVELOPE_NS)


class RequestBuildError(RuntimeError):
    """The scenario cannot be turned into a request (no retry will fix it)."""


@dataclass
class PreparedRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    content: bytes | None = None


def build_request(scenario: Scenario, target: TargetConfig) -> PreparedRequest:
    if scenario.binding.protocol is ProtocolKind.SOAP:
        return _soap_request(scenario, target)
    return _rest_request(scenario, target)


def _render(value: Any, variables: dict[str, str]) -> Any:
    if isinstance(value, str):
        return Template(value).safe_substitute(variables)
    if isinstance(value, list):
        return [_render(item, variables) for item in value]
    if isinstance(value, dict):
        return {key: _render(item, variables) for key, item in value.items()}
    return value


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _base_url(scenario: Scenario, target: TargetConfig) -> str:
    base_url = target.base_url or scenario.binding.endpoint
    if not base_url:
        raise RequestBuildError(f"No base URL configured for operation '{scenario.operation_id}'")
    return base_url.rstrip("/")


def _common_headers(scenario: Scenario, target: TargetConfig) -> dict[str, str]:
    variables = target.variables
    headers = {key: _render(value, variables) for key, value in target.headers.items()}
    auth = target.auth
    if auth is not None and auth.kind == "basic":
        token = base64.b64encode(f"{auth.username}:{auth.password or ''}".encode("utf-8")).decode("ascii")
        headers["Authorization"] = f"Basic {token}"
    elif auth is not None and auth.kind == "bearer":
        headers["Authorization"] = f"Bearer {_render(auth.token, variables)}"
    raw_headers = scenario.input.get("headers")
    if isinstance(raw_headers, dict):
        for key, value in raw_headers.items():
            headers[str(key)] = _render(_scalar_text(value), variables)
    return headers


def _rest_request(scenario: Scenario, target: TargetConfig) -> PreparedRequest:
    binding = scenario.binding
    variables = target.variables
    path_values = scenario.input.get("path") or {}
    if not isinstance(path_values, dict):
        raise RequestBuildError("'path' section must be an object")

    def _substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in path_values:
            raise RequestBuildError(f"Missing path parameter '{name}'")
        return quote(_render(_scalar_text(path_values[name]), variables), safe="")

    path = _PATH_PARAMETER.sub(_substitute, _render(binding.path or "/", variables))
    if not path.startswith("/"):
        path = f"/{path}"

    query = scenario.input.get("query") or {}
    params: dict[str, Any] = {}
    if isinstance(query, dict):
        for key, value in query.items():
            if isinstance(value, list):
                params[str(key)] = [_scalar_text(item) for item in value]
            else:
                params[str(key)] = _scalar_text(value)

    headers = {"Accept": "application/json"}
    headers.update(_common_headers(scenario, target))
    content = None
    if "body" in scenario.input:
        body = _render(scenario.input["body"], variables)
        encoding = binding.body_encoding
        if encoding is BodyEncoding.FORM and isinstance(body, dict):
            content = urlencode({key: _scalar_text(value) for key, value in body.items()}).encode("utf-8")
            headers.setdefault("Content-Type", "application/x-www-form-urlencoded")
        elif encoding is BodyEncoding.TEXT and isinstance(body, str):
            content = body.encode("utf-8")
            headers.setdefault("Content-Type", "text/plain; charset=utf-8")
        else:
            content = json.dumps(body, ensure_ascii=False).encode("utf-8")
            headers.setdefault("Content-Type", "application/json")

    return PreparedRequest(
        method=binding.method.upper(),
        url=f"{_base_url(scenario, target)}{path}",
        headers=headers,
        params=params,
        content=content,
    )


def _soap_request(scenario: Scenario, target: TargetConfig) -> PreparedRequest:
    binding = scenario.binding
    soap12 = binding.soap_version == "1.2"
    envelope_ns = SOAP12_ENVELOPE_NS if soap12 else SOAP11_ENVELOPE_NS
    namespace = binding.namespace or ""
    child_namespace = namespace if binding.qualified_children else ""

    envelope = ET.Element(f"{{{envelope_ns}}}Envelope")
    body = ET.SubElement(envelope, f"{{{envelope_ns}}}Body")
    payload = _render(scenario.input.get("body") or {}, target.variables)
    if not isinstance(payload, dict):
        raise RequestBuildError("SOAP body section must be an object")
    request_element = ET.SubElement(body, qualify(namespace, binding.request_element or scenario.operation_id))
    fill_element(request_element, payload, child_namespace)

    action = binding.soap_action or ""
    headers = _common_headers(scenario, target)
    if soap12:
        content_type = "application/soap+xml; charset=utf-8"
        if action:
            content_type += f'; action="{action}"'
        headers["Content-Type"] = content_type
    else:
        headers["Content-Type"] = "text/xml; charset=utf-8"
        headers["SOAPAction"] = f'"{action}"'

    return PreparedRequest(
        method="POST",
        url=_base_url(scenario, target),
        headers=headers,
        content=ET.tostring(envelope, encoding="utf-8", xml_declaration=True),
    )


def qualify(namespace: str, name: str) -> str:
    return f"{{{namespace}}}{name}" if namespace else name


def fill_element(element: ET.Element, value: Any, namespace: str) -> None:
    """Serialize a dict/list/scalar into ``element``: '@x' attributes, '#text' text."""

    if not isinstance(value, dict):
        element.text = _scalar_text(value)
        return
    for key, item in value.items():
        if key == "#text":
            element.text = _scalar_text(item)
        elif key.startswith("@"):
            element.set(key[1:], _scalar_text(item))
        else:
            for entry in item if isinstance(item, list) else [item]:
                fill_element(ET.SubElement(element, qualify(namespace, key)), entry, namespace)
