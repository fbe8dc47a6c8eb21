"""WSDL 1.1 variant of the protocol capability set.

Inline XSD types are converted to JSON Schema so that SOAP operations share
the same canonical shape as REST ones. Recursive complex types are indexed
under ``$defs`` of the schema being produced.
"""

from __future__ import annotations

import io
import re
from dataclasses import dataclass, field
from typing import Any
import xml.etree.ElementTree as ET

from .errors import MalformedSpecError, UnsupportedFeatureError
from .models import BodyEncoding, Operation, OperationBinding, ProtocolKind, SpecContents
from .schemas import hoist_definitions, object_schema

WSDL_NS = "http://schemas.xmlsoap.org/wsdl/"
WSDL20_NS = "http://www.w3.org/ns/wsdl"
SOAP11_BINDING_NS = "http://schemas.xmlsoap.org/wsdl/soap/"
SOAP12_BINDING_NS = "http://schemas.xmlsoap.org/wsdl/soap12/"
XSD_NS = "http://www.w3.org/2001/XMLSchema"

QName = tuple[str, str]

_INTEGER_TYPES = {
    "int",
    "integer",
    "long",
    "short",
    "byte",
    "nonNegativeInteger",
    "nonPositiveInteger",
    "positiveInteger",
    "negativeInteger",
    "unsignedInt",
    "unsignedLong",
    "unsignedShort",
    "unsignedByte",
}
_NUMBER_TYPES = {"decimal", "float", "double"}
_FORMATTED_STRINGS = {"date": "date", "dateTime": "date-time", "time": "time", "anyURI": "uri"}


def _w(tag: str) -> str:
    return f"{{{WSDL_NS}}}{tag}"


def _xs(tag: str) -> str:
    return f"{{{XSD_NS}}}{tag}"


def local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


@dataclass
class WsdlDocument:
    """Parsed WSDL tree plus the prefixes in scope at every element."""

    root: ET.Element
    scopes: dict[ET.Element, dict[str, str]] = field(default_factory=dict)

    @property
    def target_namespace(self) -> str:
        return self.root.get("targetNamespace", "")

    def resolve(self, value: str, element: ET.Element) -> QName:
        """Resolve a QName attribute value against the prefixes in scope at ``element``."""

        namespaces = self.scopes.get(element, {})
        if ":" in value:
            prefix, local = value.split(":", 1)
            if prefix not in namespaces:
                raise MalformedSpecError(f"Undeclared namespace prefix '{prefix}' in '{value}'")
            return namespaces[prefix], local
        return namespaces.get("", ""), value


def parse_wsdl(raw: bytes) -> WsdlDocument:
    scopes: dict[ET.Element, dict[str, str]] = {}
    stack: list[dict[str, str]] = [{}]
    declared: dict[str, str] = {}
    root: ET.Element | None = None
    try:
        for event, item in ET.iterparse(io.BytesIO(raw), events=("start-ns", "start", "end")):
            if event == "start-ns":
                prefix, uri = item
                declared[prefix] = uri
            elif event == "start":
                scope = {**stack[-1], **declared} if declared else stack[-1]
                declared = {}
                stack.append(scope)
                scopes[item] = scope
                if root is None:
                    root = item
            else:
                stack.pop()
    except ET.ParseError as exc:
        raise MalformedSpecError(f"WSDL is not well-formed XML: {exc}") from exc
    if root is None:
        raise MalformedSpecError("WSDL document is empty")
    if root.tag == f"{{{WSDL20_NS}}}description":
        raise UnsupportedFeatureError("WSDL 2.0 documents are not supported")
    if root.tag != _w("definitions"):
        raise MalformedSpecError(f"Expected wsdl:definitions root element, found '{local_name(root.tag)}'")
    if root.find(_w("import")) is not None:
        raise UnsupportedFeatureError("wsdl:import of external documents is not supported")
    return WsdlDocument(root=root, scopes=scopes)


def soap_fault(status_code: int, body: str) -> str | None:
    """Return the local part of a SOAP 1.1 faultcode or SOAP 1.2 Code/Value."""

    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return str(status_code) if status_code >= 400 else None
    for element in root.iter():
        if local_name(element.tag) != "Fault":
            continue
        for child in element.iter():
            name = local_name(child.tag)
            if name == "faultcode" and child.text:
                return child.text.strip().rsplit(":", 1)[-1]
            if name == "Code":
                value = next((node for node in child if local_name(node.tag) == "Value"), None)
                if value is not None and value.text:
                    return value.text.strip().rsplit(":", 1)[-1]
        return "Fault"
    return None


def extract_wsdl_operations(document: WsdlDocument) -> SpecContents:
    return _WsdlExtractor(document).extract()


@dataclass
class _Binding:
    version: str
    style: str
    actions: dict[str, str] = field(default_factory=dict)
    rpc_namespaces: dict[str, str] = field(default_factory=dict)
    endpoint: str | None = None


class _XsdConverter:
    """Converts the inline XSD of a WSDL document to JSON Schema."""

    def __init__(self, document: WsdlDocument) -> None:
        self.document = document
        self.elements: dict[QName, tuple[ET.Element, str]] = {}
        self.types: dict[QName, tuple[ET.Element, str]] = {}
        self.qualified: dict[str, bool] = {}
        types = document.root.find(_w("types"))
        for schema in types.findall(_xs("schema")) if types is not None else []:
            self._index(schema)

    def _index(self, schema: ET.Element) -> None:
        tns = schema.get("targetNamespace", "")
        self.qualified[tns] = schema.get("elementFormDefault") == "qualified"
        for child in schema:
            tag = local_name(child.tag)
            if tag in {"import", "include", "redefine"} and child.get("schemaLocation"):
                raise UnsupportedFeatureError(
                    f"xsd:{tag} of '{child.get('schemaLocation')}' is not supported"
                )
            name = child.get("name")
            if not name:
                continue
            if child.tag == _xs("element"):
                self.elements[(tns, name)] = (child, tns)
            elif child.tag in {_xs("complexType"), _xs("simpleType")}:
                self.types[(tns, name)] = (child, tns)

    def element_root(self, key: QName) -> dict[str, Any]:
        """Schema for the content of a top-level element."""

        if key not in self.elements:
            raise UnsupportedFeatureError(f"Unknown XSD element '{key[1]}'")
        node, tns = self.elements[key]
        definitions: dict[str, Any] = {}
        schema = self._element_body(node, tns, (), definitions)
        return self._with_definitions(schema, definitions)

    def type_root(self, key: QName) -> dict[str, Any]:
        definitions: dict[str, Any] = {}
        schema = self._type_ref(key, (), definitions)
        return self._with_definitions(schema, definitions)

    @staticmethod
    def _with_definitions(schema: dict[str, Any], definitions: dict[str, Any]) -> dict[str, Any]:
        if definitions:
            return {**schema, "$defs": definitions}
        return schema

    def _element_body(
        self, node: ET.Element, tns: str, stack: tuple[QName, ...], definitions: dict[str, Any]
    ) -> dict[str, Any]:
        type_attr = node.get("type")
        if type_attr:
            schema = self._type_ref(self.document.resolve(type_attr, node), stack, definitions)
        elif (complex_node := node.find(_xs("complexType"))) is not None:
            schema = self._complex(complex_node, tns, stack, definitions)
        elif (simple_node := node.find(_xs("simpleType"))) is not None:
            schema = self._simple(simple_node, stack, definitions)
        else:
            schema = {}
        if node.get("nillable") == "true":
            return {"anyOf": [schema, {"type": "null"}]}
        return schema

    def _type_ref(
        self, key: QName, stack: tuple[QName, ...], definitions: dict[str, Any]
    ) -> dict[str, Any]:
        namespace, local = key
        if namespace == XSD_NS:
            return builtin_schema(local)
        if key not in self.types:
            raise UnsupportedFeatureError(f"Unknown XSD type '{local}'")
        if key in stack:
            if local not in definitions:
                definitions[local] = {}
                definitions[local] = self._named(key, (key,), definitions)
            return {"$ref": f"#/$defs/{local}"}
        return self._named(key, stack + (key,), definitions)

    def _named(self, key: QName, stack: tuple[QName, ...], definitions: dict[str, Any]) -> dict[str, Any]:
        node, tns = self.types[key]
        if node.tag == _xs("complexType"):
            return self._complex(node, tns, stack, definitions)
        return self._simple(node, stack, definitions)

    def _complex(
        self, node: ET.Element, tns: str, stack: tuple[QName, ...], definitions: dict[str, Any]
    ) -> dict[str, Any]:
        properties: dict[str, Any] = {}
        required: list[str] = []
        bases: list[dict[str, Any]] = []
        self._content(node, tns, stack, definitions, properties, required, bases, optional=False)
        schema = object_schema(properties, required)
        for base in bases:
            if "properties" in base and "$ref" not in base:
                schema["properties"] = {**base["properties"], **schema["properties"]}
                merged = sorted(set(base.get("required", [])) | set(schema.get("required", [])))
                if merged:
                    schema["required"] = merged
            else:
                schema = {"allOf": [base, schema]}
        return schema

    def _content(
        self,
        node: ET.Element,
        tns: str,
        stack: tuple[QName, ...],
        definitions: dict[str, Any],
        properties: dict[str, Any],
        required: list[str],
        bases: list[dict[str, Any]],
        *,
        optional: bool,
    ) -> None:
        for child in node:
            tag = local_name(child.tag)
            if child.tag == _xs("element"):
                self._particle(child, tns, stack, definitions, properties, required, optional)
            elif tag in {"sequence", "all"}:
                nested_optional = optional or child.get("minOccurs") == "0"
                self._content(child, tns, stack, definitions, properties, required, bases, optional=nested_optional)
            elif tag == "choice":
                self._content(child, tns, stack, definitions, properties, required, bases, optional=True)
            elif tag == "attribute":
                name = child.get("name") or (child.get("ref") or "").rsplit(":", 1)[-1]
                if not name:
                    continue
                type_attr = child.get("type")
                if type_attr:
                    key = self.document.resolve(type_attr, child)
                    properties[f"@{name}"] = self._type_ref(key, stack, definitions)
                else:
                    simple_node = child.find(_xs("simpleType"))
                    properties[f"@{name}"] = (
                        self._simple(simple_node, stack, definitions) if simple_node is not None else {"type": "string"}
                    )
                if child.get("use") == "required":
                    required.append(f"@{name}")
            elif tag in {"complexContent", "simpleContent"}:
                for derivation in child:
                    if local_name(derivation.tag) not in {"extension", "restriction"}:
                        continue
                    base_attr = derivation.get("base")
                    if base_attr:
                        base = self._type_ref(self.document.resolve(base_attr, derivation), stack, definitions)
                        if tag == "simpleContent":
                            properties["#text"] = base
                        else:
                            bases.append(base)
                    self._content(derivation, tns, stack, definitions, properties, required, bases, optional=optional)
            elif tag == "group":
                raise UnsupportedFeatureError("xsd:group references are not supported")

    def _particle(
        self,
        node: ET.Element,
        tns: str,
        stack: tuple[QName, ...],
        definitions: dict[str, Any],
        properties: dict[str, Any],
        required: list[str],
        optional: bool,
    ) -> None:
        ref = node.get("ref")
        if ref:
            key = self.document.resolve(ref, node)
            if key not in self.elements:
                raise UnsupportedFeatureError(f"Unknown XSD element '{key[1]}'")
            marker = (key[0], f"element:{key[1]}")
            if marker in stack:
                raise UnsupportedFeatureError(f"Recursive element reference '{key[1]}' is not supported")
            target, target_tns = self.elements[key]
            name = key[1]
            schema = self._element_body(target, target_tns, stack + (marker,), definitions)
        else:
            name = node.get("name")
            if not name:
                raise MalformedSpecError("xsd:element without name or ref")
            schema = self._element_body(node, tns, stack, definitions)

        min_occurs = _occurs(node, "minOccurs")
        max_occurs = _occurs(node, "maxOccurs")
        if max_occurs is None or max_occurs > 1:
            schema = {"type": "array", "items": schema}
            if min_occurs:
                schema["minItems"] = min_occurs
            if max_occurs is not None:
                schema["maxItems"] = max_occurs
        properties[name] = schema
        if min_occurs > 0 and not optional:
            required.append(name)

    def _simple(self, node: ET.Element, stack: tuple[QName, ...], definitions: dict[str, Any]) -> dict[str, Any]:
        restriction = node.find(_xs("restriction"))
        if restriction is None:
            # xsd:list and xsd:union carry no structure worth checking
            return {"type": "string"}
        base_attr = restriction.get("base")
        schema: dict[str, Any] = {}
        if base_attr:
            schema = dict(self._type_ref(self.document.resolve(base_attr, restriction), stack, definitions))
        kind = schema.get("type")
        enumeration: list[Any] = []
        patterns: list[str] = []
        for facet in restriction:
            name = local_name(facet.tag)
            value = facet.get("value")
            if value is None:
                continue
            if name == "enumeration":
                enumeration.append(_typed(value, kind))
            elif name in {"minLength", "maxLength"}:
                if not value.strip().isdigit():
                    raise MalformedSpecError(f"xsd:{name} must be a non-negative integer, got '{value}'")
                schema[name] = int(value)
            elif name == "pattern":
                patterns.append(value)
            elif name == "minInclusive":
                schema["minimum"] = _typed(value, kind)
            elif name == "maxInclusive":
                schema["maximum"] = _typed(value, kind)
            elif name == "minExclusive":
                schema["exclusiveMinimum"] = _typed(value, kind)
            elif name == "maxExclusive":
                schema["exclusiveMaximum"] = _typed(value, kind)
        if enumeration:
            schema["enum"] = enumeration
        if patterns:
            translated = xsd_pattern(patterns)
            if translated is not None:
                schema["pattern"] = translated
        return schema


_NAME_START = "A-Za-z_:"
_NAME_CHAR = r".0-9:A-Z_a-z\-"
_CLASS_ESCAPES = {"i": _NAME_START, "c": _NAME_CHAR}


def _occurs(node: ET.Element, attribute: str) -> int | None:
    """``minOccurs``/``maxOccurs`` as an int; ``None`` means unbounded."""

    raw = node.get(attribute, "1").strip()
    if attribute == "maxOccurs" and raw == "unbounded":
        return None
    if not raw.isdigit():
        raise MalformedSpecError(f"xsd:element {attribute} must be a non-negative integer, got '{raw}'")
    return int(raw)


def _translate_pattern(pattern: str) -> str | None:
    """Rewrite one XSD regex into the common ECMA/Python subset, or ``None`` if it has no equivalent.

    XSD has no anchors, so ``^`` and ``$`` are literals there. ``\\i``/``\\c`` name
    classes are expanded; Unicode blocks and class subtraction are not expressible.
    """

    out: list[str] = []
    in_class = False
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if char == "\\" and index + 1 < len(pattern):
            escaped = pattern[index + 1]
            if escaped in "pP":
                return None
            if escaped.lower() in _CLASS_ESCAPES:
                chars = _CLASS_ESCAPES[escaped.lower()]
                if in_class and escaped.isupper():
                    return None
                if in_class:
                    out.append(chars)
                else:
                    out.append(f"[{'^' if escaped.isupper() else ''}{chars}]")
            else:
                out.append(char + escaped)
            index += 2
            continue
        if in_class:
            if char == "-" and pattern[index + 1 : index + 2] == "[":
                return None
            if char == "]":
                in_class = False
        elif char == "[":
            in_class = True
            if pattern[index + 1 : index + 2] == "^":
                out.append("[^")
                index += 2
                continue
        elif char in "^$":
            char = "\\" + char
        out.append(char)
        index += 1
    return "".join(out)


def xsd_pattern(patterns: list[str]) -> str | None:
    """Anchored JSON Schema pattern for the (ORed) pattern facets of one restriction step."""

    translated = [_translate_pattern(pattern) for pattern in patterns]
    if any(part is None for part in translated):
        return None
    combined = "^(?:" + "|".join(f"(?:{part})" for part in translated) + ")$"
    try:
        re.compile(combined)
    except re.error:
        return None
    return combined


def builtin_schema(local: str) -> dict[str, Any]:
    if local in _INTEGER_TYPES:
        return {"type": "integer"}
    if local in _NUMBER_TYPES:
        return {"type": "number"}
    if local == "boolean":
        return {"type": "boolean"}
    if local == "anyType":
        return {}
    if local in _FORMATTED_STRINGS:
        return {"type": "string", "format": _FORMATTED_STRINGS[local]}
    return {"type": "string"}


def _typed(value: str, kind: Any) -> Any:
    try:
        if kind == "integer":
            return int(value)
        if kind == "number":
            return float(value)
    except ValueError:
        raise MalformedSpecError(f"Facet value '{value}' is not a valid {kind}") from None
    return value


class _WsdlExtractor:
    def __init__(self, document: WsdlDocument) -> None:
        self.document = document
        self.root = document.root
        self.xsd = _XsdConverter(document)
        self.messages = {
            (document.target_namespace, message.get("name", "")): message
            for message in self.root.findall(_w("message"))
        }

    def extract(self) -> SpecContents:
        bindings = self._bindings()
        operations: list[Operation] = []
        port_types = self.root.findall(_w("portType"))
        names = [op.get("name", "") for port_type in port_types for op in port_type.findall(_w("operation"))]

        for port_type in port_types:
            port_name = port_type.get("name", "")
            binding = bindings.get((self.document.target_namespace, port_name))
            for op_elem in port_type.findall(_w("operation")):
                name = op_elem.get("name")
                if not name:
                    raise MalformedSpecError(f"Unnamed operation in portType '{port_name}'")
                identifier = name if names.count(name) == 1 else f"{port_name}.{name}"
                operations.append(self._operation(identifier, name, op_elem, binding))

        seen: set[str] = set()
        for operation in operations:
            if operation.identifier in seen:
                raise MalformedSpecError(f"Duplicate operation identifier '{operation.identifier}'")
            seen.add(operation.identifier)

        service = self.root.find(_w("service"))
        title = self.root.get("name") or (service.get("name") if service is not None else None) or "SOAP service"
        endpoints = [binding.endpoint for binding in bindings.values() if binding.endpoint]
        return SpecContents(
            title=title,
            version="1.0",
            base_url=endpoints[0] if endpoints else None,
            operations=operations,
            schemas={key[1]: self.xsd.element_root(key) for key in self.xsd.elements},
        )

    def _bindings(self) -> dict[QName, _Binding]:
        endpoints: dict[QName, str] = {}
        for service in self.root.findall(_w("service")):
            for port in service.findall(_w("port")):
                for child in port:
                    if local_name(child.tag) == "address" and child.get("location") and port.get("binding"):
                        endpoints[self.document.resolve(port.get("binding", ""), port)] = child.get("location", "")

        found: dict[QName, _Binding] = {}
        for binding_elem in self.root.findall(_w("binding")):
            soap_binding = binding_elem.find(f"{{{SOAP11_BINDING_NS}}}binding")
            version = "1.1"
            if soap_binding is None:
                soap_binding = binding_elem.find(f"{{{SOAP12_BINDING_NS}}}binding")
                version = "1.2"
            if soap_binding is None:
                continue
            binding_ns = SOAP11_BINDING_NS if version == "1.1" else SOAP12_BINDING_NS
            binding = _Binding(
                version=version,
                style=soap_binding.get("style", "document"),
                endpoint=endpoints.get((self.document.target_namespace, binding_elem.get("name", ""))),
            )
            for op_elem in binding_elem.findall(_w("operation")):
                op_name = op_elem.get("name", "")
                soap_op = op_elem.find(f"{{{binding_ns}}}operation")
                if soap_op is not None:
                    binding.actions[op_name] = soap_op.get("soapAction", "")
                body = op_elem.find(f"{_w('input')}/{{{binding_ns}}}body")
                if body is not None and body.get("namespace"):
                    binding.rpc_namespaces[op_name] = body.get("namespace", "")

            port_type = self.document.resolve(binding_elem.get("type", ""), binding_elem)
            current = found.get(port_type)
            if current is None or (current.version == "1.2" and version == "1.1"):
                found[port_type] = binding
        return found

    def _operation(
        self,
        identifier: str,
        name: str,
        op_elem: ET.Element,
        binding: _Binding | None,
    ) -> Operation:
        tns = self.document.target_namespace
        rpc = binding is not None and binding.style == "rpc"
        rpc_namespace = (binding.rpc_namespaces.get(name) if binding else None) or tns

        input_elem = op_elem.find(_w("input"))
        output_elem = op_elem.find(_w("output"))
        request_name, request_ns, body_schema, qualified = self._message_body(
            input_elem, f"{name}", rpc, rpc_namespace
        )
        response_name, _, output_schema, _ = self._message_body(
            output_elem, f"{name}Response", rpc, rpc_namespace
        )

        errors: dict[str, dict[str, Any] | None] = {}
        for fault in op_elem.findall(_w("fault")):
            fault_name = fault.get("name") or "fault"
            _, _, detail_schema, _ = self._message_body(fault, fault_name, False, tns)
            errors[fault_name] = detail_schema or None

        documentation = op_elem.find(_w("documentation"))
        summary = documentation.text.strip() if documentation is not None and documentation.text else None
        input_schema = hoist_definitions(
            object_schema(
                {"body": body_schema, "headers": object_schema({}, [])},
                ["body"],
                additional=False,
            )
        )
        return Operation(
            identifier=identifier,
            summary=summary,
            binding=OperationBinding(
                protocol=ProtocolKind.SOAP,
                method="POST",
                endpoint=binding.endpoint if binding else None,
                body_encoding=BodyEncoding.XML,
                soap_action=binding.actions.get(name, "") if binding else "",
                soap_version=binding.version if binding else "1.1",
                namespace=request_ns,
                request_element=request_name,
                response_element=response_name,
                qualified_children=qualified,
            ),
            input_schema=input_schema,
            output_schema=output_schema,
            success_codes=[200],
            error_responses=errors,
        )

    def _message_body(
        self,
        ref_elem: ET.Element | None,
        default_name: str,
        rpc: bool,
        rpc_namespace: str,
    ) -> tuple[str, str, dict[str, Any], bool]:
        """Return (element name, namespace, content schema, qualified children)."""

        if ref_elem is None or not ref_elem.get("message"):
            return default_name, rpc_namespace, object_schema({}, []), False
        key = self.document.resolve(ref_elem.get("message", ""), ref_elem)
        message = self.messages.get(key)
        if message is None:
            raise MalformedSpecError(f"Unknown message '{key[1]}'")
        parts = message.findall(_w("part"))
        element_parts = [part for part in parts if part.get("element")]

        if element_parts and not rpc:
            if len(parts) > 1:
                raise UnsupportedFeatureError(
                    f"Message '{key[1]}' has several document/literal parts"
                )
            element_key = self.document.resolve(element_parts[0].get("element", ""), element_parts[0])
            schema = self.xsd.element_root(element_key)
            return element_key[1], element_key[0], schema, self.xsd.qualified.get(element_key[0], False)

        properties: dict[str, Any] = {}
        for part in parts:
            part_name = part.get("name", "")
            if part.get("type"):
                properties[part_name] = self.xsd.type_root(self.document.resolve(part.get("type", ""), part))
            elif part.get("element"):
                element_key = self.document.resolve(part.get("element", ""), part)
                properties[part_name] = self.xsd.element_root(element_key)
        return default_name, rpc_namespace, hoist_definitions(object_schema(properties, list(properties))), False
