from __future__ import annotations

import re
from pathlib import Path

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from spec_normalizer.errors import MalformedSpecError, UnsupportedFeatureError
from spec_normalizer.models import BodyEncoding, ProtocolKind, dangling_references
from spec_normalizer.normalizers import capabilities, detect_kind, normalize, normalize_spec
from spec_normalizer.wsdl import soap_fault, xsd_pattern

CALCULATOR_WSDL = """<?xml version="1.0" encoding="UTF-8"?>
<wsdl:definitions name="Calculator"
    xmlns:wsdl="http://schemas.xmlsoap.org/wsdl/"
    xmlns:soap="http://schemas.xmlsoap.org/wsdl/soap/"
    xmlns:soap12="http://schemas.xmlsoap.org/wsdl/soap12/"
    xmlns:xsd="http://www.w3.org/2001/XMLSchema"
    xmlns:tns="http://example.com/calc"
    targetNamespace="http://example.com/calc">
  <wsdl:types>
    <xsd:schema targetNamespace="http://example.com/calc" elementFormDefault="qualified">
      <xsd:element name="Add">
        <xsd:complexType>
          <xsd:sequence>
            <xsd:element name="a" type="xsd:int"/>
            <xsd:element name="b" type="xsd:int"/>
            <xsd:element name="note" type="xsd:string" minOccurs="0"/>
          </xsd:sequence>
        </xsd:complexType>
      </xsd:element>
      <xsd:element name="AddResponse">
        <xsd:complexType>
          <xsd:sequence>
            <xsd:element name="result" type="xsd:int"/>
          </xsd:sequence>
        </xsd:complexType>
      </xsd:element>
      <xsd:element name="CalcFault">
        <xsd:complexType>
          <xsd:sequence>
            <xsd:element name="reason" type="xsd:string"/>
          </xsd:sequence>
        </xsd:complexType>
      </xsd:element>
      <xsd:complexType name="TreeNode">
        <xsd:sequence>
          <xsd:element name="value" type="xsd:decimal"/>
          <xsd:element name="child" type="tns:TreeNode" minOccurs="0" maxOccurs="unbounded"/>
        </xsd:sequence>
        <xsd:attribute name="label" type="xsd:string" use="required"/>
      </xsd:complexType>
      <xsd:element name="Walk" type="tns:TreeNode"/>
      <xsd:element name="WalkResponse">
        <xsd:complexType>
          <xsd:sequence>
            <xsd:element name="total" type="xsd:decimal"/>
          </xsd:sequence>
        </xsd:complexType>
      </xsd:element>
    </xsd:schema>
  </wsdl:types>
  <wsdl:message name="AddRequest"><wsdl:part name="parameters" element="tns:Add"/></wsdl:message>
  <wsdl:message name="AddReply"><wsdl:part name="parameters" element="tns:AddResponse"/></wsdl:message>
  <wsdl:message name="CalcFault"><wsdl:part name="detail" element="tns:CalcFault"/></wsdl:message>
  <wsdl:message name="WalkRequest"><wsdl:part name="parameters" element="tns:Walk"/></wsdl:message>
  <wsdl:message name="WalkReply"><wsdl:part name="parameters" element="tns:WalkResponse"/></wsdl:message>
  <wsdl:portType name="CalculatorPort">
    <wsdl:operation name="Add">
      <wsdl:documentation>Adds two integers.</wsdl:documentation>
      <wsdl:input message="tns:AddRequest"/>
      <wsdl:output message="tns:AddReply"/>
      <wsdl:fault name="CalcFault" message="tns:CalcFault"/>
    </wsdl:operation>
    <wsdl:operation name="Walk">
      <wsdl:input message="tns:WalkRequest"/>
      <wsdl:output message="tns:WalkReply"/>
    </wsdl:operation>
  </wsdl:portType>
  <wsdl:binding name="CalculatorBinding12" type="tns:CalculatorPort">
    <soap12:binding style="document" transport="http://schemas.xmlsoap.org/soap/http"/>
    <wsdl:operation name="Add">
      <soap12:operation soapAction="urn:calc12:Add"/>
      <wsdl:input><soap12:body use="literal"/></wsdl:input>
      <wsdl:output><soap12:body use="literal"/></wsdl:output>
    </wsdl:operation>
  </wsdl:binding>
  <wsdl:binding name="CalculatorBinding" type="tns:CalculatorPort">
    <soap:binding style="document" transport="http://schemas.xmlsoap.org/soap/http"/>
    <wsdl:operation name="Add">
      <soap:operation soapAction="http://example.com/calc/Add"/>
      <wsdl:input><soap:body use="literal"/></wsdl:input>
      <wsdl:output><soap:body use="literal"/></wsdl:output>
    </wsdl:operation>
    <wsdl:operation name="Walk">
      <soap:operation soapAction="http://example.com/calc/Walk"/>
      <wsdl:input><soap:body use="literal"/></wsdl:input>
      <wsdl:output><soap:body use="literal"/></wsdl:output>
    </wsdl:operation>
  </wsdl:binding>
  <wsdl:service name="CalculatorService">
    <wsdl:port name="CalculatorSoap" binding="tns:CalculatorBinding">
      <soap:address location="http://calc.example.com/soap"/>
    </wsdl:port>
  </wsdl:service>
</wsdl:definitions>
"""


def test_normalize_wsdl_document_literal(tmp_path: Path) -> None:
    spec_path = tmp_path / "calculator.wsdl"
    spec_path.write_text(CALCULATOR_WSDL, encoding="utf-8")

    model = normalize_spec(spec_path)

    assert model.protocol is ProtocolKind.SOAP
    assert model.title == "Calculator"
    assert model.base_url == "http://calc.example.com/soap"
    assert [op.identifier for op in model.operations] == ["Add", "Walk"]

    add = model.operation("Add")
    assert add.summary == "Adds two integers."
    assert add.binding.method == "POST"
    assert add.binding.body_encoding is BodyEncoding.XML
    assert add.binding.soap_version == "1.1"
    assert add.binding.soap_action == "http://example.com/calc/Add"
    assert add.binding.namespace == "http://example.com/calc"
    assert add.binding.request_element == "Add"
    assert add.binding.response_element == "AddResponse"
    assert add.binding.qualified_children is True

    body = add.input_schema["properties"]["body"]
    assert body["properties"]["a"] == {"type": "integer"}
    assert body["required"] == ["a", "b"]
    assert add.input_schema["required"] == ["body"]
    assert add.output_schema["properties"]["result"] == {"type": "integer"}
    assert add.error_responses["CalcFault"]["properties"]["reason"] == {"type": "string"}


def test_recursive_xsd_type_is_indexed_under_defs() -> None:
    model = normalize(CALCULATOR_WSDL.encode("utf-8"), "soap")
    walk = model.operation("Walk")

    assert "TreeNode" in walk.input_schema["$defs"]
    child = walk.input_schema["properties"]["body"]["properties"]["child"]
    assert child == {"type": "array", "items": {"$ref": "#/$defs/TreeNode"}}
    assert walk.input_schema["properties"]["body"]["required"] == ["@label", "value"]
    assert dangling_references(model) == []


def test_wsdl_20_is_unsupported() -> None:
    raw = b'<description xmlns="http://www.w3.org/ns/wsdl" targetNamespace="urn:x"/>'

    with pytest.raises(UnsupportedFeatureError):
        normalize(raw, "soap")


def test_wsdl_import_is_unsupported() -> None:
    raw = CALCULATOR_WSDL.replace(
        "<wsdl:types>",
        '<wsdl:import namespace="urn:other" location="other.wsdl"/><wsdl:types>',
    ).encode("utf-8")

    with pytest.raises(UnsupportedFeatureError):
        normalize(raw, "soap")


def test_unknown_xsd_type_is_unsupported() -> None:
    raw = CALCULATOR_WSDL.replace('name="b" type="xsd:int"', 'name="b" type="tns:Missing"').encode("utf-8")

    with pytest.raises(UnsupportedFeatureError):
        normalize(raw, "soap")


@pytest.mark.parametrize(
    "raw",
    [
        b"<wsdl:definitions",
        b'<root xmlns="urn:x"/>',
    ],
)
def test_broken_wsdl_is_malformed(raw: bytes) -> None:
    with pytest.raises(MalformedSpecError):
        normalize(raw, "soap")


def test_detect_kind_from_suffix() -> None:
    assert detect_kind(Path("api.yml")) is ProtocolKind.REST
    assert detect_kind(Path("service.WSDL")) is ProtocolKind.SOAP
    with pytest.raises(UnsupportedFeatureError):
        detect_kind(Path("schema.graphql"))


def test_fault_readers_per_protocol() -> None:
    soap11 = (
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body>'
        "<soap:Fault><faultcode>soap:Client</faultcode><faultstring>bad</faultstring></soap:Fault>"
        "</soap:Body></soap:Envelope>"
    )
    soap12 = (
        '<env:Envelope xmlns:env="http://www.w3.org/2003/05/soap-envelope"><env:Body><env:Fault>'
        "<env:Code><env:Value>env:Sender</env:Value></env:Code>"
        "</env:Fault></env:Body></env:Envelope>"
    )

    assert soap_fault(500, soap11) == "Client"
    assert soap_fault(500, soap12) == "Sender"
    assert soap_fault(200, "<ok/>") is None
    assert capabilities("soap").serialize_fault(502, "gateway down") == "502"
    assert capabilities("rest").serialize_fault(404, "{}") == "404"
    assert capabilities("rest").serialize_fault(204, "") is None


SCOPED_WSDL = """<?xml version="1.0" encoding="UTF-8"?>
<definitions name="Inventory"
    xmlns="http://schemas.xmlsoap.org/wsdl/"
    xmlns:soap="http://schemas.xmlsoap.org/wsdl/soap/"
    xmlns:tns="http://example.com/svc"
    xmlns:types="http://example.com/types"
    targetNamespace="http://example.com/svc">
  <types>
    <schema xmlns="http://www.w3.org/2001/XMLSchema"
        xmlns:tns="http://example.com/types"
        targetNamespace="http://example.com/types"
        elementFormDefault="qualified">
      <complexType name="Item">
        <sequence>
          <element name="sku" type="string"/>
          <element name="quantity" type="int"/>
        </sequence>
      </complexType>
      <element name="GetItem">
        <complexType>
          <sequence>
            <element name="item" type="tns:Item"/>
          </sequence>
        </complexType>
      </element>
      <element name="GetItemResponse" type="tns:Item"/>
    </schema>
  </types>
  <message name="GetItemRequest"><part name="parameters" element="types:GetItem"/></message>
  <message name="GetItemReply"><part name="parameters" element="types:GetItemResponse"/></message>
  <portType name="InventoryPort">
    <operation name="GetItem">
      <input message="tns:GetItemRequest"/>
      <output message="tns:GetItemReply"/>
    </operation>
  </portType>
  <binding name="InventoryBinding" type="tns:InventoryPort">
    <soap:binding style="document" transport="http://schemas.xmlsoap.org/soap/http"/>
    <operation name="GetItem">
      <soap:operation soapAction="urn:inventory:GetItem"/>
      <input><soap:body use="literal"/></input>
      <output><soap:body use="literal"/></output>
    </operation>
  </binding>
  <service name="InventoryService">
    <port name="InventorySoap" binding="tns:InventoryBinding">
      <soap:address location="http://inventory.example.com/soap"/>
    </port>
  </service>
</definitions>
"""


def test_prefixes_resolve_in_the_scope_of_each_element() -> None:
    model = normalize(SCOPED_WSDL.encode("utf-8"), "soap")
    get_item = model.operation("GetItem")

    assert get_item.binding.namespace == "http://example.com/types"
    assert get_item.binding.soap_action == "urn:inventory:GetItem"
    assert get_item.binding.endpoint == "http://inventory.example.com/soap"
    item = get_item.input_schema["properties"]["body"]["properties"]["item"]
    assert item["properties"] == {"sku": {"type": "string"}, "quantity": {"type": "integer"}}
    assert item["required"] == ["quantity", "sku"]
    assert get_item.output_schema["properties"]["quantity"] == {"type": "integer"}


def test_undeclared_prefix_is_malformed() -> None:
    raw = SCOPED_WSDL.replace('<element name="item" type="tns:Item"/>', '<element name="item" type="stock:Item"/>')

    with pytest.raises(MalformedSpecError, match="stock"):
        normalize(raw.encode("utf-8"), "soap")


RPC_WSDL = """<?xml version="1.0" encoding="UTF-8"?>
<definitions name="Greeter"
    xmlns="http://schemas.xmlsoap.org/wsdl/"
    xmlns:soap="http://schemas.xmlsoap.org/wsdl/soap/"
    xmlns:xsd="http://www.w3.org/2001/XMLSchema"
    xmlns:tns="urn:greeter"
    targetNamespace="urn:greeter">
  <types>
    <xsd:schema targetNamespace="urn:greeter">
      <xsd:complexType name="Person">
        <xsd:sequence>
          <xsd:element name="first" type="xsd:string"/>
          <xsd:element name="last" type="xsd:string"/>
        </xsd:sequence>
      </xsd:complexType>
    </xsd:schema>
  </types>
  <message name="GreetRequest">
    <part name="person" type="tns:Person"/>
    <part name="times" type="xsd:int"/>
  </message>
  <message name="GreetReply"><part name="greeting" type="xsd:string"/></message>
  <portType name="GreeterPort">
    <operation name="Greet">
      <input message="tns:GreetRequest"/>
      <output message="tns:GreetReply"/>
    </operation>
  </portType>
  <binding name="GreeterBinding" type="tns:GreeterPort">
    <soap:binding style="rpc" transport="http://schemas.xmlsoap.org/soap/http"/>
    <operation name="Greet">
      <soap:operation soapAction="urn:greeter#Greet"/>
      <input><soap:body use="literal" namespace="urn:greeter:rpc"/></input>
      <output><soap:body use="literal" namespace="urn:greeter:rpc"/></output>
    </operation>
  </binding>
  <service name="GreeterService">
    <port name="GreeterSoap" binding="tns:GreeterBinding">
      <soap:address location="http://greeter.example.com/soap"/>
    </port>
  </service>
</definitions>
"""


def test_rpc_style_wraps_parts_in_operation_element() -> None:
    model = normalize(RPC_WSDL.encode("utf-8"), "soap")
    greet = model.operation("Greet")

    assert greet.binding.request_element == "Greet"
    assert greet.binding.response_element == "GreetResponse"
    assert greet.binding.namespace == "urn:greeter:rpc"
    assert greet.binding.soap_action == "urn:greeter#Greet"
    assert greet.binding.qualified_children is False

    body = greet.input_schema["properties"]["body"]
    assert list(body["properties"]) == ["person", "times"]
    assert body["required"] == ["person", "times"]
    assert body["properties"]["times"] == {"type": "integer"}
    assert body["properties"]["person"]["properties"]["last"] == {"type": "string"}
    assert greet.output_schema["properties"] == {"greeting": {"type": "string"}}


def test_rpc_namespace_defaults_to_target_namespace() -> None:
    raw = RPC_WSDL.replace(' namespace="urn:greeter:rpc"', "")

    greet = normalize(raw.encode("utf-8"), "soap").operation("Greet")

    assert greet.binding.namespace == "urn:greeter"


def test_pattern_facets_are_anchored_and_combined() -> None:
    raw = CALCULATOR_WSDL.replace(
        '<xsd:element name="note" type="xsd:string" minOccurs="0"/>',
        '<xsd:element name="note" minOccurs="0"><xsd:simpleType><xsd:restriction base="xsd:string">'
        '<xsd:pattern value="[A-Z]{2}\\d+"/><xsd:pattern value="\\i\\c*"/>'
        "</xsd:restriction></xsd:simpleType></xsd:element>",
    )

    body = normalize(raw.encode("utf-8"), "soap").operation("Add").input_schema["properties"]["body"]
    note = body["properties"]["note"]

    assert note == {"type": "string", "pattern": r"^(?:(?:[A-Z]{2}\d+)|(?:[A-Za-z_:][.0-9:A-Z_a-z\-]*))$"}
    assert re.search(note["pattern"], "AB12") is not None
    assert re.search(note["pattern"], "xx AB12") is None


@pytest.mark.parametrize(
    ("facets", "expected"),
    [
        (["[0-9]{3}"], "^(?:(?:[0-9]{3}))$"),
        (["a$b^"], r"^(?:(?:a\$b\^))$"),
        (["[^$]+"], "^(?:(?:[^$]+))$"),
        ([r"\p{IsBasicLatin}+"], None),
        (["[a-z-[aeiou]]"], None),
        ([r"[\I]"], None),
        (["(unclosed"], None),
    ],
)
def test_xsd_pattern_translation(facets: list[str], expected: str | None) -> None:
    assert xsd_pattern(facets) == expected


@pytest.mark.parametrize(
    ("original", "replacement"),
    [
        ('name="note" type="xsd:string" minOccurs="0"', 'name="note" type="xsd:string" minOccurs="x"'),
        ('name="note" type="xsd:string" minOccurs="0"', 'name="note" type="xsd:string" maxOccurs="many"'),
        ('name="note" type="xsd:string" minOccurs="0"', 'name="note" type="xsd:string" minOccurs="unbounded"'),
        (
            '<xsd:element name="note" type="xsd:string" minOccurs="0"/>',
            '<xsd:element name="note"><xsd:simpleType><xsd:restriction base="xsd:string">'
            '<xsd:maxLength value="ten"/></xsd:restriction></xsd:simpleType></xsd:element>',
        ),
        (
            '<xsd:element name="a" type="xsd:int"/>',
            '<xsd:element name="a"><xsd:simpleType><xsd:restriction base="xsd:int">'
            '<xsd:minInclusive value="one"/></xsd:restriction></xsd:simpleType></xsd:element>',
        ),
    ],
)
def test_bad_occurrence_and_facet_values_are_malformed(original: str, replacement: str) -> None:
    raw = CALCULATOR_WSDL.replace(original, replacement)
    assert raw != CALCULATOR_WSDL

    with pytest.raises(MalformedSpecError):
        normalize(raw.encode("utf-8"), "soap")


def test_bounded_repetition_becomes_array_limits() -> None:
    raw = CALCULATOR_WSDL.replace(
        'name="note" type="xsd:string" minOccurs="0"',
        'name="note" type="xsd:string" minOccurs="1" maxOccurs="3"',
    )

    body = normalize(raw.encode("utf-8"), "soap").operation("Add").input_schema["properties"]["body"]

    assert body["properties"]["note"] == {"type": "array", "items": {"type": "string"}, "minItems": 1, "maxItems": 3}
    assert "note" in body["required"]


_TYPE_NAMES = ["Node", "Leaf", "Tree", "Edge"]

GRAPH_WSDL = """<?xml version="1.0" encoding="UTF-8"?>
<wsdl:definitions name="Graph"
    xmlns:wsdl="http://schemas.xmlsoap.org/wsdl/"
    xmlns:soap="http://schemas.xmlsoap.org/wsdl/soap/"
    xmlns:xsd="http://www.w3.org/2001/XMLSchema"
    xmlns:tns="urn:graph"
    targetNamespace="urn:graph">
  <wsdl:types>
    <xsd:schema targetNamespace="urn:graph">
      {types}
      <xsd:element name="Put" type="tns:{root}"/>
      <xsd:element name="PutResponse" type="tns:{root}"/>
    </xsd:schema>
  </wsdl:types>
  <wsdl:message name="PutRequest"><wsdl:part name="parameters" element="tns:Put"/></wsdl:message>
  <wsdl:message name="PutReply"><wsdl:part name="parameters" element="tns:PutResponse"/></wsdl:message>
  <wsdl:portType name="GraphPort">
    <wsdl:operation name="Put">
      <wsdl:input message="tns:PutRequest"/>
      <wsdl:output message="tns:PutReply"/>
    </wsdl:operation>
  </wsdl:portType>
</wsdl:definitions>
"""


@st.composite
def xsd_type_graphs(draw: st.DrawFn) -> dict[str, list[str]]:
    names = draw(st.lists(st.sampled_from(_TYPE_NAMES), min_size=1, max_size=4, unique=True))
    return {name: draw(st.lists(st.sampled_from(names), max_size=3)) for name in names}


@settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.too_slow])
@given(xsd_type_graphs())
def test_recursive_xsd_types_never_point_outside_their_schema(graph: dict[str, list[str]]) -> None:
    types = "".join(
        f'<xsd:complexType name="{name}"><xsd:sequence><xsd:element name="id" type="xsd:int"/>'
        + "".join(
            f'<xsd:element name="p{index}" type="tns:{target}" minOccurs="0"/>' for index, target in enumerate(targets)
        )
        + "</xsd:sequence></xsd:complexType>"
        for name, targets in graph.items()
    )
    raw = GRAPH_WSDL.format(types=types, root=next(iter(graph)))

    model = normalize(raw.encode("utf-8"), "soap")

    assert dangling_references(model) == []
    assert model.operation("Put").input_schema["properties"]["body"]["properties"]["id"] == {"type": "integer"}
