from __future__ import annotations

import json
from typing import Any

import pytest
from hypothesis import given, strategies as st

from spec_normalizer.models import BodyEncoding, OperationBinding, ProtocolKind
from scenario_generator.models import (
    AssertionKind,
    AssertionSpec,
    ExpectedOutcome,
    Scenario,
    ScenarioCategory,
)
from execution_orchestrator.models import CapturedResponse, ExecutionRecord, ExecutionState
from response_validator.json_diff import diff_json
from response_validator.models import Classification, Strictness
from response_validator.validator import ResponseValidator, validate

CALC_NS = "http://example.com/calculator"

REST_BINDING = OperationBinding(
    protocol=ProtocolKind.REST,
    method="GET",
    path="/users/{id}",
    body_encoding=BodyEncoding.NONE,
)
SOAP_BINDING = OperationBinding(
    protocol=ProtocolKind.SOAP,
    endpoint="http://calc.test/service",
    soap_version="1.1",
    namespace=CALC_NS,
    request_element="Add",
    response_element="AddResponse",
)


def make_scenario(
    expected: ExpectedOutcome,
    binding: OperationBinding = REST_BINDING,
    category: ScenarioCategory = ScenarioCategory.VALID,
) -> Scenario:
    return Scenario(
        scenario_id="getUser-abc",
        operation_id="getUser",
        category=category,
        input={"path": {"id": 5}},
        expected=expected,
        binding=binding,
    )


def succeeded(scenario: Scenario, status: int, body: Any, content_type: str = "application/json") -> ExecutionRecord:
    text = body if isinstance(body, str) else json.dumps(body)
    record = ExecutionRecord(scenario=scenario)
    record.begin_attempt()
    record.finish_attempt(
        ExecutionState.SUCCEEDED,
        elapsed_ms=12.0,
        response=CapturedResponse(
            status_code=status,
            headers={"Content-Type": content_type, "X-Request-Id": "r-1"},
            body=text,
            elapsed_ms=12.0,
        ),
    )
    return record


def test_integer_and_float_values_compare_equal() -> None:
    scenario = make_scenario(ExpectedOutcome(status_codes=[200], payload={"id": 5.0, "name": "Ana"}))
    verdict = validate(succeeded(scenario, 200, {"id": 5, "name": "Ana"}))

    assert verdict.classification is Classification.PASS
    assert verdict.mismatches == ()
    assert verdict.status_code == 200


def test_validation_is_idempotent() -> None:
    scenario = make_scenario(ExpectedOutcome(status_codes=[200], payload={"id": 6}))
    record = succeeded(scenario, 200, {"id": 5, "name": "Ana"})
    validator = ResponseValidator()

    first = validator.validate(record)
    second = validator.validate(record)

    assert first == second
    assert first.classification is Classification.FAIL
    assert [(m.path, m.expected, m.actual) for m in first.mismatches] == [("$.id", 6, 5)]


def test_status_mismatch_fails_with_top_level_entry() -> None:
    scenario = make_scenario(ExpectedOutcome(status_codes=[200]))
    verdict = validate(succeeded(scenario, 404, {"error": "not found"}))

    assert verdict.classification is Classification.FAIL
    assert verdict.mismatches[0].path == "status"
    assert verdict.mismatches[0].actual == 404


@pytest.mark.parametrize("terminal", [ExecutionState.FAILED, ExecutionState.SKIPPED])
def test_unfinished_execution_is_an_error(terminal: ExecutionState) -> None:
    record = ExecutionRecord(scenario=make_scenario(ExpectedOutcome(status_codes=[200])))
    record.begin_attempt()
    record.finish_attempt(ExecutionState.TIMED_OUT, elapsed_ms=100.0, error="Timed out after 0.100s")
    record.transition(terminal)

    verdict = validate(record)

    assert verdict.classification is Classification.ERROR
    assert verdict.terminal_state == terminal.value
    assert verdict.reason == "Timed out after 0.100s"
    assert verdict.mismatches == ()


def test_strict_mode_flags_unknown_fields() -> None:
    scenario = make_scenario(ExpectedOutcome(status_codes=[200], payload={"id": 5}))
    record = succeeded(scenario, 200, {"name": "Ana", "id": 5})

    assert validate(record, Strictness.LENIENT).classification is Classification.PASS
    strict = validate(record, Strictness.STRICT)
    assert strict.classification is Classification.FAIL
    assert strict.mismatches[0].path == "$.name"
    assert strict.mismatches[0].message == "unexpected field"


def test_json_diff_reports_types_and_arrays() -> None:
    mismatches = diff_json({"flag": True, "items": [1, 2]}, {"flag": 1, "items": [1]})

    assert {(m.path, m.message) for m in mismatches} == {
        ("$.flag", "expected boolean, got number"),
        ("$.items", "array length differs"),
    }


def test_soap_payload_tolerates_prefix_aliasing() -> None:
    scenario = make_scenario(
        ExpectedOutcome(status_codes=[200], payload={"AddResult": 5}),
        binding=SOAP_BINDING,
    )
    body = (
        '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/">'
        f'<s:Body><calc:AddResponse xmlns:calc="{CALC_NS}"><AddResult>5.0</AddResult></calc:AddResponse>'
        "</s:Body></s:Envelope>"
    )

    verdict = validate(succeeded(scenario, 200, body, "text/xml"))

    assert verdict.classification is Classification.PASS


def test_soap_payload_detects_namespace_uri_difference() -> None:
    expected = f'<m:AddResponse xmlns:m="{CALC_NS}"><AddResult>5</AddResult></m:AddResponse>'
    scenario = make_scenario(ExpectedOutcome(status_codes=[200], payload=expected), binding=SOAP_BINDING)
    body = (
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">'
        '<soap:Body><m:AddResponse xmlns:m="http://example.com/other"><AddResult>5</AddResult></m:AddResponse>'
        "</soap:Body></soap:Envelope>"
    )

    verdict = validate(succeeded(scenario, 200, body, "text/xml"))

    assert verdict.classification is Classification.FAIL
    assert verdict.mismatches[0].message == "element differs"


def test_xml_children_compare_independent_of_order() -> None:
    expected = "<order><line sku='b'>2</line><line sku='a'>1</line><total>3</total></order>"
    actual = '<order><total>3.00</total><line sku="a">1</line><line sku="b">2</line><note/></order>'
    scenario = make_scenario(ExpectedOutcome(status_codes=[200], payload=expected))

    lenient = validate(succeeded(scenario, 200, actual, "application/xml"))
    strict = validate(succeeded(scenario, 200, actual, "application/xml"), Strictness.STRICT)

    assert lenient.classification is Classification.PASS
    assert [m.path for m in strict.mismatches] == ["/order/note"]


def test_soap_fault_codes_are_checked() -> None:
    scenario = make_scenario(
        ExpectedOutcome(status_codes=[500], fault_codes=["Client", "Sender"]),
        binding=SOAP_BINDING,
        category=ScenarioCategory.INVALID,
    )
    fault = (
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body><soap:Fault>'
        "<faultcode>soap:{code}</faultcode><faultstring>bad</faultstring>"
        "</soap:Fault></soap:Body></soap:Envelope>"
    )

    client = validate(succeeded(scenario, 500, fault.format(code="Client"), "text/xml"))
    server = validate(succeeded(scenario, 500, fault.format(code="Server"), "text/xml"))

    assert client.classification is Classification.PASS
    assert server.classification is Classification.FAIL
    assert server.mismatches[0].path == "fault"
    assert server.mismatches[0].actual == "Server"


def test_non_json_body_fails_payload_comparison() -> None:
    scenario = make_scenario(ExpectedOutcome(status_codes=[200], payload={"id": 5}))
    verdict = validate(succeeded(scenario, 200, "<html>oops</html>", "text/html"))

    assert verdict.classification is Classification.FAIL
    assert "not valid" in verdict.mismatches[0].message


def test_assertions_extend_mismatches() -> None:
    scenario = make_scenario(
        ExpectedOutcome(
            status_codes=[200],
            assertions=[
                AssertionSpec(kind=AssertionKind.HEADER_EQUALS, target="x-request-id", expected="r-1"),
                AssertionSpec(kind=AssertionKind.JSON_PATH_EQUALS, target="$.tags[1]", expected="b"),
                AssertionSpec(kind=AssertionKind.JSON_PATH_EXISTS, target="$.profile.email"),
                AssertionSpec(kind=AssertionKind.BODY_CONTAINS, expected="Ana"),
                AssertionSpec(kind=AssertionKind.REGEX_MATCH, expected=r'"id":\s*\d+'),
                AssertionSpec(kind=AssertionKind.RESPONSE_TIME_BELOW, expected=5),
            ],
        )
    )
    verdict = validate(succeeded(scenario, 200, {"id": 5, "name": "Ana", "tags": ["a", "b"]}))

    assert verdict.classification is Classification.FAIL
    assert [m.path for m in verdict.mismatches] == [
        "json_path_exists($.profile.email)",
        "response_time_below",
    ]


def test_xpath_assertions() -> None:
    scenario = make_scenario(
        ExpectedOutcome(
            status_codes=[200],
            assertions=[
                AssertionSpec(kind=AssertionKind.XPATH_EXISTS, target=".//{*}AddResult"),
                AssertionSpec(kind=AssertionKind.XPATH_EQUALS, target=".//{*}AddResult", expected=7),
            ],
        ),
        binding=SOAP_BINDING,
    )
    body = (
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body>'
        f'<AddResponse xmlns="{CALC_NS}"><AddResult>7.0</AddResult></AddResponse>'
        "</soap:Body></soap:Envelope>"
    )

    assert validate(succeeded(scenario, 200, body, "text/xml")).classification is Classification.PASS


USER_SCHEMA = {
    "type": "object",
    "required": ["id", "name"],
    "properties": {"id": {"type": "integer"}, "name": {"type": "string"}, "tags": {"type": "array"}},
}


def test_json_schema_assertion_reports_first_violation() -> None:
    scenario = make_scenario(
        ExpectedOutcome(
            status_codes=[200],
            assertions=[AssertionSpec(kind=AssertionKind.JSON_SCHEMA_VALID, expected=USER_SCHEMA)],
        )
    )

    passed = validate(succeeded(scenario, 200, {"id": 5, "name": "Ana"}))
    failed = validate(succeeded(scenario, 200, {"id": "five", "name": "Ana", "tags": "a"}))

    assert passed.classification is Classification.PASS
    assert failed.classification is Classification.FAIL
    [mismatch] = failed.mismatches
    assert mismatch.path == "json_schema_valid"
    assert mismatch.actual == "$.id"
    assert mismatch.message == "'five' is not of type 'integer' (2 violations)"


@pytest.mark.parametrize(
    ("assertion", "body", "message"),
    [
        (
            AssertionSpec(kind=AssertionKind.JSON_SCHEMA_VALID, target="$.user", expected=USER_SCHEMA),
            {"user": {"id": 5}},
            "'name' is a required property (1 violation)",
        ),
        (
            AssertionSpec(kind=AssertionKind.JSON_SCHEMA_VALID, target="$.missing", expected=USER_SCHEMA),
            {"user": {}},
            "path not found",
        ),
        (
            AssertionSpec(kind=AssertionKind.JSON_SCHEMA_VALID, expected={"type": "string", "pattern": r"^\p{L}+$"}),
            "Ana",
            "schema cannot be evaluated",
        ),
        (AssertionSpec(kind=AssertionKind.JSON_SCHEMA_VALID, expected="object"), {}, "expected a JSON Schema object"),
        (AssertionSpec(kind=AssertionKind.JSON_SCHEMA_VALID, expected=USER_SCHEMA), "<user/>", "not valid JSON"),
    ],
)
def test_json_schema_assertion_failures(assertion: AssertionSpec, body: Any, message: str) -> None:
    scenario = make_scenario(ExpectedOutcome(status_codes=[200], assertions=[assertion]))
    text = body if isinstance(body, str) and body.startswith("<") else json.dumps(body)

    verdict = validate(succeeded(scenario, 200, text))

    assert verdict.classification is Classification.FAIL
    assert message in verdict.mismatches[0].message


json_values = st.recursive(
    st.none() | st.booleans() | st.integers() | st.floats(allow_nan=False) | st.text(max_size=5),
    lambda children: st.lists(children, max_size=3) | st.dictionaries(st.text(max_size=3), children, max_size=3),
    max_leaves=10,
)


@given(json_values)
def test_any_value_matches_itself_strictly(value: Any) -> None:
    assert diff_json(value, value, Strictness.STRICT) == []
