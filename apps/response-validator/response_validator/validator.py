"""Turns a terminal ExecutionRecord into a Verdict."""

from __future__ import annotations

import json
from typing import Any
import xml.etree.ElementTree as ET

from spec_normalizer.models import ProtocolKind
from spec_normalizer.normalizers import capabilities
from execution_orchestrator.models import CapturedResponse, ExecutionRecord, ExecutionState
from execution_orchestrator.request_builder import fill_element, qualify
from scenario_generator.models import Scenario

from .assertions import AssertionEvaluator
from .json_diff import diff_json
from .models import Classification, Mismatch, Strictness, Verdict
from .xml_diff import diff_xml, payload_element


class ResponseValidator:
    """Compares captured responses with the scenario's expected outcome.

    The validator keeps no state between calls: validating the same record
    twice yields equal verdicts.
    """

    def __init__(self, strictness: Strictness = Strictness.LENIENT) -> None:
        self.strictness = Strictness(strictness)

    def validate(self, record: ExecutionRecord) -> Verdict:
        scenario = record.scenario
        common: dict[str, Any] = {
            "scenario_id": scenario.scenario_id,
            "operation_id": scenario.operation_id,
            "category": scenario.category.value,
            "terminal_state": record.state.value,
            "attempts": record.attempts,
            "duration_ms": record.duration_ms,
        }
        response = record.response
        if record.state is not ExecutionState.SUCCEEDED or response is None:
            return Verdict(
                classification=Classification.ERROR,
                reason=record.error or f"execution ended in state '{record.state.value}'",
                **common,
            )

        expected = scenario.expected
        mismatches: list[Mismatch] = []
        if expected.status_codes and response.status_code not in expected.status_codes:
            mismatches.append(
                Mismatch(
                    path="status",
                    expected=list(expected.status_codes),
                    actual=response.status_code,
                    message="unexpected status code",
                )
            )
        if expected.fault_codes:
            fault = capabilities(scenario.binding.protocol).serialize_fault(response.status_code, response.body)
            if fault not in expected.fault_codes:
                mismatches.append(
                    Mismatch(
                        path="fault",
                        expected=list(expected.fault_codes),
                        actual=fault,
                        message="unexpected fault code",
                    )
                )
        if expected.payload is not None:
            mismatches.extend(self._compare_payload(scenario, response))
        mismatches.extend(AssertionEvaluator(response, self.strictness).evaluate(expected.assertions))

        return Verdict(
            classification=Classification.FAIL if mismatches else Classification.PASS,
            mismatches=tuple(mismatches),
            status_code=response.status_code,
            **common,
        )

    def _compare_payload(self, scenario: Scenario, response: CapturedResponse) -> list[Mismatch]:
        expected = scenario.expected.payload
        if _expects_xml(scenario, response, expected):
            try:
                actual_element = payload_element(ET.fromstring(response.body))
            except ET.ParseError as exc:
                return [Mismatch(path="$", expected=expected, message=f"response body is not valid XML: {exc}")]
            try:
                expected_element = _expected_element(scenario, expected, actual_element)
            except ET.ParseError as exc:
                return [Mismatch(path="$", expected=expected, message=f"expected payload is not valid XML: {exc}")]
            return diff_xml(expected_element, actual_element, self.strictness)

        try:
            actual = json.loads(response.body)
        except json.JSONDecodeError as exc:
            if isinstance(expected, str) and expected.strip() == response.body.strip():
                return []
            return [Mismatch(path="$", expected=expected, message=f"response body is not valid JSON: {exc.msg}")]
        return diff_json(expected, actual, self.strictness)


def validate(record: ExecutionRecord, strictness: Strictness = Strictness.LENIENT) -> Verdict:
    return ResponseValidator(strictness).validate(record)


def _expects_xml(scenario: Scenario, response: CapturedResponse, expected: Any) -> bool:
    if scenario.binding.protocol is ProtocolKind.SOAP:
        return True
    if isinstance(expected, str) and expected.lstrip().startswith("<"):
        return True
    return response.content_type.endswith("xml")


def _expected_element(scenario: Scenario, expected: Any, actual: ET.Element) -> ET.Element:
    """Build the element to compare: parsed XML text, or a mapping under the response element."""

    if isinstance(expected, str) and expected.lstrip().startswith("<"):
        return payload_element(ET.fromstring(expected))
    binding = scenario.binding
    namespace = binding.namespace or ""
    tag = qualify(namespace, binding.response_element) if binding.response_element else actual.tag
    element = ET.Element(tag)
    fill_element(element, expected, namespace if binding.qualified_children else "")
    return element
