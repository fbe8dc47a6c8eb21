"""Scenario generation driven by the completion service."""

from __future__ import annotations

import asyncio
import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import ValidationError

from spec_normalizer.models import ApiModel, Operation, OperationBinding, ProtocolKind

from .completion import (
    ClosableClient,
    CompletionClient,
    CompletionServiceUnavailableError,
    CompletionTransportError,
)
from .gate import ScenarioGate
from .models import (
    AssertionKind,
    AssertionSpec,
    CandidateScenario,
    CompletionRequest,
    CompletionResponse,
    ExpectedOutcome,
    GenerationBatch,
    GenerationFailure,
    GenerationTrace,
    Scenario,
    ScenarioCategory,
    ScenarioSource,
)
from .prompts import PromptLibrary
from .samples import example_from_schema

logger = structlog.get_logger("scenario_generator")

DEFAULT_NEGATIVE_CODES = [400, 422]
SOAP_CLIENT_FAULTS = ["Client", "Sender"]


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def scenario_id_for(operation_id: str, payload: Any) -> str:
    digest = hashlib.sha256(f"{operation_id}\n{canonical_json(payload)}".encode("utf-8")).hexdigest()
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", operation_id).strip("-").lower() or "op"
    return f"{slug}-{digest[:12]}"


def default_expectation(operation: Operation, category: ScenarioCategory) -> ExpectedOutcome:
    """Expected outcome used when the model gives no hint."""

    soap = operation.binding.protocol is ProtocolKind.SOAP
    if not category.negative:
        return ExpectedOutcome(status_codes=[200] if soap else list(operation.success_codes))
    if soap:
        return ExpectedOutcome(status_codes=[500], fault_codes=list(SOAP_CLIENT_FAULTS))
    return ExpectedOutcome(status_codes=operation.declared_client_errors() or list(DEFAULT_NEGATIVE_CODES))


def with_response_schema(
    operation: Operation, category: ScenarioCategory, assertions: list[AssertionSpec]
) -> list[AssertionSpec]:
    """Append a ``json_schema_valid`` check of the declared output schema to positive REST scenarios."""

    if (
        category.negative
        or operation.binding.protocol is not ProtocolKind.REST
        or not operation.output_schema
        or any(assertion.kind is AssertionKind.JSON_SCHEMA_VALID for assertion in assertions)
    ):
        return list(assertions)
    return [*assertions, AssertionSpec(kind=AssertionKind.JSON_SCHEMA_VALID, expected=operation.output_schema)]


@dataclass
class _RunState:
    successful_calls: int = 0
    last_error: str | None = None


@dataclass
class _OperationResult:
    scenarios: list[Scenario] = field(default_factory=list)
    failure: GenerationFailure | None = None


class ScenarioGenerator:
    """Turns an ApiModel into schema-checked scenarios."""

    def __init__(
        self,
        client: CompletionClient,
        *,
        prompt_library: PromptLibrary | None = None,
        per_operation_limit: int = 5,
        max_concurrency: int = 2,
        max_retries: int = 2,
        fallback: bool = True,
    ) -> None:
        if per_operation_limit < 1:
            raise ValueError("per_operation_limit must be at least 1")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        self.client = client
        self.prompt_library = prompt_library or PromptLibrary()
        self.per_operation_limit = per_operation_limit
        self.max_concurrency = max_concurrency
        self.max_retries = max_retries
        self.fallback = fallback

    async def generate(self, model: ApiModel, per_operation_limit: int | None = None) -> GenerationBatch:
        """Generate scenarios for every operation of ``model``.

        Raises ``CompletionServiceUnavailableError`` when not a single
        completion call succeeded; scenarios produced up to that point are
        discarded. A client holding pooled connections is closed once every
        operation is done.
        """

        limit = per_operation_limit or self.per_operation_limit
        semaphore = asyncio.Semaphore(self.max_concurrency)
        state = _RunState()
        log = logger.bind(spec=model.title, operations=len(model.operations), limit=limit)
        log.info("generation_started")

        try:
            results = await asyncio.gather(
                *(self._generate_for(model, operation, limit, semaphore, state) for operation in model.operations)
            )
        finally:
            if isinstance(self.client, ClosableClient):
                await self.client.aclose()

        if state.successful_calls == 0 and state.last_error is not None:
            log.error("completion_service_unavailable", last_error=state.last_error)
            raise CompletionServiceUnavailableError(
                f"Completion service unreachable for the whole run: {state.last_error}"
            )

        batch = GenerationBatch(
            scenarios=[scenario for result in results for scenario in result.scenarios],
            failures=[result.failure for result in results if result.failure is not None],
        )
        log.info("generation_finished", scenarios=len(batch.scenarios), failures=len(batch.failures))
        return batch

    async def _generate_for(
        self,
        model: ApiModel,
        operation: Operation,
        limit: int,
        semaphore: asyncio.Semaphore,
        state: _RunState,
    ) -> _OperationResult:
        log = logger.bind(operation_id=operation.identifier)
        gate = ScenarioGate(operation)
        binding = self._binding(model, operation)
        accepted: list[Scenario] = []
        seen: set[str] = set()
        reasons: list[str] = []
        strategy = "initial"
        attempts = 0

        if gate.unusable:
            log.warning("generation_dropped", attempts=0, reason=gate.unusable)
            return _OperationResult(
                failure=GenerationFailure(operation_id=operation.identifier, attempts=0, reasons=[gate.unusable])
            )

        for attempt in range(1, self.max_retries + 2):
            attempts = attempt
            request = self._request(operation, strategy, limit - len(accepted), reasons)
            async with semaphore:
                try:
                    response = await self.client.complete(request)
                except CompletionTransportError as exc:
                    state.last_error = str(exc)
                    reasons.append(f"attempt {attempt}: {exc}")
                    log.warning("completion_call_failed", attempt=attempt, error=str(exc))
                    continue
            state.successful_calls += 1

            fresh, rejected = self._accept(operation, binding, gate, request, response, attempt, seen, limit - len(accepted))
            accepted.extend(fresh)
            reasons.extend(f"attempt {attempt}: {reason}" for reason in rejected)
            if rejected:
                log.info("candidates_rejected", attempt=attempt, rejected=len(rejected), accepted=len(fresh))
            if fresh or gate.unusable:
                break
            strategy = "regenerate"

        fallback_used = False
        if not accepted and self.fallback:
            scenario = self._fallback(operation, binding, gate)
            if scenario is not None:
                accepted.append(scenario)
                fallback_used = True

        failure = None
        if reasons or not accepted:
            failure = GenerationFailure(
                operation_id=operation.identifier,
                attempts=attempts,
                reasons=reasons,
                fallback_used=fallback_used,
            )
            if not accepted or fallback_used:
                log.warning("generation_dropped", attempts=attempts, fallback=fallback_used)
        return _OperationResult(scenarios=accepted, failure=failure)

    def _request(
        self,
        operation: Operation,
        strategy: str,
        count: int,
        reasons: list[str],
    ) -> CompletionRequest:
        protocol = operation.binding.protocol.value
        replacements = {
            "operation_id": operation.identifier,
            "label": operation.label,
            "count": str(count),
            "input_schema": json.dumps(operation.input_schema, indent=2, sort_keys=True),
            "output_schema": json.dumps(operation.output_schema, indent=2, sort_keys=True),
            "success_codes": ", ".join(str(code) for code in operation.success_codes),
            "error_codes": ", ".join(operation.error_responses) or "none",
            "errors": "\n".join(f"- {reason}" for reason in reasons[-10:]),
            "categories": ", ".join(category.value for category in ScenarioCategory),
        }
        return CompletionRequest(
            operation_id=operation.identifier,
            protocol=protocol,
            strategy=strategy,
            desired_count=count,
            input_schema=operation.input_schema,
            output_schema=operation.output_schema,
            system_prompt=self.prompt_library.system_prompt(protocol, replacements),
            prompt=self.prompt_library.render(protocol, strategy, replacements),
            previous_errors=reasons[-10:] if strategy == "regenerate" else [],
        )

    def _accept(
        self,
        operation: Operation,
        binding: OperationBinding,
        gate: ScenarioGate,
        request: CompletionRequest,
        response: CompletionResponse,
        attempt: int,
        seen: set[str],
        remaining: int,
    ) -> tuple[list[Scenario], list[str]]:
        fresh: list[Scenario] = []
        rejected: list[str] = list(response.notes)
        if not response.candidates and not response.notes:
            rejected.append("reply contained no candidates")
        trace = GenerationTrace(attempt=attempt, request=request, model=response.model)

        for index, raw in enumerate(response.candidates):
            if len(fresh) >= remaining:
                break
            try:
                candidate = CandidateScenario.model_validate(raw)
            except ValidationError as exc:
                first = exc.errors()[0]
                location = ".".join(str(part) for part in first["loc"]) or "<root>"
                rejected.append(f"candidate {index}: {location}: {first['msg']}")
                continue
            problems = gate.check(candidate.category, candidate.input)
            if problems:
                rejected.append(f"candidate {index} ({candidate.category.value}): {problems[0]}")
                continue
            key = canonical_json(candidate.input)
            if key in seen:
                continue
            seen.add(key)
            fresh.append(self._scenario(operation, binding, candidate, trace))
        return fresh, rejected

    def _scenario(
        self,
        operation: Operation,
        binding: OperationBinding,
        candidate: CandidateScenario,
        trace: GenerationTrace,
    ) -> Scenario:
        defaults = default_expectation(operation, candidate.category)
        expected = ExpectedOutcome(
            status_codes=candidate.expected_status or defaults.status_codes,
            fault_codes=candidate.expected_fault or defaults.fault_codes,
            payload=candidate.expected_payload,
            assertions=with_response_schema(operation, candidate.category, candidate.assertions),
        )
        return Scenario(
            scenario_id=scenario_id_for(operation.identifier, candidate.input),
            operation_id=operation.identifier,
            category=candidate.category,
            description=candidate.description,
            input=candidate.input,
            expected=expected,
            source=ScenarioSource.MODEL,
            binding=binding,
            tags=self.prompt_library.tags() + [candidate.category.value],
            trace=trace,
        )

    def _fallback(self, operation: Operation, binding: OperationBinding, gate: ScenarioGate) -> Scenario | None:
        payload = example_from_schema(operation.input_schema)
        if not isinstance(payload, dict) or gate.check(ScenarioCategory.VALID, payload):
            return None
        return Scenario(
            scenario_id=scenario_id_for(operation.identifier, payload),
            operation_id=operation.identifier,
            category=ScenarioCategory.VALID,
            description=f"Schema-derived sample for {operation.label}",
            input=payload,
            expected=default_expectation(operation, ScenarioCategory.VALID).model_copy(
                update={"assertions": with_response_schema(operation, ScenarioCategory.VALID, [])}
            ),
            source=ScenarioSource.FALLBACK,
            binding=binding,
            tags=self.prompt_library.tags() + ["fallback"],
        )

    @staticmethod
    def _binding(model: ApiModel, operation: Operation) -> OperationBinding:
        if operation.binding.endpoint or not model.base_url:
            return operation.binding
        return operation.binding.model_copy(update={"endpoint": model.base_url})
