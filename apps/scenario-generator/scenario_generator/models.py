"""Pydantic models describing generated scenarios and completion exchanges."""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterator, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from spec_normalizer.models import OperationBinding


class ScenarioCategory(str, Enum):
    VALID = "valid"
    BOUNDARY = "boundary"
    INVALID = "invalid"
    MISSING_REQUIRED = "missing_required"

    @property
    def negative(self) -> bool:
        return self in {ScenarioCategory.INVALID, ScenarioCategory.MISSING_REQUIRED}


class ScenarioSource(str, Enum):
    MODEL = "model"
    FALLBACK = "fallback"


class AssertionKind(str, Enum):
    HEADER_EQUALS = "header_equals"
    BODY_CONTAINS = "body_contains"
    REGEX_MATCH = "regex_match"
    RESPONSE_TIME_BELOW = "response_time_below"
    JSON_PATH_EXISTS = "json_path_exists"
    JSON_PATH_EQUALS = "json_path_equals"
    XPATH_EXISTS = "xpath_exists"
    XPATH_EQUALS = "xpath_equals"
    JSON_SCHEMA_VALID = "json_schema_valid"


class AssertionSpec(BaseModel):
    """One extra check evaluated against the captured response.

    For ``json_schema_valid`` the schema is carried in ``expected`` and
    ``target`` optionally narrows the check to a JSON path.
    """

    model_config = ConfigDict(frozen=True)

    kind: AssertionKind
    target: str | None = None
    expected: Any = None


class ExpectedOutcome(BaseModel):
    """What the target is expected to answer for a scenario."""

    model_config = ConfigDict(frozen=True)

    status_codes: list[int] = Field(default_factory=list)
    fault_codes: list[str] = Field(default_factory=list)
    payload: Any = None
    assertions: list[AssertionSpec] = Field(default_factory=list)


class CompletionRequest(BaseModel):
    """The exact sub-request sent to the completion service for one operation."""

    model_config = ConfigDict(frozen=True)

    operation_id: str
    protocol: str
    strategy: Literal["initial", "regenerate"] = "initial"
    desired_count: int = Field(default=5, ge=1)
    input_schema: dict[str, Any] = Field(default_factory=dict)
    output_schema: dict[str, Any] = Field(default_factory=dict)
    system_prompt: str = ""
    prompt: str = ""
    previous_errors: list[str] = Field(default_factory=list)


class CompletionResponse(BaseModel):
    """Raw candidates as returned by the completion service (untrusted)."""

    candidates: list[Any] = Field(default_factory=list)
    raw: str = ""
    model: str | None = None
    notes: list[str] = Field(default_factory=list)


class GenerationTrace(BaseModel):
    """Enough information to replay the completion call that produced a scenario."""

    model_config = ConfigDict(frozen=True)

    attempt: int
    request: CompletionRequest
    model: str | None = None


class Scenario(BaseModel):
    """A concrete, schema-checked test case for one operation."""

    model_config = ConfigDict(frozen=True)

    scenario_id: str
    operation_id: str
    category: ScenarioCategory
    description: str = ""
    input: dict[str, Any] = Field(default_factory=dict)
    expected: ExpectedOutcome
    source: ScenarioSource = ScenarioSource.MODEL
    binding: OperationBinding
    tags: list[str] = Field(default_factory=list)
    trace: GenerationTrace | None = None


class CandidateScenario(BaseModel):
    """Shape a model-produced candidate must have before it is gated."""

    model_config = ConfigDict(extra="ignore")

    category: ScenarioCategory = ScenarioCategory.VALID
    description: str = ""
    input: dict[str, Any]
    expected_status: list[int] = Field(default_factory=list)
    expected_fault: list[str] = Field(default_factory=list)
    expected_payload: Any = None
    assertions: list[AssertionSpec] = Field(default_factory=list)

    @field_validator("expected_status", mode="before")
    @classmethod
    def _status_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, (int, str)):
            return [value]
        return value

    @field_validator("expected_fault", mode="before")
    @classmethod
    def _fault_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


class GenerationFailure(BaseModel):
    """Recorded when an operation ends up with fewer scenarios than requested."""

    model_config = ConfigDict(frozen=True)

    operation_id: str
    attempts: int
    reasons: list[str] = Field(default_factory=list)
    fallback_used: bool = False


class GenerationBatch(BaseModel):
    """Everything produced by one generation run."""

    scenarios: list[Scenario] = Field(default_factory=list)
    failures: list[GenerationFailure] = Field(default_factory=list)

    def __iter__(self) -> Iterator[Scenario]:  # type: ignore[override]
        return iter(self.scenarios)

    def __len__(self) -> int:
        return len(self.scenarios)

    def for_operation(self, operation_id: str) -> list[Scenario]:
        return [scenario for scenario in self.scenarios if scenario.operation_id == operation_id]
