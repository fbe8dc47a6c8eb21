"""Execution records, target configuration and execution policy."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from scenario_generator.models import Scenario


class InvalidStateTransition(RuntimeError):
    """Raised when a lifecycle moves outside its allowed transitions."""


class ExecutionState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    TRANSPORT_FAILED = "transport_failed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({ExecutionState.SUCCEEDED, ExecutionState.FAILED, ExecutionState.SKIPPED})

TRANSITIONS: dict[ExecutionState, frozenset[ExecutionState]] = {
    ExecutionState.PENDING: frozenset({ExecutionState.IN_FLIGHT, ExecutionState.SKIPPED}),
    ExecutionState.IN_FLIGHT: frozenset(
        {
            ExecutionState.SUCCEEDED,
            ExecutionState.TRANSPORT_FAILED,
            ExecutionState.TIMED_OUT,
            ExecutionState.SKIPPED,
        }
    ),
    ExecutionState.TRANSPORT_FAILED: frozenset(
        {ExecutionState.PENDING, ExecutionState.FAILED, ExecutionState.SKIPPED}
    ),
    ExecutionState.TIMED_OUT: frozenset({ExecutionState.PENDING, ExecutionState.FAILED, ExecutionState.SKIPPED}),
    ExecutionState.SUCCEEDED: frozenset(),
    ExecutionState.FAILED: frozenset(),
    ExecutionState.SKIPPED: frozenset(),
}


class CapturedResponse(BaseModel):
    """What the target answered, kept raw for the validator."""

    status_code: int
    headers: dict[str, str] = Field(default_factory=dict)
    body: str = ""
    elapsed_ms: float = 0.0

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    @property
    def content_type(self) -> str:
        return (self.header("content-type") or "").split(";", 1)[0].strip().lower()


class AttemptLog(BaseModel):
    attempt: int
    state: ExecutionState
    elapsed_ms: float = 0.0
    status_code: Optional[int] = None
    error: Optional[str] = None


class ExecutionRecord(BaseModel):
    """Outcome of running one scenario.

    Only the orchestrator moves the state; once terminal, the only further
    change allowed is attaching the verdict, exactly once.
    """

    scenario: Scenario
    state: ExecutionState = ExecutionState.PENDING
    attempts: int = 0
    attempt_log: list[AttemptLog] = Field(default_factory=list)
    response: Optional[CapturedResponse] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: float = 0.0
    verdict: Any = None

    @property
    def scenario_id(self) -> str:
        return self.scenario.scenario_id

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    def transition(self, target: ExecutionState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidStateTransition(
                f"Scenario {self.scenario_id}: {self.state.value} -> {target.value} is not allowed"
            )
        self.state = target
        if target.terminal:
            self.finished_at = datetime.now(timezone.utc)
            if self.started_at is not None:
                self.duration_ms = round((self.finished_at - self.started_at).total_seconds() * 1000, 3)

    def begin_attempt(self) -> int:
        self.transition(ExecutionState.IN_FLIGHT)
        self.attempts += 1
        if self.started_at is None:
            self.started_at = datetime.now(timezone.utc)
        return self.attempts

    def finish_attempt(
        self,
        state: ExecutionState,
        *,
        elapsed_ms: float,
        response: Optional[CapturedResponse] = None,
        error: Optional[str] = None,
    ) -> None:
        self.transition(state)
        self.attempt_log.append(
            AttemptLog(
                attempt=self.attempts,
                state=state,
                elapsed_ms=round(elapsed_ms, 3),
                status_code=response.status_code if response else None,
                error=error,
            )
        )
        if response is not None:
            self.response = response
        if error is not None:
            self.error = error

    def skip(self, reason: str) -> None:
        self.transition(ExecutionState.SKIPPED)
        self.error = reason

    def attach_verdict(self, verdict: Any) -> None:
        if not self.terminal:
            raise InvalidStateTransition(f"Scenario {self.scenario_id} is still {self.state.value}")
        if self.verdict is not None:
            raise InvalidStateTransition(f"Scenario {self.scenario_id} already has a verdict")
        self.verdict = verdict


class AuthConfig(BaseModel):
    kind: Literal["basic", "bearer"]
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None

    @model_validator(mode="after")
    def _credentials(self) -> "AuthConfig":
        if self.kind == "basic" and self.username is None:
            raise ValueError("basic auth requires a username")
        if self.kind == "bearer" and not self.token:
            raise ValueError("bearer auth requires a token")
        return self


class TargetConfig(BaseModel):
    """Where and how to reach the system under test."""

    base_url: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    auth: Optional[AuthConfig] = None
    verify: bool = True
    variables: dict[str, str] = Field(default_factory=dict)


class ExecutionPolicy(BaseModel):
    """Worker pool size, retry budget, backoff and timeouts."""

    workers: int = Field(default=4, ge=1)
    retry_budget: int = Field(default=2, ge=0)
    backoff_base: float = Field(default=0.5, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    backoff_max: float = Field(default=8.0, ge=0)
    scenario_timeout: float = Field(default=10.0, gt=0)
    run_timeout: Optional[float] = Field(default=None, gt=0)

    def backoff(self, attempt: int) -> float:
        """Delay before retrying after failed attempt number ``attempt``."""

        return min(self.backoff_max, self.backoff_base * self.backoff_factor ** (attempt - 1))
