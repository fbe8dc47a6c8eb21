"""Folds verdicts into a run-level report."""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from scenario_generator.models import GenerationFailure
from response_validator.models import Classification, Verdict


class RunOutcome(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"
    FAILED_TO_START = "failed-to-start"


class RunReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: Optional[str] = None
    spec_id: Optional[str] = None
    status: RunOutcome
    counts: dict[str, int] = Field(default_factory=dict)
    verdicts: tuple[Verdict, ...] = ()
    generation_failures: tuple[GenerationFailure, ...] = ()
    error_tag: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: float = 0.0

    @property
    def total(self) -> int:
        return len(self.verdicts)


def _ordering(verdict: Verdict) -> tuple[str, str, str]:
    return (verdict.scenario_id, verdict.operation_id, verdict.classification.value)


def aggregate(
    verdicts: Iterable[Verdict],
    *,
    run_id: Optional[str] = None,
    spec_id: Optional[str] = None,
    generation_failures: Iterable[GenerationFailure] = (),
    started_at: Optional[datetime] = None,
    finished_at: Optional[datetime] = None,
) -> RunReport:
    """Count classifications and derive the run status.

    ``failed`` wins over ``errored``, which wins over ``passed``. A run whose
    operations were all dropped during generation has nothing to judge and is
    ``errored``, not ``passed``. Verdicts are stored sorted by scenario id, so
    the report does not depend on the order in which executions completed.
    """

    ordered = tuple(sorted(verdicts, key=_ordering))
    failures = tuple(generation_failures)
    error = None
    tally = Counter(verdict.classification for verdict in ordered)
    counts = {classification.value: tally.get(classification, 0) for classification in Classification}
    if tally.get(Classification.FAIL):
        status = RunOutcome.FAILED
    elif tally.get(Classification.ERROR):
        status = RunOutcome.ERRORED
    elif not ordered and failures:
        status = RunOutcome.ERRORED
        error = f"No scenario was generated; {len(failures)} operation(s) dropped during generation"
    else:
        status = RunOutcome.PASSED
    duration_ms = 0.0
    if started_at is not None and finished_at is not None:
        duration_ms = round((finished_at - started_at).total_seconds() * 1000, 3)
    return RunReport(
        run_id=run_id,
        spec_id=spec_id,
        status=status,
        counts=counts,
        verdicts=ordered,
        generation_failures=failures,
        error=error,
        started_at=started_at,
        finished_at=finished_at,
        duration_ms=duration_ms,
    )


def failed_to_start(
    error: BaseException,
    *,
    run_id: Optional[str] = None,
    spec_id: Optional[str] = None,
    started_at: Optional[datetime] = None,
    finished_at: Optional[datetime] = None,
) -> RunReport:
    """Report for a run aborted by a fatal error before any scenario existed."""

    return RunReport(
        run_id=run_id,
        spec_id=spec_id,
        status=RunOutcome.FAILED_TO_START,
        counts={classification.value: 0 for classification in Classification},
        error_tag=getattr(error, "tag", type(error).__name__),
        error=str(error),
        started_at=started_at,
        finished_at=finished_at,
    )
