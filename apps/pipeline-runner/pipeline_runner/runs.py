"""Inbound trigger: accepts runs and answers status polls, keyed by run id."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, Field

from execution_orchestrator.models import InvalidStateTransition, TargetConfig
from scenario_generator.settings import GenerationSettings

from .aggregator import RunReport
from .storage import NotFoundError

logger = structlog.get_logger("pipeline_runner.runs")


class RunStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    EXECUTING = "executing"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {RunStatus.COMPLETED, RunStatus.FAILED}


_NEXT: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.GENERATING, RunStatus.FAILED}),
    RunStatus.GENERATING: frozenset({RunStatus.EXECUTING, RunStatus.FAILED}),
    RunStatus.EXECUTING: frozenset({RunStatus.VALIDATING, RunStatus.FAILED}),
    RunStatus.VALIDATING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class RunState(BaseModel):
    run_id: str
    spec_id: str
    status: RunStatus = RunStatus.PENDING
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    report_status: Optional[str] = None
    error_tag: Optional[str] = None
    error: Optional[str] = None


Progress = Callable[[RunStatus], None]
RunJob = Callable[[str, str, TargetConfig, Optional[GenerationSettings], Progress], Awaitable[RunReport]]


class RunRegistry:
    """Schedules pipeline runs as asyncio tasks and tracks their lifecycle.

    ``job`` receives ``(run_id, spec_id, target, options, progress)`` and must
    return the persisted RunReport. Once a run finishes its task is dropped and
    only the archived state remains.
    """

    def __init__(self, job: RunJob) -> None:
        self._job = job
        self._live: dict[str, RunState] = {}
        self._tasks: dict[str, asyncio.Task[Optional[RunReport]]] = {}
        self._archive: dict[str, RunState] = {}

    def submit_run(
        self,
        spec_id: str,
        target: TargetConfig,
        options: Optional[GenerationSettings] = None,
        *,
        run_id: Optional[str] = None,
    ) -> str:
        """Accept a run and return its id at once; must be called inside a running loop."""

        loop = asyncio.get_running_loop()
        run_id = run_id or uuid.uuid4().hex[:12]
        if run_id in self._live or run_id in self._archive:
            raise ValueError(f"Run id '{run_id}' is already in use")
        self._live[run_id] = RunState(run_id=run_id, spec_id=spec_id)
        task = loop.create_task(self._drive(run_id, spec_id, target, options), name=f"run-{run_id}")
        self._tasks[run_id] = task
        logger.info("run_submitted", run_id=run_id, spec_id=spec_id)
        return run_id

    def get_status(self, run_id: str) -> RunStatus:
        return self.state(run_id).status

    def state(self, run_id: str) -> RunState:
        state = self._live.get(run_id) or self._archive.get(run_id)
        if state is None:
            raise NotFoundError(f"Unknown run id '{run_id}'")
        return state

    def advance(self, run_id: str, status: RunStatus) -> None:
        state = self._live.get(run_id)
        if state is None:
            raise NotFoundError(f"Run '{run_id}' is not active")
        if status is state.status:
            return
        if status not in _NEXT[state.status]:
            raise InvalidStateTransition(f"Run {run_id}: {state.status.value} -> {status.value} is not allowed")
        state.status = status
        state.updated_at = datetime.now(timezone.utc)
        logger.info("run_status_changed", run_id=run_id, status=status.value)

    async def wait(self, run_id: str) -> RunState:
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.wait({task})
        return self.state(run_id)

    @property
    def active_runs(self) -> list[str]:
        return sorted(self._live)

    async def _drive(
        self,
        run_id: str,
        spec_id: str,
        target: TargetConfig,
        options: Optional[GenerationSettings],
    ) -> Optional[RunReport]:
        log = logger.bind(run_id=run_id, spec_id=spec_id)
        state = self._live[run_id]
        try:
            report = await self._job(run_id, spec_id, target, options, lambda status: self.advance(run_id, status))
        except Exception as exc:
            log.exception("run_crashed")
            state.error_tag = getattr(exc, "tag", type(exc).__name__)
            state.error = str(exc)
            self.advance(run_id, RunStatus.FAILED)
            self._archive_run(run_id)
            return None
        state.report_status = report.status.value
        state.error_tag = report.error_tag
        state.error = report.error
        if report.error_tag:
            self.advance(run_id, RunStatus.FAILED)
        else:
            self.advance(run_id, RunStatus.VALIDATING)
            self.advance(run_id, RunStatus.COMPLETED)
        self._archive_run(run_id)
        log.info("run_archived", status=state.status.value, report_status=state.report_status)
        return report

    def _archive_run(self, run_id: str) -> None:
        self._archive[run_id] = self._live.pop(run_id)
        self._tasks.pop(run_id, None)
