"""Bounded worker pool executing scenarios against the target system."""

from __future__ import annotations

import asyncio
import time
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence

import httpx
import structlog

from scenario_generator.models import Scenario

from .http_executor import HttpExecutor
from .models import ExecutionPolicy, ExecutionRecord, ExecutionState, TargetConfig
from .request_builder import RequestBuildError, build_request

logger = structlog.get_logger("execution_orchestrator")

Sleep = Callable[[float], Awaitable[None]]


class ExecutionOrchestrator:
    """Runs scenarios through ``policy.workers`` workers fed by one work queue.

    Records are emitted in completion order. Each record carries its scenario,
    so submission order can be recovered by the caller.
    """

    def __init__(
        self,
        target: TargetConfig,
        policy: Optional[ExecutionPolicy] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.target = target
        self.policy = policy or ExecutionPolicy()
        self._transport = transport
        self._sleep = sleep

    async def execute(self, scenarios: Sequence[Scenario]) -> list[ExecutionRecord]:
        return [record async for record in self.stream(scenarios)]

    async def stream(self, scenarios: Sequence[Scenario]) -> AsyncIterator[ExecutionRecord]:
        if not scenarios:
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.policy.run_timeout if self.policy.run_timeout else None
        work: asyncio.Queue[Scenario] = asyncio.Queue()
        done: asyncio.Queue[ExecutionRecord] = asyncio.Queue()
        for scenario in scenarios:
            work.put_nowait(scenario)

        log = logger.bind(scenarios=len(scenarios), workers=self.policy.workers)
        log.info("execution_started")
        async with HttpExecutor(self.target, max_connections=self.policy.workers, transport=self._transport) as http:
            workers = [
                asyncio.create_task(self._worker(http, work, done, deadline))
                for _ in range(min(self.policy.workers, len(scenarios)))
            ]
            try:
                for _ in range(len(scenarios)):
                    yield await done.get()
            finally:
                for worker in workers:
                    worker.cancel()
                await asyncio.gather(*workers, return_exceptions=True)
        log.info("execution_finished")

    async def _worker(
        self,
        http: HttpExecutor,
        work: asyncio.Queue[Scenario],
        done: asyncio.Queue[ExecutionRecord],
        deadline: Optional[float],
    ) -> None:
        while True:
            try:
                scenario = work.get_nowait()
            except asyncio.QueueEmpty:
                return
            record = ExecutionRecord(scenario=scenario)
            if _remaining(deadline) is not None and _remaining(deadline) <= 0:
                record.skip("run deadline expired before the scenario started")
                logger.warning("scenario_skipped", scenario_id=scenario.scenario_id, reason=record.error)
            else:
                try:
                    await self._run(http, record, deadline)
                except Exception as exc:
                    logger.exception("scenario_crashed", scenario_id=scenario.scenario_id)
                    _abort(record, f"{type(exc).__name__}: {exc}")
            done.put_nowait(record)

    async def _run(self, http: HttpExecutor, record: ExecutionRecord, deadline: Optional[float]) -> None:
        log = logger.bind(scenario_id=record.scenario_id, operation_id=record.scenario.operation_id)
        policy = self.policy
        try:
            prepared = build_request(record.scenario, self.target)
        except RequestBuildError as exc:
            record.begin_attempt()
            record.finish_attempt(ExecutionState.TRANSPORT_FAILED, elapsed_ms=0.0, error=str(exc))
            record.transition(ExecutionState.FAILED)
            log.warning("scenario_request_invalid", error=str(exc))
            return

        max_attempts = policy.retry_budget + 1
        for attempt in range(1, max_attempts + 1):
            remaining = _remaining(deadline)
            if remaining is not None and remaining <= 0:
                record.skip("run deadline expired before retry")
                log.warning("scenario_skipped", reason=record.error, attempts=record.attempts)
                return
            clipped = remaining is not None and remaining < policy.scenario_timeout
            timeout = remaining if clipped else policy.scenario_timeout

            record.begin_attempt()
            started = time.perf_counter()
            try:
                response = await asyncio.wait_for(http.send(prepared, timeout), timeout)
            except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
                elapsed_ms = (time.perf_counter() - started) * 1000
                if clipped or _expired(deadline):
                    record.skip("run deadline expired while the request was in flight")
                    log.warning("scenario_skipped", reason=record.error, attempts=record.attempts)
                    return
                error = f"Timed out after {timeout:.3f}s" + (f": {exc}" if str(exc) else "")
                record.finish_attempt(ExecutionState.TIMED_OUT, elapsed_ms=elapsed_ms, error=error)
            except httpx.HTTPError as exc:
                elapsed_ms = (time.perf_counter() - started) * 1000
                record.finish_attempt(
                    ExecutionState.TRANSPORT_FAILED,
                    elapsed_ms=elapsed_ms,
                    error=f"{type(exc).__name__}: {exc}",
                )
            else:
                if _expired(deadline):
                    record.skip("run deadline expired; late response discarded")
                    log.warning("scenario_skipped", reason=record.error, attempts=record.attempts)
                    return
                record.finish_attempt(ExecutionState.SUCCEEDED, elapsed_ms=response.elapsed_ms, response=response)
                log.info("scenario_finished", status_code=response.status_code, attempts=record.attempts)
                return

            log.warning("scenario_attempt_failed", attempt=attempt, state=record.state.value, error=record.error)
            if attempt == max_attempts:
                break
            delay = policy.backoff(attempt)
            remaining = _remaining(deadline)
            if remaining is not None and remaining <= delay:
                record.skip("run deadline expired before retry")
                log.warning("scenario_skipped", reason=record.error, attempts=record.attempts)
                return
            await self._sleep(delay)
            record.transition(ExecutionState.PENDING)

        record.transition(ExecutionState.FAILED)
        log.warning("scenario_failed", attempts=record.attempts, error=record.error)


def _abort(record: ExecutionRecord, error: str) -> None:
    """Drive a record to ``Failed`` through the regular transitions."""

    if record.terminal:
        return
    if record.state is ExecutionState.PENDING:
        record.begin_attempt()
    if record.state is ExecutionState.IN_FLIGHT:
        record.finish_attempt(ExecutionState.TRANSPORT_FAILED, elapsed_ms=0.0, error=error)
    record.transition(ExecutionState.FAILED)


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return deadline - asyncio.get_running_loop().time()


def _expired(deadline: Optional[float]) -> bool:
    remaining = _remaining(deadline)
    return remaining is not None and remaining <= 0
