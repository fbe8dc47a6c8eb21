"""End-to-end run: generate, execute with streaming validation, aggregate, persist."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Sequence

import httpx
import structlog

from spec_normalizer.models import ApiModel
from scenario_generator.completion import CompletionClient, CompletionServiceUnavailableError
from scenario_generator.generator import ScenarioGenerator
from scenario_generator.models import GenerationFailure, Scenario
from scenario_generator.prompts import PromptLibrary
from scenario_generator.settings import GenerationSettings, build_generator
from execution_orchestrator.console_reporter import ConsoleReporter, OutputFormat
from execution_orchestrator.models import TargetConfig
from execution_orchestrator.orchestrator import ExecutionOrchestrator
from response_validator.validator import ResponseValidator

from .aggregator import RunReport, aggregate, failed_to_start
from .runs import Progress, RunStatus
from .settings import PipelineSettings
from .storage import ResultStore, SpecStore

logger = structlog.get_logger("pipeline_runner")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ignore(status: RunStatus) -> None:
    return None


class Pipeline:
    """Wires the stages together for one run at a time.

    An unreachable completion service produces a persisted ``failed-to-start``
    report with no scenario entries. Everything after generation is absorbed
    into verdicts.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        *,
        spec_store: SpecStore,
        result_store: ResultStore,
        client: Optional[CompletionClient] = None,
        prompt_library: Optional[PromptLibrary] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        reporter: Optional[ConsoleReporter] = None,
    ) -> None:
        self.settings = settings
        self.spec_store = spec_store
        self.result_store = result_store
        self._client = client
        self._prompt_library = prompt_library
        self._transport = transport
        self.reporter = reporter or ConsoleReporter(OutputFormat.PLAIN)

    def generator(self, options: Optional[GenerationSettings] = None) -> ScenarioGenerator:
        return build_generator(
            self.settings.completion,
            options or self.settings.generation,
            prompt_library=self._prompt_library,
            client=self._client,
        )

    async def run_stored(
        self,
        run_id: str,
        spec_id: str,
        target: TargetConfig,
        options: Optional[GenerationSettings],
        progress: Progress,
    ) -> RunReport:
        """``RunRegistry`` job: run the pipeline for a spec already in the spec store."""

        return await self.run(self.spec_store.fetch(spec_id), target, run_id=run_id, options=options, progress=progress)

    async def run(
        self,
        model: ApiModel,
        target: TargetConfig,
        *,
        run_id: str,
        options: Optional[GenerationSettings] = None,
        progress: Progress = _ignore,
    ) -> RunReport:
        log = logger.bind(run_id=run_id, spec_id=model.spec_id)
        started = _now()
        progress(RunStatus.GENERATING)
        try:
            batch = await self.generator(options).generate(model)
        except CompletionServiceUnavailableError as exc:
            log.error("run_failed_to_start", tag=exc.tag, error=str(exc))
            return self._persist(
                failed_to_start(exc, run_id=run_id, spec_id=model.spec_id, started_at=started, finished_at=_now())
            )
        self.spec_store.save_scenarios(model.spec_id, batch)
        log.info("scenarios_ready", scenarios=len(batch), failures=len(batch.failures))
        return await self.execute(
            batch.scenarios,
            target,
            run_id=run_id,
            spec_id=model.spec_id,
            failures=batch.failures,
            progress=progress,
            started_at=started,
        )

    async def execute(
        self,
        scenarios: Sequence[Scenario],
        target: TargetConfig,
        *,
        run_id: str,
        spec_id: Optional[str] = None,
        failures: Sequence[GenerationFailure] = (),
        progress: Progress = _ignore,
        started_at: Optional[datetime] = None,
    ) -> RunReport:
        """Execute scenarios and validate each record as soon as it completes."""

        log = logger.bind(run_id=run_id, spec_id=spec_id)
        started = started_at or _now()
        progress(RunStatus.EXECUTING)
        orchestrator = ExecutionOrchestrator(target, self.settings.execution, transport=self._transport)
        validator = ResponseValidator(self.settings.validation.strictness)
        verdicts = []
        self.reporter.start(total=len(scenarios), title=run_id)
        async for record in orchestrator.stream(scenarios):
            verdict = validator.validate(record)
            record.attach_verdict(verdict)
            verdicts.append(verdict)
            self.reporter.report(
                verdict.scenario_id,
                verdict.operation_id,
                verdict.classification.value,
                verdict.duration_ms,
                _detail(verdict.reason, [m.path + ": " + m.message for m in verdict.mismatches]),
            )

        progress(RunStatus.VALIDATING)
        report = aggregate(
            verdicts,
            run_id=run_id,
            spec_id=spec_id,
            generation_failures=failures,
            started_at=started,
            finished_at=_now(),
        )
        self._persist(report)
        self.reporter.finish(report.counts, report.status.value, report.duration_ms)
        log.info("run_finished", status=report.status.value, **report.counts)
        return report

    def _persist(self, report: RunReport) -> RunReport:
        self.result_store.persist(report)
        return report


def _detail(reason: Optional[str], mismatches: list[str]) -> Optional[str]:
    if reason:
        return reason
    if not mismatches:
        return None
    extra = f" (+{len(mismatches) - 1} more)" if len(mismatches) > 1 else ""
    return mismatches[0] + extra

