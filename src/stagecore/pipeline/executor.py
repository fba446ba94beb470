"""Pipeline executor runs waves of stages under the access policy."""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import Callable, Iterable, Sequence
from typing import TYPE_CHECKING, Any

from stagecore.concurrency.executor import BatchTimeoutError, BoundedExecutor
from stagecore.context.store import ContextStore
from stagecore.core.errors import StagecoreError
from stagecore.pipeline.context import PipelineConfig, PipelineContext, PipelineLogger, StageResult
from stagecore.security.permissions import PermissionDeniedError
from stagecore.workflow.conditions import ConditionEvaluator

if TYPE_CHECKING:
    from stagecore.logger.execution_logger import ExecutionLogger
    from stagecore.pipeline.stages import PipelineStage
    from stagecore.security.permissions import PermissionChecker

logger = logging.getLogger(__name__)


class PipelineError(StagecoreError):
    """Exception raised when pipeline execution fails."""

    pass


class PipelineExecutor:
    """Executes an ordered list of waves.

    For each wave the executor skips stages whose conditions do not hold
    against earlier results, authorizes each remaining stage's resources,
    runs the authorized stages concurrently under ``max_concurrency``, and
    writes every result to the context store as
    ``<namespace>:<stage name>`` tagged with the stage's agent. Expired
    store entries are swept after each wave.

    Failures of non-critical stages are recorded and the run continues.
    A failing or denied critical stage, or a wave that exceeds
    ``wave_timeout``, aborts the run with ``PipelineError``.

    Example usage:
        executor = PipelineExecutor(
            [[RuleCheckStage()], [ImplementStage(conditions=["rule-checker.status == 'success'"])]],
            PipelineConfig(max_concurrency=2),
            permissions=checker,
        )
        context = await executor.execute(PipelineContext(description="Fix lint errors"))
    """

    def __init__(
        self,
        waves: Sequence[Iterable[PipelineStage]],
        config: PipelineConfig | None = None,
        permissions: PermissionChecker | None = None,
        store: ContextStore | None = None,
        evaluator: ConditionEvaluator | None = None,
        execution_logger: ExecutionLogger | None = None,
        on_progress: Callable[[str], None] | None = None,
        verbose: bool = False,
    ):
        """Initialize the pipeline executor.

        Args:
            waves: Stages grouped into waves, in execution order.
            config: Pipeline configuration.
            permissions: Access policy. None authorizes every stage.
            store: Context store for stage results. A fresh one by default.
            evaluator: Condition evaluator for stage gating.
            execution_logger: Optional persistent log of the run.
            on_progress: Callback for progress reporting.
            verbose: Keep debug events in the pipeline log.
        """
        self.waves: list[list[PipelineStage]] = [list(wave) for wave in waves]
        self.config = config or PipelineConfig()
        self.permissions = permissions
        self.store = store if store is not None else ContextStore()
        self.evaluator = evaluator or ConditionEvaluator()
        self.execution_logger = execution_logger
        self.logger = PipelineLogger(on_progress=on_progress, verbose=verbose)
        self.results: list[StageResult] = []
        self._executor = BoundedExecutor(self.config.max_concurrency)
        self._runs = 0
        # Token of the run whose results may still be recorded; None once it aborts.
        self._live_run: int | None = None

    @property
    def stages(self) -> list[PipelineStage]:
        return [stage for wave in self.waves for stage in wave]

    def snapshot(self) -> dict[str, Any]:
        """Stage name to stored result record, as seen by conditions."""
        return self.store.get_namespace(self.config.namespace)

    async def execute(self, context: PipelineContext | None = None) -> PipelineContext:
        """Execute every wave.

        Returns:
            The pipeline context holding the results.

        Raises:
            PipelineError: If no stages are configured, a critical stage
                fails or is denied, or a wave times out.
        """
        if not any(self.waves):
            raise PipelineError("No stages configured. Add stages before executing.")

        context = context or PipelineContext()
        context.store = self.store
        self.results = []
        self._runs += 1
        run = self._runs
        self._live_run = run

        if self.execution_logger is not None:
            self.execution_logger.start_task(context.description, task_id=context.task_id)

        self.logger.info(f"Starting pipeline {context.task_id} with {len(self.waves)} wave(s)")
        try:
            for index, wave in enumerate(self.waves, start=1):
                context.current_wave = index
                await self._run_wave(index, wave, context, run)
        except PipelineError as e:
            self._live_run = None
            self.logger.error(str(e))
            if self.execution_logger is not None:
                cause = e.__cause__
                self.execution_logger.complete_task(
                    "error",
                    error=str(e),
                    error_type=type(cause).__name__ if cause is not None else type(e).__name__,
                )
            raise

        self.logger.info(f"Pipeline complete in {context.total_duration:.1f}s")
        if self.execution_logger is not None:
            status = "success" if all(r.status != "error" for r in self.results) else "error"
            self.execution_logger.complete_task(status)
        return context

    async def _run_wave(
        self, index: int, wave: list[PipelineStage], context: PipelineContext, run: int
    ) -> None:
        snapshot = self.snapshot()
        runnable: list[PipelineStage] = []

        for stage in wave:
            if not stage.should_run(snapshot, self.evaluator):
                self.logger.debug(f"Skipping stage: {stage.name}", stage=stage.name)
                self._record(stage, StageResult(stage.name, "skipped", agent=stage.agent), context, run)
                continue

            reason = self._authorize(stage, context)
            if reason is not None:
                self.logger.warning(f"Access denied: {reason}", stage=stage.name)
                self._record(stage, StageResult(stage.name, "denied", agent=stage.agent, error=reason), context, run)
                if stage.is_critical:
                    denied = PermissionDeniedError(reason, agent=stage.agent)
                    raise PipelineError(f"Critical stage '{stage.name}' was denied: {reason}") from denied
                continue

            runnable.append(stage)

        if runnable:
            self.logger.info(f"Running wave {index}: {', '.join(s.name for s in runnable)}")
            tasks = [functools.partial(self._run_stage, stage, context, run) for stage in runnable]
            try:
                await self._executor.run_batch(tasks, timeout=self.config.wave_timeout)
            except BatchTimeoutError as e:
                raise PipelineError(f"Wave {index} timed out: {e}") from e

        if self.config.cleanup_after_wave:
            removed = self.store.cleanup()
            if removed:
                logger.debug(f"Swept {removed} expired context entries after wave {index}")

    def _authorize(self, stage: PipelineStage, context: PipelineContext) -> str | None:
        """Denial reason for the first resource the stage may not touch, if any."""
        if self.permissions is None:
            return None
        for access in stage.resources:
            if not self.permissions.check_access(stage.agent, access.resource, access.action, context.metadata):
                return self.permissions.get_access_denial_reason(
                    stage.agent, access.resource, access.action, context.metadata
                )
        return None

    async def _run_stage(self, stage: PipelineStage, context: PipelineContext, run: int) -> StageResult:
        self.logger.info(f"Running stage: {stage.name}", stage=stage.name)
        start_time = time.monotonic()
        try:
            output = await stage.run(context)
        except Exception as e:
            duration = time.monotonic() - start_time
            self.logger.error(f"Stage failed: {stage.name} - {e}", stage=stage.name)
            result = StageResult(stage.name, "error", agent=stage.agent, error=str(e), duration_seconds=duration)
            self._record(stage, result, context, run)
            if stage.is_critical:
                # Stops recording of stages still in flight in this wave.
                if self._live_run == run:
                    self._live_run = None
                raise PipelineError(f"Critical stage '{stage.name}' failed: {e}") from e
            return result

        duration = time.monotonic() - start_time
        result = StageResult(stage.name, "success", agent=stage.agent, output=output, duration_seconds=duration)
        self._record(stage, result, context, run)
        self.logger.info(f"Completed stage: {stage.name} ({duration:.1f}s)", stage=stage.name)
        return result

    def _record(self, stage: PipelineStage, result: StageResult, context: PipelineContext, run: int) -> None:
        if run != self._live_run:
            # Late result from a stage still running after its run failed.
            logger.debug(f"Discarding result of {stage.name} after abort")
            return
        self.results.append(result)
        context.results[stage.name] = result
        context.record_stage_time(stage.name, result.duration_seconds)
        self.store.set(
            f"{self.config.namespace}:{stage.name}",
            result.to_record(),
            source=stage.agent,
            ttl=self.config.context_ttl,
        )
        if self.execution_logger is not None and self.execution_logger.active:
            self.execution_logger.record_stage(
                stage.name,
                result.status,
                output=result.output,
                error=result.error,
                agent=stage.agent,
                duration_seconds=result.duration_seconds,
            )

    def get_stage_by_name(self, name: str) -> PipelineStage | None:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def get_results_summary(self) -> dict[str, Any]:
        """Get a summary of pipeline execution."""
        counts = {status: 0 for status in ("success", "error", "skipped", "denied")}
        for result in self.results:
            counts[result.status] += 1
        return {
            "waves": len(self.waves),
            "stages_run": counts["success"] + counts["error"],
            "stages_succeeded": counts["success"],
            "stages_failed": counts["error"],
            "stages_skipped": counts["skipped"],
            "stages_denied": counts["denied"],
            "peak_concurrency": self._executor.peak_active,
            "results": [
                {
                    "stage": r.stage_name,
                    "agent": r.agent,
                    "status": r.status,
                    "duration": r.duration_seconds,
                    "error": r.error,
                }
                for r in self.results
            ],
        }
