"""Tests for wave-based pipeline execution."""

from __future__ import annotations

import asyncio

import pytest

from stagecore.concurrency import BatchTimeoutError
from stagecore.context import ContextStore
from stagecore.logger import ExecutionLogger
from stagecore.pipeline import (
    CallableStage,
    PipelineConfig,
    PipelineContext,
    PipelineError,
    PipelineExecutor,
    PipelineStage,
)
from stagecore.security import PermissionChecker, PermissionDeniedError


def stage(name: str, output=None, **kwargs) -> CallableStage:
    return CallableStage(lambda ctx: output, name=name, **kwargs)


def failing(name: str, error: Exception, **kwargs) -> CallableStage:
    def run(ctx):
        raise error

    return CallableStage(run, name=name, **kwargs)


async def test_results_flow_between_waves() -> None:
    seen = {}

    async def implement(ctx: PipelineContext):
        seen["plan"] = ctx.output_of("designer")
        return {"files": ["src/app.py"]}

    executor = PipelineExecutor(
        [
            [stage("designer", {"plan": ["step 1"]})],
            [CallableStage(implement, name="implementer", conditions=["designer.status == 'success'"])],
        ]
    )

    context = await executor.execute()

    assert seen["plan"] == {"plan": ["step 1"]}
    assert context.results["implementer"].status == "success"
    assert executor.store.get("stage:implementer") == {
        "status": "success",
        "output": {"files": ["src/app.py"]},
        "error": None,
    }
    assert executor.snapshot()["designer"]["status"] == "success"


async def test_results_tagged_with_agent() -> None:
    executor = PipelineExecutor([[stage("check", {"ok": True}, agent="rule-checker")]])

    await executor.execute()

    assert executor.store.get_by_source("rule-checker") == {
        "stage:check": {"status": "success", "output": {"ok": True}, "error": None}
    }


async def test_unmet_condition_skips_stage() -> None:
    ran = []
    executor = PipelineExecutor(
        [
            [stage("qa", {"score": 60})],
            [CallableStage(lambda ctx: ran.append("reporter"), name="reporter", conditions=["qa.output.score > 80"])],
        ]
    )

    context = await executor.execute()

    assert ran == []
    assert context.results["reporter"].status == "skipped"
    assert executor.get_results_summary()["stages_skipped"] == 1


async def test_non_critical_failure_is_recorded_and_run_continues() -> None:
    executor = PipelineExecutor(
        [
            [failing("tester", RuntimeError("3 tests failed")), stage("qa", {"lint": "clean"})],
            [stage("reporter", "report", conditions=["tester.status == 'error'"])],
        ]
    )

    context = await executor.execute()

    assert context.results["tester"].status == "error"
    assert context.results["tester"].error == "3 tests failed"
    assert context.results["qa"].status == "success"
    assert context.results["reporter"].status == "success"
    summary = executor.get_results_summary()
    assert summary["stages_failed"] == 1
    assert summary["stages_succeeded"] == 2


async def test_critical_failure_raises_pipeline_error() -> None:
    cause = ValueError("rules violated")
    ran = []
    executor = PipelineExecutor(
        [
            [failing("rule-checker", cause, critical=True)],
            [CallableStage(lambda ctx: ran.append("implementer"), name="implementer")],
        ]
    )

    with pytest.raises(PipelineError) as excinfo:
        await executor.execute()

    assert excinfo.value.__cause__ is cause
    assert "rule-checker" in str(excinfo.value)
    assert ran == []
    assert executor.store.get("stage:rule-checker")["status"] == "error"


async def test_denied_stage_does_not_run() -> None:
    ran = []
    permissions = PermissionChecker()
    permissions.assign_role("reporter", "readonly")
    executor = PipelineExecutor(
        [
            [
                CallableStage(
                    lambda ctx: ran.append("reporter"),
                    name="reporter",
                    resources=[("reports/summary.md", "write")],
                ),
                CallableStage(
                    lambda ctx: ran.append("reader"),
                    name="reader",
                    agent="reporter",
                    resources=[{"resource": "src/app.py", "action": "read"}],
                ),
            ]
        ],
        permissions=permissions,
    )

    context = await executor.execute()

    assert ran == ["reader"]
    denied = context.results["reporter"]
    assert denied.status == "denied"
    assert "not permitted to write 'reports/summary.md'" in denied.error


async def test_denied_critical_stage_raises() -> None:
    permissions = PermissionChecker()
    executor = PipelineExecutor(
        [[stage("implementer", critical=True, resources=[("src/app.py", "write")])]],
        permissions=permissions,
    )

    with pytest.raises(PipelineError) as excinfo:
        await executor.execute()

    assert isinstance(excinfo.value.__cause__, PermissionDeniedError)


async def test_conditional_permission_uses_context_metadata() -> None:
    permissions = PermissionChecker()
    permissions.assign_role("cleaner", "admin")
    executor = PipelineExecutor(
        [[stage("cleanup", agent="cleaner", resources=[(".env", "delete")])]],
        permissions=permissions,
    )

    context = await executor.execute(PipelineContext(metadata={"confirmed": True}))

    assert context.results["cleanup"].status == "success"


async def test_wave_concurrency_is_bounded() -> None:
    current = 0
    peak = 0

    async def work(ctx):
        nonlocal current, peak
        current += 1
        peak = max(peak, current)
        await asyncio.sleep(0.01)
        current -= 1
        return "ok"

    executor = PipelineExecutor(
        [[CallableStage(work, name=f"s{i}") for i in range(6)]],
        PipelineConfig(max_concurrency=2),
    )

    await executor.execute()

    assert peak == 2
    assert executor.get_results_summary()["peak_concurrency"] == 2


async def test_wave_timeout_raises() -> None:
    async def slow(ctx):
        await asyncio.sleep(0.2)

    executor = PipelineExecutor(
        [[CallableStage(slow, name="slow")]],
        PipelineConfig(wave_timeout=0.02),
    )

    with pytest.raises(PipelineError) as excinfo:
        await executor.execute()

    assert isinstance(excinfo.value.__cause__, BatchTimeoutError)
    await asyncio.sleep(0.25)
    # The abandoned stage finished after the run failed; its result is discarded.
    assert "slow" not in executor.snapshot()


async def test_expired_results_are_swept_between_waves(clock) -> None:
    store = ContextStore(clock=clock)
    executor = PipelineExecutor(
        [
            [stage("first", "one")],
            [CallableStage(lambda ctx: clock.advance(10), name="second")],
            [stage("third", conditions=["first.status == 'success'"])],
        ],
        PipelineConfig(context_ttl=5),
        store=store,
    )

    context = await executor.execute()

    assert context.results["third"].status == "skipped"
    assert store.get("stage:first") is None
    assert store.get("stage:second") is not None


async def test_no_stages_raises() -> None:
    with pytest.raises(PipelineError, match="No stages"):
        await PipelineExecutor([]).execute()


async def test_custom_stage_subclass() -> None:
    class CountStage(PipelineStage):
        name = "counter"
        agent = "code-analyzer"

        async def run(self, context):
            return {"files": self.config.get("files", 0)}

    counter = CountStage(config={"files": 3})
    executor = PipelineExecutor([[counter]], PipelineConfig(namespace="run"))

    await executor.execute()

    assert counter.agent == "code-analyzer"
    assert executor.store.get("run:counter")["output"] == {"files": 3}
    assert executor.get_stage_by_name("counter") is counter


async def test_progress_and_execution_log(tmp_path) -> None:
    messages = []
    execution_logger = ExecutionLogger(base_dir=tmp_path)
    executor = PipelineExecutor(
        [[stage("qa", {"score": 90})], [failing("reporter", OSError("disk full"))]],
        execution_logger=execution_logger,
        on_progress=messages.append,
    )

    context = await executor.execute(PipelineContext(task_id="task-1", description="Run quality checks"))

    files = list((tmp_path / ".stagecore" / "logs").glob("*_task-1.json"))
    assert len(files) == 1
    assert any("Completed stage: qa" in m for m in messages)
    assert executor.logger.get_logs(level="ERROR", stage="reporter")
    assert context.stage_timings.keys() == {"qa", "reporter"}
    assert not execution_logger.active


async def test_critical_failure_logged_as_error(tmp_path) -> None:
    execution_logger = ExecutionLogger(base_dir=tmp_path)
    executor = PipelineExecutor(
        [[failing("rule-checker", ValueError("bad"), critical=True)]],
        execution_logger=execution_logger,
    )

    with pytest.raises(PipelineError):
        await executor.execute(PipelineContext(task_id="task-2"))

    [path] = (tmp_path / ".stagecore" / "logs").glob("*_task-2.json")
    assert '"status": "error"' in path.read_text(encoding="utf-8")
    assert '"error_type": "ValueError"' in path.read_text(encoding="utf-8")


async def test_rerun_after_abort_discards_stale_results() -> None:
    async def slow(ctx):
        await asyncio.sleep(0.1)
        return {"run": "first"}

    first_wave = [failing("crit", RuntimeError("boom"), critical=True), CallableStage(slow, name="slow")]
    executor = PipelineExecutor([first_wave])

    with pytest.raises(PipelineError):
        await executor.execute()

    executor.waves = [[stage("fast", {"run": "second"})]]
    context = await executor.execute()
    await asyncio.sleep(0.2)

    assert [r.stage_name for r in executor.results] == ["fast"]
    assert context.results.keys() == {"fast"}
    assert executor.store.get("stage:slow") is None
