"""Tests for pipeline configuration, stage registry and wave building."""

from __future__ import annotations

from pathlib import Path

import pytest

from stagecore.pipeline import (
    CallableStage,
    PipelineConfig,
    PipelineLogger,
    PipelineStage,
    StageRegistry,
    build_waves,
)
from stagecore.workflow import WorkflowConfigError, WorkflowDefaults, WorkflowDefinition


class EchoStage(PipelineStage):
    async def run(self, context):
        return {"echo": self.name}


def test_config_defaults() -> None:
    config = PipelineConfig()

    assert config.max_concurrency == 3
    assert config.wave_timeout is None
    assert config.namespace == "stage"
    assert config.cleanup_after_wave


def test_config_from_dict() -> None:
    config = PipelineConfig.from_dict(
        {"max_concurrency": 5, "timeout": 60, "log_dir": "/tmp/logs", "unknown": True}
    )

    assert config.max_concurrency == 5
    assert config.wave_timeout == 60
    assert config.log_dir == Path("/tmp/logs")


def test_config_rejects_invalid_concurrency() -> None:
    with pytest.raises(ValueError):
        PipelineConfig(max_concurrency=0)


def test_config_from_workflow_layers_options_over_defaults() -> None:
    workflow = WorkflowDefinition.model_validate(
        {"name": "W", "steps": [{"agent": "qa"}], "options": {"timeout": 600}}
    )
    defaults = WorkflowDefaults(max_concurrency=4, timeout=3600, context_ttl=30)

    config = PipelineConfig.from_workflow(workflow, defaults, namespace="quality")

    assert config.max_concurrency == 4
    assert config.wave_timeout == 600
    assert config.context_ttl == 30
    assert config.namespace == "quality"


def test_registry_register_and_get() -> None:
    registry = StageRegistry(discover_entry_points=False)
    registry.register("qa", EchoStage)

    assert registry.get("qa") is EchoStage
    assert registry.has("qa")
    assert registry.get("missing") is None
    assert registry.list_stages() == ["qa"]

    registry.clear()
    assert registry.list_stages() == []


def test_registry_loads_module_paths() -> None:
    registry = StageRegistry(discover_entry_points=False)

    assert registry.get("stagecore.pipeline.stages:CallableStage") is CallableStage
    assert registry.has("stagecore.pipeline.stages:CallableStage")
    assert registry.get("stagecore.pipeline.stages:Nope") is None
    assert registry.get("no.such.module:Stage") is None


def test_build_waves_instantiates_steps() -> None:
    workflow = WorkflowDefinition.model_validate(
        {
            "name": "Review",
            "steps": [
                {"agent": "rule-checker", "critical": True},
                {
                    "agent": "implementer",
                    "name": "fixer",
                    "condition": "rule-checker.status == 'success'",
                    "resources": [{"resource": "src/app.py", "action": "write"}],
                    "config": {"retries": 2},
                },
                {"agent": "qa", "class": "echo", "parallel": True},
            ],
        }
    )
    registry = StageRegistry(discover_entry_points=False)
    for name in ("rule-checker", "implementer", "echo"):
        registry.register(name, EchoStage)

    waves = build_waves(workflow, registry)

    assert [[s.name for s in wave] for wave in waves] == [["rule-checker"], ["fixer", "qa"]]
    checker, fixer, qa = waves[0][0], waves[1][0], waves[1][1]
    assert checker.is_critical
    assert fixer.agent == "implementer"
    assert fixer.conditions == ["rule-checker.status == 'success'"]
    assert fixer.resources[0].resource == "src/app.py"
    assert fixer.config == {"retries": 2}
    assert qa.agent == "qa"
    assert not qa.is_critical


def test_build_waves_unknown_stage() -> None:
    workflow = WorkflowDefinition.model_validate({"name": "W", "steps": [{"agent": "designer"}]})

    with pytest.raises(WorkflowConfigError, match="Unknown stage class 'designer'"):
        build_waves(workflow, StageRegistry(discover_entry_points=False))


def test_should_run_uses_conditions() -> None:
    stage = EchoStage(name="reporter", conditions=["qa.status == 'success'"])

    assert stage.should_run({"qa": {"status": "success", "output": {}}})
    assert not stage.should_run({})
    assert EchoStage(name="free").should_run({})


def test_pipeline_logger_filters() -> None:
    progress = []
    pipeline_logger = PipelineLogger(on_progress=progress.append)

    pipeline_logger.info("starting")
    pipeline_logger.warning("slow stage", stage="qa")
    pipeline_logger.debug("hidden")

    assert progress == ["starting"]
    assert [log["message"] for log in pipeline_logger.get_logs()] == ["starting", "slow stage"]
    assert pipeline_logger.get_logs(level="WARNING", stage="qa")[0]["message"] == "slow stage"
    assert pipeline_logger.get_logs(stage="reporter") == []
