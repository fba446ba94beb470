"""Wave-based pipeline execution for stagecore."""

from stagecore.pipeline.context import (
    PipelineConfig,
    PipelineContext,
    PipelineLogger,
    StageResult,
)
from stagecore.pipeline.executor import PipelineError, PipelineExecutor
from stagecore.pipeline.registry import StageRegistry, build_waves
from stagecore.pipeline.stages import CallableStage, PipelineStage

__all__ = [
    # Executor
    "PipelineExecutor",
    "PipelineError",
    # Stages
    "PipelineStage",
    "CallableStage",
    "StageRegistry",
    "build_waves",
    # Context
    "PipelineContext",
    "PipelineConfig",
    "PipelineLogger",
    "StageResult",
]
