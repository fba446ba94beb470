"""stagecore - Coordination core for multi-stage agent pipelines.

Bounded-concurrency execution, a shared TTL context store, gating
conditions over earlier stage results, and a role-based access policy
between stages.
"""

__version__ = "0.1.0"

from stagecore.concurrency.executor import BatchTimeoutError, BoundedExecutor
from stagecore.concurrency.semaphore import Semaphore
from stagecore.context.file_cache import FileCache
from stagecore.context.store import ContextStore
from stagecore.core.errors import StagecoreError
from stagecore.pipeline.context import PipelineConfig, PipelineContext, StageResult
from stagecore.pipeline.executor import PipelineError, PipelineExecutor
from stagecore.pipeline.stages import CallableStage, PipelineStage
from stagecore.security.permissions import PermissionChecker, PermissionDeniedError
from stagecore.workflow.conditions import ConditionEvaluator
from stagecore.workflow.loader import WorkflowLoader

__all__ = [
    "StagecoreError",
    # Concurrency
    "Semaphore",
    "BoundedExecutor",
    "BatchTimeoutError",
    # Context
    "ContextStore",
    "FileCache",
    # Conditions and policy
    "ConditionEvaluator",
    "PermissionChecker",
    "PermissionDeniedError",
    # Pipeline
    "PipelineExecutor",
    "PipelineError",
    "PipelineStage",
    "CallableStage",
    "PipelineContext",
    "PipelineConfig",
    "StageResult",
    "WorkflowLoader",
]
