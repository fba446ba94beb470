"""Pipeline stage base class."""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any

from stagecore.workflow.conditions import ConditionEvaluator
from stagecore.workflow.loader import ResourceAccess

if TYPE_CHECKING:
    from stagecore.pipeline.context import PipelineContext

logger = logging.getLogger(__name__)

_default_evaluator = ConditionEvaluator()


def _resource_access(item: ResourceAccess | Mapping[str, Any] | tuple[str, str]) -> ResourceAccess:
    if isinstance(item, ResourceAccess):
        return item
    if isinstance(item, tuple):
        resource, action = item
        return ResourceAccess(resource=resource, action=action)
    return ResourceAccess.model_validate(item)


class PipelineStage(ABC):
    """Base class for pipeline stages.

    Stages implement the async ``run()`` method and may override
    ``should_run()``. By default a stage runs when all of its conditions
    hold against the results of earlier stages.

    Attributes:
        name: Stage name; results are stored and referenced under it.
        agent: Identity used for permission checks and result tagging.
        conditions: Condition expressions that must all hold.
        resources: Resources the stage touches, authorized before it runs.
        is_critical: If True, the run stops when this stage fails or is denied.
        config: Stage-specific settings from the workflow step.

    Example:
        class RuleCheckStage(PipelineStage):
            name = "rule-checker"
            is_critical = True

            async def run(self, context):
                files = context.output_of("code-analyzer") or []
                return {"violations": [], "checked": len(files)}
    """

    name: str = "base"
    agent: str = ""
    is_critical: bool = False

    def __init__(
        self,
        name: str | None = None,
        agent: str | None = None,
        conditions: Iterable[str] | None = None,
        resources: Iterable[ResourceAccess | Mapping[str, Any] | tuple[str, str]] | None = None,
        critical: bool | None = None,
        config: Mapping[str, Any] | None = None,
    ):
        if name is not None:
            self.name = name
        if agent is not None:
            self.agent = agent
        if not self.agent:
            self.agent = self.name
        if critical is not None:
            self.is_critical = critical
        self.conditions: list[str] = list(conditions or [])
        self.resources: list[ResourceAccess] = [_resource_access(r) for r in resources or []]
        self.config: dict[str, Any] = dict(config or {})

    @abstractmethod
    async def run(self, context: PipelineContext) -> Any:
        """Execute this stage.

        Returns:
            The stage output, usually a mapping that later conditions
            can inspect.

        Raises:
            Exception: On failure (stops the run if is_critical).
        """
        pass

    def should_run(self, snapshot: Mapping[str, Any], evaluator: ConditionEvaluator | None = None) -> bool:
        """Check if this stage should run.

        Args:
            snapshot: Stage name to ``{status, output}`` of earlier stages.
            evaluator: Condition evaluator to use.

        Returns:
            True if the stage should execute, False to skip.
        """
        return (evaluator or _default_evaluator).evaluate_all(self.conditions, snapshot)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, agent={self.agent!r})"


class CallableStage(PipelineStage):
    """Stage backed by a plain function or coroutine function.

    The function receives the pipeline context and returns the output.

    Example:
        stage = CallableStage(lambda ctx: {"score": 85}, name="qa")
    """

    def __init__(self, func: Callable[[PipelineContext], Any], name: str | None = None, **kwargs: Any):
        super().__init__(name=name or getattr(func, "__name__", "callable"), **kwargs)
        self.func = func

    async def run(self, context: PipelineContext) -> Any:
        result = self.func(context)
        if inspect.isawaitable(result):
            result = await result
        return result
