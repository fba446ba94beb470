"""Stage registry with entry point discovery."""

from __future__ import annotations

import importlib
import logging
from importlib.metadata import entry_points
from typing import TYPE_CHECKING

from stagecore.workflow.loader import WorkflowConfigError

if TYPE_CHECKING:
    from stagecore.pipeline.stages import PipelineStage
    from stagecore.workflow.loader import WorkflowDefinition

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "stagecore.stages"


class StageRegistry:
    """Registry for stage classes with entry point discovery.

    Stages can be registered via:
    1. Entry points (pyproject.toml) - discovered at runtime
    2. Explicit registration - for testing or dynamic addition
    3. Module path - "package.module:ClassName" format

    Example pyproject.toml entry:
        [project.entry-points."stagecore.stages"]
        rule-checker = "myproject.stages:RuleCheckStage"
        implementer = "myproject.stages:ImplementStage"

    Usage:
        registry = StageRegistry()
        stage_class = registry.get("rule-checker")  # From entry point
        stage_class = registry.get("myproject.stages:RuleCheckStage")  # From path
    """

    def __init__(self, discover_entry_points: bool = True):
        self._stages: dict[str, type[PipelineStage]] = {}
        self._discovered = False

        if discover_entry_points:
            self.discover()

    def discover(self) -> None:
        """Discover stages from entry points."""
        if self._discovered:
            return

        for ep in entry_points(group=ENTRY_POINT_GROUP):
            try:
                self._stages[ep.name] = ep.load()
                logger.debug(f"Discovered stage: {ep.name} -> {ep.value}")
            except (ImportError, AttributeError) as e:
                logger.warning(f"Failed to load stage '{ep.name}': {e}")

        self._discovered = True
        if self._stages:
            logger.info(f"Discovered {len(self._stages)} stages from entry points")

    def register(self, name: str, stage_class: type[PipelineStage]) -> None:
        """Register a stage class under the name workflow steps use."""
        self._stages[name] = stage_class
        logger.debug(f"Registered stage: {name}")

    def get(self, name: str) -> type[PipelineStage] | None:
        """Get a stage class by name or ``module:Class`` path."""
        if name in self._stages:
            return self._stages[name]

        if ":" in name:
            return self._load_from_path(name)

        return None

    def _load_from_path(self, path: str) -> type[PipelineStage] | None:
        try:
            module_path, class_name = path.rsplit(":", 1)
            module = importlib.import_module(module_path)
            stage_class = getattr(module, class_name)
        except (ImportError, AttributeError, ValueError) as e:
            logger.warning(f"Failed to load stage from path '{path}': {e}")
            return None
        self._stages[path] = stage_class
        return stage_class

    def list_stages(self) -> list[str]:
        return sorted(self._stages.keys())

    def has(self, name: str) -> bool:
        return name in self._stages

    def clear(self) -> None:
        self._stages.clear()
        self._discovered = False


def build_waves(workflow: WorkflowDefinition, registry: StageRegistry) -> list[list[PipelineStage]]:
    """Instantiate a workflow's enabled steps, grouped into waves.

    Each step's class is looked up by its ``class`` field, falling back to
    its agent name.

    Raises:
        WorkflowConfigError: If a step's stage class cannot be found.
    """
    waves: list[list[PipelineStage]] = []
    for wave in workflow.waves():
        stages: list[PipelineStage] = []
        for step in wave:
            key = step.stage_class or step.agent
            stage_class = registry.get(key)
            if stage_class is None:
                raise WorkflowConfigError(
                    f"Unknown stage class '{key}' for step '{step.stage_name}' in workflow "
                    f"'{workflow.name}'. Register it with StageRegistry.register() first."
                )
            stages.append(
                stage_class(
                    name=step.stage_name,
                    agent=step.agent,
                    conditions=step.conditions,
                    resources=step.resources,
                    critical=step.critical,
                    config=step.config,
                )
            )
        waves.append(stages)

    logger.info(f"Built workflow '{workflow.name}' with {sum(len(w) for w in waves)} stages in {len(waves)} waves")
    return waves
