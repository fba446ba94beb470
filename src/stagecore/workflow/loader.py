"""Workflow loader for wave-structured stage definitions in YAML."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from stagecore.core.errors import StagecoreError
from stagecore.resources.loader import YAML_SUFFIXES, default_search_paths
from stagecore.security.permissions import Action
from stagecore.workflow.conditions import ConditionSyntaxError, parse_condition

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOWS = Path(__file__).parent / "defaults" / "workflows.yaml"

KNOWN_AGENTS: frozenset[str] = frozenset(
    {
        "pm-orchestrator",
        "rule-checker",
        "code-analyzer",
        "designer",
        "implementer",
        "tester",
        "qa",
        "cicd-engineer",
        "reporter",
    }
)


class WorkflowConfigError(StagecoreError, ValueError):
    """Raised when a workflow file is unreadable or invalid."""

    pass


class ResourceAccess(BaseModel):
    """A resource a step touches, checked against the permission policy."""

    resource: str
    action: Action


class StepDefinition(BaseModel):
    """One stage in a workflow.

    ``parallel`` puts the step in the same wave as the previous step;
    None defers to the workflow's ``options.parallel``.
    """

    model_config = ConfigDict(populate_by_name=True)

    agent: str
    name: str | None = None
    stage_class: str | None = Field(default=None, alias="class")
    conditions: list[str] = Field(default_factory=list, alias="condition")
    parallel: bool | None = None
    critical: bool = False
    enabled: bool = True
    resources: list[ResourceAccess] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("conditions", mode="before")
    @classmethod
    def _single_condition(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @property
    def stage_name(self) -> str:
        return self.name or self.agent


class WorkflowOptions(BaseModel):
    parallel: bool = False
    timeout: float | None = None
    max_concurrency: int | None = None


class WorkflowDefaults(BaseModel):
    max_concurrency: int = 3
    timeout: float | None = None
    context_ttl: float | None = None


class WorkflowDefinition(BaseModel):
    """A named, pattern-matched sequence of steps."""

    name: str
    pattern: str = ""
    description: str = ""
    version: str = "1.0"
    steps: list[StepDefinition] = Field(default_factory=list)
    options: WorkflowOptions = Field(default_factory=WorkflowOptions)

    def matches(self, text: str) -> bool:
        """Case-insensitive regex search of ``pattern`` in text."""
        if not self.pattern:
            return False
        return re.search(self.pattern, text, re.IGNORECASE) is not None

    def waves(self) -> list[list[StepDefinition]]:
        """Group enabled steps into waves of concurrently runnable steps."""
        waves: list[list[StepDefinition]] = []
        for step in self.steps:
            if not step.enabled:
                continue
            parallel = step.parallel if step.parallel is not None else self.options.parallel
            if parallel and waves:
                waves[-1].append(step)
            else:
                waves.append([step])
        return waves


class WorkflowConfig(BaseModel):
    workflows: list[WorkflowDefinition] = Field(default_factory=list)
    defaults: WorkflowDefaults = Field(default_factory=WorkflowDefaults)


class WorkflowLoader:
    """Loads workflow definitions from YAML files.

    Workflows are discovered from layered search paths (project first, then
    user; the first definition of a name wins). Packaged defaults are
    available through ``load_default()`` and explicit files through
    ``load_from_file()``.

    Example:
        loader = WorkflowLoader()
        loader.load_default()
        workflow = loader.find_matching_workflow("Address PR review comments")
        for wave in workflow.waves():
            ...
    """

    def __init__(
        self,
        search_paths: list[Path] | None = None,
        project_dir: Path | None = None,
        known_agents: Iterable[str] | None = None,
    ):
        """Initialize the workflow loader.

        Args:
            search_paths: Directories searched for ``*.yaml`` workflow files.
                Defaults to ``<project>/.stagecore/workflows`` then
                ``~/.stagecore/workflows``.
            project_dir: Project directory for the default search paths.
            known_agents: Agent names steps may reference. Defaults to the
                built-in agent set.
        """
        if search_paths is None:
            search_paths = default_search_paths("workflows", project_dir)

        self._search_paths = list(search_paths)
        self._known_agents = frozenset(known_agents) if known_agents is not None else KNOWN_AGENTS
        self._workflows: dict[str, WorkflowDefinition] = {}
        self._defaults = WorkflowDefaults()
        self._discover()

    @property
    def defaults(self) -> WorkflowDefaults:
        return self._defaults

    def add_search_path(self, path: Path, priority: int = 0) -> None:
        """Add a search path and rediscover.

        Args:
            path: Directory to search for workflow files.
            priority: 0 puts it first, anything else appends it.
        """
        if priority == 0:
            self._search_paths.insert(0, path)
        else:
            self._search_paths.append(path)
        self._discover()

    def _discover(self) -> None:
        self._workflows.clear()
        for search_path in self._search_paths:
            if not search_path.is_dir():
                continue
            for workflow_file in sorted(search_path.iterdir()):
                if workflow_file.suffix not in YAML_SUFFIXES:
                    continue
                try:
                    config = self._read(workflow_file)
                except WorkflowConfigError as e:
                    logger.warning(f"Skipping invalid workflow file {workflow_file}: {e}")
                    continue
                self._register(config, override=False)

    def load_default(self) -> WorkflowConfig:
        """Load the packaged default workflows.

        Workflows already discovered from search paths keep precedence.
        """
        config = self._read(DEFAULT_WORKFLOWS)
        self._register(config, override=False)
        return config

    def load_from_file(self, path: str | Path) -> WorkflowConfig:
        """Load workflows from an explicit YAML or JSON file.

        Definitions from the file replace registered ones of the same name.

        Raises:
            FileNotFoundError: If the file does not exist.
            WorkflowConfigError: If the format is unsupported or invalid.
        """
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"Workflow file not found: {path}")
        config = self._read(path)
        self._register(config, override=True)
        return config

    def load_from_dict(self, data: dict[str, Any], source: str = "<dict>") -> WorkflowConfig:
        config = self._validate(data, source)
        self._register(config, override=True)
        return config

    def _read(self, path: Path) -> WorkflowConfig:
        suffix = path.suffix.lower()
        try:
            with open(path, encoding="utf-8") as f:
                if suffix in YAML_SUFFIXES:
                    data = yaml.safe_load(f)
                elif suffix == ".json":
                    data = json.load(f)
                else:
                    raise WorkflowConfigError(f"Unsupported file format: {path.suffix or path.name}")
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise WorkflowConfigError(f"Failed to parse {path}: {e}") from e
        return self._validate(data or {}, str(path))

    def _validate(self, data: Any, source: str) -> WorkflowConfig:
        if not isinstance(data, dict):
            raise WorkflowConfigError(f"{source}: workflow file must contain a mapping")

        for index, workflow in enumerate(data.get("workflows") or []):
            if not isinstance(workflow, dict) or not workflow.get("name"):
                raise WorkflowConfigError(f"{source}: workflow #{index + 1} must have a name")
            name = workflow["name"]
            steps = workflow.get("steps") or []
            if not steps:
                raise WorkflowConfigError(f"{source}: workflow '{name}' must have at least one step")
            for step in steps:
                agent = step.get("agent") if isinstance(step, dict) else None
                if agent not in self._known_agents:
                    raise WorkflowConfigError(f"{source}: Invalid agent '{agent}' in workflow '{name}'")

        try:
            config = WorkflowConfig.model_validate(data)
        except ValidationError as e:
            raise WorkflowConfigError(f"{source}: {e}") from e

        for workflow in config.workflows:
            if workflow.pattern:
                try:
                    re.compile(workflow.pattern)
                except re.error as e:
                    raise WorkflowConfigError(
                        f"{source}: workflow '{workflow.name}' has an invalid pattern: {e}"
                    ) from e
            for step in workflow.steps:
                for condition in step.conditions:
                    try:
                        parse_condition(condition)
                    except ConditionSyntaxError as e:
                        raise WorkflowConfigError(
                            f"{source}: step '{step.stage_name}' in workflow '{workflow.name}': {e}"
                        ) from e
        return config

    def _register(self, config: WorkflowConfig, override: bool) -> None:
        for workflow in config.workflows:
            if not override and workflow.name in self._workflows:
                continue
            self._workflows[workflow.name] = workflow
        if "defaults" in config.model_fields_set or override:
            self._defaults = config.defaults
        logger.debug(f"Registered {len(config.workflows)} workflow(s)")

    def find_matching_workflow(self, text: str) -> WorkflowDefinition | None:
        """First registered workflow whose pattern matches text."""
        for workflow in self._workflows.values():
            if workflow.matches(text):
                return workflow
        return None

    def get(self, name: str) -> WorkflowDefinition | None:
        return self._workflows.get(name)

    def load(self, name: str) -> WorkflowDefinition:
        """Get a workflow by name.

        Raises:
            FileNotFoundError: If no workflow has that name.
        """
        workflow = self.get(name)
        if workflow is None:
            raise FileNotFoundError(f"Workflow '{name}' not found")
        return workflow

    def list_workflows(self) -> list[str]:
        return sorted(self._workflows)

    def list_definitions(self) -> list[WorkflowDefinition]:
        return list(self._workflows.values())
