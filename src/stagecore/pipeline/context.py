"""Pipeline context, configuration and stage results."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from stagecore.logger.execution_logger import generate_task_id

if TYPE_CHECKING:
    from stagecore.context.store import ContextStore
    from stagecore.workflow.loader import WorkflowDefaults, WorkflowDefinition

logger = logging.getLogger(__name__)

StageStatus = Literal["success", "error", "skipped", "denied"]


@dataclass
class PipelineConfig:
    """Configuration for pipeline execution.

    Attributes:
        max_concurrency: Maximum stages running at once within a wave.
        wave_timeout: Seconds a wave may take before the run fails.
            None waits indefinitely.
        context_ttl: Seconds stage results stay visible in the store.
            None keeps them for the whole run.
        namespace: Store namespace that stage results are written under.
        cleanup_after_wave: Sweep expired store entries after every wave.
        log_dir: Base directory for execution logs. None uses the
            working directory.
    """

    max_concurrency: int = 3
    wave_timeout: float | None = None
    context_ttl: float | None = None
    namespace: str = "stage"
    cleanup_after_wave: bool = True
    log_dir: Path | None = None

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.log_dir is not None:
            self.log_dir = Path(self.log_dir)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PipelineConfig:
        """Build a config from a mapping, ignoring unknown keys.

        ``timeout`` is accepted as an alias for ``wave_timeout``.
        """
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        if "timeout" in data and "wave_timeout" not in values:
            values["wave_timeout"] = data["timeout"]
        ignored = set(data) - known - {"timeout"}
        if ignored:
            logger.debug(f"Ignoring unknown pipeline config keys: {sorted(ignored)}")
        return cls(**values)

    @classmethod
    def from_workflow(
        cls,
        workflow: WorkflowDefinition,
        defaults: WorkflowDefaults | None = None,
        **overrides: Any,
    ) -> PipelineConfig:
        """Config from loader defaults layered under a workflow's options."""
        data: dict[str, Any] = {}
        if defaults is not None:
            data.update(defaults.model_dump(exclude_none=True))
        data.update(workflow.options.model_dump(exclude_none=True, exclude={"parallel"}))
        data.update(overrides)
        return cls.from_dict(data)


@dataclass
class StageResult:
    """Result from a pipeline stage."""

    stage_name: str
    status: StageStatus
    agent: str = ""
    output: Any = None
    error: str | None = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == "success"

    def to_record(self) -> dict[str, Any]:
        """Shape stored in the context store and read by conditions."""
        return {"status": self.status, "output": self.output, "error": self.error}


@dataclass
class PipelineContext:
    """State shared across the stages of one run.

    Attributes:
        task_id: Identifier of the run, also used for the execution log.
        description: The task text that selected the workflow.
        metadata: Caller metadata passed to conditional permissions.
        store: Context store holding stage results; set by the executor.
        results: Latest result per stage name.
        start_time: When the run started.
        current_wave: 1-based index of the wave being executed.
        stage_timings: Duration of each completed stage.
    """

    task_id: str = field(default_factory=generate_task_id)
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    store: ContextStore | None = None

    # Run state
    results: dict[str, StageResult] = field(default_factory=dict)
    start_time: datetime = field(default_factory=datetime.now)
    current_wave: int = 0
    stage_timings: dict[str, float] = field(default_factory=dict)

    def record_stage_time(self, stage_name: str, duration: float) -> None:
        self.stage_timings[stage_name] = duration

    def output_of(self, stage_name: str) -> Any:
        """Output of an earlier stage, or None if it has not produced one."""
        result = self.results.get(stage_name)
        return result.output if result is not None else None

    @property
    def total_duration(self) -> float:
        """Get total run duration in seconds."""
        return (datetime.now() - self.start_time).total_seconds()


class PipelineLogger:
    """Collects structured pipeline events and forwards them to logging.

    Every event is kept in ``logs`` for later inspection; INFO events are
    also passed to the progress callback.
    """

    def __init__(
        self,
        on_progress: Callable[[str], None] | None = None,
        verbose: bool = False,
    ):
        self.on_progress = on_progress
        self.verbose = verbose
        self.logs: list[dict[str, Any]] = []

    def info(self, message: str, stage: str | None = None) -> None:
        self._log(logging.INFO, message, stage)
        if self.on_progress:
            self.on_progress(message)

    def debug(self, message: str, stage: str | None = None) -> None:
        """Log debug message (kept only if verbose)."""
        if self.verbose:
            self._log(logging.DEBUG, message, stage)
        else:
            logger.debug(message)

    def warning(self, message: str, stage: str | None = None) -> None:
        self._log(logging.WARNING, message, stage)

    def error(self, message: str, stage: str | None = None) -> None:
        self._log(logging.ERROR, message, stage)

    def _log(self, level: int, message: str, stage: str | None) -> None:
        logger.log(level, f"[{stage}] {message}" if stage else message)
        self.logs.append(
            {
                "timestamp": datetime.now().isoformat(),
                "level": logging.getLevelName(level),
                "stage": stage,
                "message": message,
            }
        )

    def get_logs(self, level: str | None = None, stage: str | None = None) -> list[dict[str, Any]]:
        """Get logs, optionally filtered by level name and stage."""
        return [
            log
            for log in self.logs
            if (level is None or log["level"] == level) and (stage is None or log["stage"] == stage)
        ]
