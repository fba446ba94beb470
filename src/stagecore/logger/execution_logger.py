"""Persistent per-run execution logs."""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable
from datetime import date, datetime
from pathlib import Path
from typing import Any, Literal

from jinja2 import Template
from pydantic import BaseModel, Field, ValidationError

from stagecore.resources.loader import CONFIG_DIR_NAME

logger = logging.getLogger(__name__)

TaskStatus = Literal["running", "success", "error", "rollback"]

SUMMARY_TEMPLATE = Template(
    """=== Execution Summary ===

Task: {{ log.task_id }}
Input: {{ log.user_input }}
Type: {{ log.task_type }}{% if log.workflow %} ({{ log.workflow }}){% endif %}
Status: {{ log.status | upper }}
Duration: {{ '%.2f' | format(log.duration_seconds) }}s
Retries: {{ log.retry_count }}
{% if log.stages %}
Stages:
{% for stage in log.stages %}  - {{ stage.name }}{% if stage.agent and stage.agent != stage.name %} [{{ stage.agent }}]{% endif %}: {{ stage.status }} ({{ '%.2f' | format(stage.duration_seconds) }}s){% if stage.error %} - {{ stage.error }}{% endif %}
{% endfor %}{% endif %}{% if log.error %}
Error{% if log.error_type %} ({{ log.error_type }}){% endif %}: {{ log.error }}
{% endif %}"""
)


class StageExecution(BaseModel):
    name: str
    agent: str = ""
    status: str
    recorded_at: datetime
    duration_seconds: float = 0.0
    output: Any = None
    error: str | None = None


class ExecutionLog(BaseModel):
    """Everything recorded about one task run."""

    task_id: str
    user_input: str
    task_type: str = "unknown"
    workflow: str | None = None
    start_time: datetime
    end_time: datetime | None = None
    duration_seconds: float = 0.0
    status: TaskStatus = "running"
    stages: list[StageExecution] = Field(default_factory=list)
    retry_count: int = 0
    rollback_executed: bool = False
    error: str | None = None
    error_type: str | None = None


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def generate_task_id() -> str:
    return f"task-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class ExecutionLogger:
    """Records a task run and saves it as JSON when the task completes.

    Logs are written to ``<base_dir>/.stagecore/logs/<YYYY-MM-DD>_<task-id>.json``.
    Only one task is active at a time; recording without an active task
    raises ``RuntimeError``.

    Example:
        execution_logger = ExecutionLogger(base_dir=project_dir)
        execution_logger.start_task("Address PR review comments")
        execution_logger.record_stage("rule-checker", "success", output={"violations": 0})
        log = execution_logger.complete_task("success")
    """

    def __init__(
        self,
        base_dir: Path | str | None = None,
        now: Callable[[], datetime] = datetime.now,
    ):
        base = Path(base_dir) if base_dir is not None else Path.cwd()
        self._log_dir = base / CONFIG_DIR_NAME / "logs"
        self._now = now
        self._current: ExecutionLog | None = None

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    @property
    def active(self) -> bool:
        return self._current is not None

    def _require_active(self) -> ExecutionLog:
        if self._current is None:
            raise RuntimeError("No active task. Call start_task() first.")
        return self._current

    def start_task(
        self,
        user_input: str,
        task_type: str = "unknown",
        workflow: str | None = None,
        task_id: str | None = None,
    ) -> ExecutionLog:
        """Begin a new log, replacing any unfinished one.

        Returns:
            A copy of the freshly started log.
        """
        if self._current is not None:
            logger.warning(f"Discarding unfinished log for {self._current.task_id}")
        self._current = ExecutionLog(
            task_id=task_id or generate_task_id(),
            user_input=user_input,
            task_type=task_type,
            workflow=workflow,
            start_time=self._now(),
        )
        logger.debug(f"Started task {self._current.task_id}")
        return self._current.model_copy(deep=True)

    def record_stage(
        self,
        name: str,
        status: str,
        output: Any = None,
        error: str | None = None,
        agent: str = "",
        duration_seconds: float = 0.0,
    ) -> None:
        """Record a stage outcome. A second record for the same name replaces the first."""
        log = self._require_active()
        execution = StageExecution(
            name=name,
            agent=agent,
            status=status,
            recorded_at=self._now(),
            duration_seconds=duration_seconds,
            output=output,
            error=error,
        )
        for index, existing in enumerate(log.stages):
            if existing.name == name:
                log.stages[index] = execution
                return
        log.stages.append(execution)

    def record_retry(self) -> None:
        self._require_active().retry_count += 1

    def record_rollback(self) -> None:
        log = self._require_active()
        log.rollback_executed = True
        log.status = "rollback"

    def complete_task(
        self,
        status: TaskStatus,
        error: str | None = None,
        error_type: str | None = None,
    ) -> ExecutionLog:
        """Finish the active task and write its log file.

        Returns:
            The completed log.

        Raises:
            RuntimeError: If no task is active.
            OSError: If the log file cannot be written.
        """
        log = self._require_active()
        log.end_time = self._now()
        log.duration_seconds = (log.end_time - log.start_time).total_seconds()
        log.status = status
        log.error = error
        log.error_type = error_type

        path = self._save(log)
        self._current = None
        logger.info(f"Task {log.task_id} finished with status {status}; log saved to {path}")
        return log

    def _save(self, log: ExecutionLog) -> Path:
        self._log_dir.mkdir(parents=True, exist_ok=True)
        path = self._log_dir / f"{log.start_time.date().isoformat()}_{log.task_id}.json"
        with open(path, "w", encoding="utf-8") as f:
            json.dump(log.model_dump(), f, indent=2, ensure_ascii=False, default=_json_default)
        return path

    def get_current_log(self) -> ExecutionLog | None:
        if self._current is None:
            return None
        return self._current.model_copy(deep=True)

    def get_logs_between(self, start: datetime, end: datetime) -> list[ExecutionLog]:
        """Saved logs whose start time falls within [start, end], oldest first."""
        if not self._log_dir.is_dir():
            return []

        logs: list[ExecutionLog] = []
        for path in sorted(self._log_dir.glob("*.json")):
            try:
                log = ExecutionLog.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as e:
                logger.warning(f"Skipping unreadable execution log {path}: {e}")
                continue
            if start <= log.start_time <= end:
                logs.append(log)
        return sorted(logs, key=lambda log: log.start_time)

    def render_summary(self, log: ExecutionLog | None = None) -> str:
        """Human-readable summary of a log, the active one by default."""
        if log is None:
            log = self._require_active()
        return SUMMARY_TEMPLATE.render(log=log)
