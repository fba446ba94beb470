"""Execution logging for pipeline runs."""

from stagecore.logger.execution_logger import (
    ExecutionLog,
    ExecutionLogger,
    StageExecution,
    generate_task_id,
)

__all__ = [
    "ExecutionLogger",
    "ExecutionLog",
    "StageExecution",
    "generate_task_id",
]
