"""Admission control and bounded batch execution."""

from stagecore.concurrency.executor import BatchTimeoutError, BoundedExecutor, Task, run_batch
from stagecore.concurrency.semaphore import Semaphore

__all__ = [
    "Semaphore",
    "BoundedExecutor",
    "BatchTimeoutError",
    "Task",
    "run_batch",
]
