"""Bounded-concurrency batch executor."""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar, Union

from stagecore.concurrency.semaphore import Semaphore
from stagecore.core.errors import StagecoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# A niladic closure returning either an awaitable or an already-computed value.
Task = Callable[[], Union[Awaitable[T], T]]


class BatchTimeoutError(StagecoreError, TimeoutError):
    """Raised when a batch has not settled within its timeout."""

    def __init__(self, timeout: float, task_count: int = 0):
        self.timeout = timeout
        self.task_count = task_count
        super().__init__(
            f"Batch of {task_count} task(s) did not complete within timeout of {timeout}s"
        )


class BoundedExecutor:
    """Runs batches of task closures with at most ``limit`` in flight.

    Results come back in submission order regardless of completion order.
    The first task to fail fails the whole batch with that task's own
    exception; a timeout fails it with ``BatchTimeoutError``. In both
    cases tasks still running are left to finish in the background unless
    the executor was built with ``cancel_pending=True``. Their late results
    and errors are discarded.

    The semaphore belongs to the executor, so a reused executor shares its
    limit across batches, including tasks left running by an earlier batch.

    Example:
        executor = BoundedExecutor(limit=3)
        results = await executor.run_batch([fetch_a, fetch_b], timeout=30)
    """

    def __init__(self, limit: int, cancel_pending: bool = False):
        """Initialize the executor.

        Args:
            limit: Maximum number of tasks running concurrently.
            cancel_pending: Cancel still-running tasks when a batch fails or
                times out. Off by default.

        Raises:
            ValueError: If limit is less than 1.
        """
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self._limit = limit
        self._cancel_pending = cancel_pending
        self._semaphore = Semaphore(limit)
        self._orphans: set[asyncio.Task[Any]] = set()
        self._active = 0
        self._peak_active = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        """Tasks currently executing (holding a permit)."""
        return self._active

    @property
    def peak_active(self) -> int:
        """Highest number of tasks observed executing at once."""
        return self._peak_active

    @property
    def orphaned(self) -> int:
        """Tasks from failed or timed-out batches that are still running."""
        return len(self._orphans)

    async def run_batch(
        self,
        tasks: Sequence[Task[T]],
        timeout: float | None = None,
    ) -> list[T]:
        """Run all tasks and return their results in submission order.

        Args:
            tasks: Niladic closures. Each may return an awaitable or a value.
            timeout: Seconds to wait for the whole batch, or None to wait
                indefinitely.

        Returns:
            One result per task, in the order the tasks were given.

        Raises:
            BatchTimeoutError: If the batch has not settled within timeout.
            Exception: The first observed task failure, unchanged.
        """
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be > 0")
        if not tasks:
            return []

        loop = asyncio.get_running_loop()
        outcome: asyncio.Future[list[Any]] = loop.create_future()
        results: list[Any] = [None] * len(tasks)
        remaining = len(tasks)

        def settle(index: int, task: asyncio.Task[Any]) -> None:
            nonlocal remaining
            remaining -= 1

            if task.cancelled():
                if not outcome.done():
                    outcome.cancel()
                return

            exc = task.exception()
            if outcome.done():
                if exc is not None:
                    logger.debug(f"Discarding late failure from task {index}: {exc!r}")
                return

            if exc is not None:
                logger.debug(f"Task {index} failed, failing batch: {exc!r}")
                outcome.set_exception(exc)
                return

            results[index] = task.result()
            if remaining == 0:
                outcome.set_result(results)

        running: list[asyncio.Task[Any]] = []
        for index, task in enumerate(tasks):
            scheduled = asyncio.create_task(self._run_one(task))
            scheduled.add_done_callback(functools.partial(settle, index))
            running.append(scheduled)

        logger.debug(f"Submitted batch of {len(running)} task(s) with limit {self._limit}")

        try:
            done, _ = await asyncio.wait({outcome}, timeout=timeout)
        except asyncio.CancelledError:
            self._abandon(running)
            raise

        if not done:
            outcome.cancel()
            self._abandon(running)
            logger.warning(f"Batch of {len(running)} task(s) timed out after {timeout}s")
            raise BatchTimeoutError(timeout, len(running))

        if outcome.cancelled():
            self._abandon(running)
            raise asyncio.CancelledError("batch task was cancelled")

        exc = outcome.exception()
        if exc is not None:
            self._abandon(running)
            raise exc

        return outcome.result()

    async def _run_one(self, task: Task[T]) -> T:
        async with self._semaphore.permit():
            self._active += 1
            self._peak_active = max(self._peak_active, self._active)
            try:
                result = task()
                if inspect.isawaitable(result):
                    result = await result
                return result
            finally:
                self._active -= 1

    def _abandon(self, running: list[asyncio.Task[Any]]) -> None:
        """Detach unfinished tasks from a batch that will not wait for them."""
        for task in running:
            if task.done():
                continue
            if self._cancel_pending:
                task.cancel()
            self._orphans.add(task)
            task.add_done_callback(self._orphans.discard)

        if self._orphans:
            logger.debug(f"{len(self._orphans)} task(s) left running in background")


async def run_batch(
    tasks: Sequence[Task[T]],
    limit: int,
    timeout: float | None = None,
) -> list[T]:
    """Run a batch on a fresh executor. See ``BoundedExecutor.run_batch``."""
    return await BoundedExecutor(limit).run_batch(tasks, timeout=timeout)
