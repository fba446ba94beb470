"""FIFO counting semaphore for asyncio admission control."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)


class Semaphore:
    """Counting admission gate with strict FIFO wake-up order.

    ``asyncio.Semaphore`` lets a newly arriving coroutine take a freed
    permit ahead of coroutines already queued. This implementation hands
    a released permit directly to the oldest waiter, so no waiter is
    starved while releases keep arriving.

    All state changes happen between suspension points of a single event
    loop, so each public operation is atomic with respect to the others.

    Example:
        sem = Semaphore(2)
        async with sem.permit():
            await do_work()
    """

    def __init__(self, capacity: int):
        """Initialize the semaphore.

        Args:
            capacity: Maximum number of permits outstanding at once.

        Raises:
            ValueError: If capacity is less than 1.
        """
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._in_use = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        """Number of permits currently held."""
        return self._in_use

    @property
    def available(self) -> int:
        return self._capacity - self._in_use

    @property
    def waiting(self) -> int:
        """Number of callers queued in acquire()."""
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        """Suspend until a permit is free, then hold it."""
        if self._in_use < self._capacity and not self._waiters:
            self._in_use += 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The permit was handed over in the same tick we were cancelled.
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        """Return a permit, waking the longest-waiting caller if any.

        Raises:
            RuntimeError: If no permit is outstanding.
        """
        if self._in_use <= 0:
            raise RuntimeError("release() called without a matching acquire()")

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Ownership moves to the waiter; the in-use count is unchanged.
                waiter.set_result(None)
                return

        self._in_use -= 1

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        """Hold one permit for the duration of the block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> dict[str, int]:
        return {
            "capacity": self._capacity,
            "in_use": self._in_use,
            "available": self.available,
            "waiting": self.waiting,
        }
