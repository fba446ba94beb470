"""Tests for the FIFO semaphore."""

from __future__ import annotations

import asyncio

import pytest

from stagecore.concurrency import Semaphore


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        Semaphore(0)


async def test_acquire_and_release_track_permits() -> None:
    sem = Semaphore(2)
    await sem.acquire()
    await sem.acquire()

    assert sem.in_use == 2
    assert sem.available == 0

    sem.release()
    assert sem.in_use == 1
    sem.release()
    assert sem.snapshot() == {"capacity": 2, "in_use": 0, "available": 2, "waiting": 0}


async def test_release_without_acquire_raises() -> None:
    sem = Semaphore(1)
    with pytest.raises(RuntimeError):
        sem.release()


async def test_waiters_are_woken_in_fifo_order() -> None:
    sem = Semaphore(1)
    await sem.acquire()
    order: list[int] = []

    async def waiter(ident: int) -> None:
        await sem.acquire()
        order.append(ident)
        await asyncio.sleep(0)
        sem.release()

    tasks = [asyncio.create_task(waiter(i)) for i in range(5)]
    await asyncio.sleep(0)
    assert sem.waiting == 5

    sem.release()
    await asyncio.gather(*tasks)

    assert order == [0, 1, 2, 3, 4]
    assert sem.in_use == 0


async def test_released_permit_goes_to_waiter_not_newcomer() -> None:
    sem = Semaphore(1)
    await sem.acquire()
    order: list[str] = []

    async def take(name: str) -> None:
        async with sem.permit():
            order.append(name)

    queued = asyncio.create_task(take("queued"))
    await asyncio.sleep(0)

    sem.release()
    # The permit was handed over; a newcomer must queue behind.
    assert sem.in_use == 1
    newcomer = asyncio.create_task(take("newcomer"))

    await asyncio.gather(queued, newcomer)
    assert order == ["queued", "newcomer"]


async def test_cancelled_waiter_leaves_queue() -> None:
    sem = Semaphore(1)
    await sem.acquire()

    task = asyncio.create_task(sem.acquire())
    await asyncio.sleep(0)
    assert sem.waiting == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert sem.waiting == 0
    sem.release()
    assert sem.in_use == 0


async def test_permit_released_when_block_raises() -> None:
    sem = Semaphore(1)

    with pytest.raises(ValueError):
        async with sem.permit():
            assert sem.in_use == 1
            raise ValueError("boom")

    assert sem.in_use == 0
