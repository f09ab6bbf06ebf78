"""Tests for the rate-limited work queue."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
import structlog

from imagecache.exceptions import QueueShutdownError
from imagecache.workqueue import (
    ItemExponentialFailureRateLimiter,
    RateLimitingQueue,
)


def make_queue(
    rate_limiter: ItemExponentialFailureRateLimiter | None = None,
) -> RateLimitingQueue[str]:
    logger = structlog.get_logger(__name__)
    return RateLimitingQueue("test", logger, rate_limiter)


def test_rate_limiter() -> None:
    limiter = ItemExponentialFailureRateLimiter(
        timedelta(milliseconds=5), timedelta(seconds=1)
    )
    delays = [limiter.when("item") for _ in range(10)]
    assert delays[:4] == [
        timedelta(milliseconds=5),
        timedelta(milliseconds=10),
        timedelta(milliseconds=20),
        timedelta(milliseconds=40),
    ]
    assert delays[-1] == timedelta(seconds=1)
    assert limiter.num_requeues("item") == 10
    assert limiter.num_requeues("other") == 0

    limiter.forget("item")
    assert limiter.num_requeues("item") == 0
    assert limiter.when("item") == timedelta(milliseconds=5)

    # Items that have failed many times stay at the maximum.
    for _ in range(100):
        delay = limiter.when("other")
    assert delay == timedelta(seconds=1)


@pytest.mark.asyncio
async def test_deduplication() -> None:
    queue = make_queue()
    queue.add("a")
    queue.add("b")
    queue.add("a")
    assert len(queue) == 2

    assert await queue.get() == "a"
    assert await queue.get() == "b"
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_add_while_processing() -> None:
    queue = make_queue()
    queue.add("a")
    item = await queue.get()

    # An item being processed is not handed out again until it is done.
    queue.add("a")
    queue.add("a")
    assert len(queue) == 0
    queue.done(item)
    assert len(queue) == 1
    assert await queue.get() == "a"
    queue.done("a")
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_get_waits() -> None:
    queue = make_queue()
    task = asyncio.create_task(queue.get())
    await asyncio.sleep(0.01)
    assert not task.done()

    queue.add("a")
    assert await asyncio.wait_for(task, 1) == "a"


@pytest.mark.asyncio
async def test_add_after() -> None:
    queue = make_queue()
    queue.add_after("a", timedelta(milliseconds=50))
    assert len(queue) == 0
    await asyncio.sleep(0.1)
    assert len(queue) == 1

    # Non-positive delays add immediately.
    queue.add_after("b", timedelta(seconds=0))
    assert len(queue) == 2


@pytest.mark.asyncio
async def test_add_rate_limited() -> None:
    limiter = ItemExponentialFailureRateLimiter(
        timedelta(milliseconds=10), timedelta(seconds=1)
    )
    queue = make_queue(limiter)
    queue.add_rate_limited("a")
    assert queue.num_requeues("a") == 1
    assert len(queue) == 0
    await asyncio.sleep(0.05)
    assert len(queue) == 1

    queue.forget("a")
    assert queue.num_requeues("a") == 0


@pytest.mark.asyncio
async def test_shutdown() -> None:
    queue = make_queue()
    waiter = asyncio.create_task(queue.get())
    await asyncio.sleep(0.01)
    queue.add_after("delayed", timedelta(milliseconds=20))

    queue.shut_down()
    assert queue.shutting_down
    with pytest.raises(QueueShutdownError):
        await asyncio.wait_for(waiter, 1)

    # Nothing can be added after shutdown, including delayed additions.
    queue.add("a")
    await asyncio.sleep(0.05)
    assert len(queue) == 0
    with pytest.raises(QueueShutdownError):
        await queue.get()


@pytest.mark.asyncio
async def test_shutdown_drains() -> None:
    queue = make_queue()
    queue.add("a")
    queue.shut_down()

    # Items queued before shutdown are still returned.
    assert await queue.get() == "a"
    with pytest.raises(QueueShutdownError):
        await queue.get()


@pytest.mark.asyncio
async def test_cancelled_get() -> None:
    queue = make_queue()
    first = asyncio.create_task(queue.get())
    second = asyncio.create_task(queue.get())
    await asyncio.sleep(0.01)
    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first

    queue.add("a")
    assert await asyncio.wait_for(second, 1) == "a"
