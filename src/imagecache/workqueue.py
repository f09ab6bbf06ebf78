"""Rate-limited work queue for image work requests.

The image manager consumes work from a queue shared with the image cache
controller. The queue has the semantics of the Kubernetes controller work
queue: an item is held at most once in the queue, an item that is being
processed is never handed to a second worker, and an item added while it is
being processed is queued again once the worker marks it done. Failed items
can be re-added with a per-item exponential backoff.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Hashable
from datetime import timedelta

from structlog.stdlib import BoundLogger

from .constants import RATE_LIMIT_BASE_DELAY, RATE_LIMIT_MAX_DELAY
from .exceptions import QueueShutdownError

__all__ = [
    "ItemExponentialFailureRateLimiter",
    "RateLimitingQueue",
]


class ItemExponentialFailureRateLimiter:
    """Per-item exponential backoff.

    Each time an item is rate-limited, its delay doubles, starting from the
    base delay and capped at the maximum delay. Forgetting an item resets
    its delay.

    Parameters
    ----------
    base_delay
        Delay for the first retry of an item.
    max_delay
        Maximum delay for any retry.
    """

    def __init__(
        self,
        base_delay: timedelta = RATE_LIMIT_BASE_DELAY,
        max_delay: timedelta = RATE_LIMIT_MAX_DELAY,
    ) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._failures: dict[Hashable, int] = {}

    def when(self, item: Hashable) -> timedelta:
        """Record another failure for an item and return its delay."""
        failures = self._failures.get(item, 0)
        self._failures[item] = failures + 1

        # Avoid computing enormous powers of two for items that keep failing.
        if failures > 30:
            return self._max_delay
        return min(self._base_delay * 2**failures, self._max_delay)

    def forget(self, item: Hashable) -> None:
        """Stop tracking the failures of an item."""
        self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        """Number of times the item has been rate-limited."""
        return self._failures.get(item, 0)


class RateLimitingQueue[T: Hashable]:
    """Work queue with de-duplication and rate-limited retries.

    Items must be hashable, since the queue tracks which items are waiting
    and which are being processed. All methods must be called from the
    event loop that runs the workers.

    Parameters
    ----------
    name
        Name of the queue, for logging.
    logger
        Logger to use.
    rate_limiter
        Rate limiter for `add_rate_limited`. Defaults to the standard
        per-item exponential backoff.
    """

    def __init__(
        self,
        name: str,
        logger: BoundLogger,
        rate_limiter: ItemExponentialFailureRateLimiter | None = None,
    ) -> None:
        self.name = name
        self._logger = logger.bind(queue=name)
        if rate_limiter is None:
            rate_limiter = ItemExponentialFailureRateLimiter()
        self._rate_limiter = rate_limiter
        self._queue: deque[T] = deque()
        self._dirty: set[T] = set()
        self._processing: set[T] = set()
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._delayed: set[asyncio.TimerHandle] = set()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        """Whether `shut_down` has been called."""
        return self._shutting_down

    def add(self, item: T) -> None:
        """Add an item to the queue.

        Items already waiting in the queue are not added again. Items being
        processed are queued again once they are marked done. Items added
        after shutdown are discarded.
        """
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._wake_one()

    def add_after(self, item: T, delay: timedelta) -> None:
        """Add an item to the queue after a delay."""
        if self._shutting_down:
            return
        seconds = delay.total_seconds()
        if seconds <= 0:
            self.add(item)
            return
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def add_delayed() -> None:
            self._delayed.discard(handle)
            self.add(item)

        handle = loop.call_later(seconds, add_delayed)
        self._delayed.add(handle)

    def add_rate_limited(self, item: T) -> None:
        """Add an item to the queue once its rate limiter allows it."""
        delay = self._rate_limiter.when(item)
        self._logger.debug(
            "Requeuing item with backoff",
            item=repr(item),
            delay=delay.total_seconds(),
        )
        self.add_after(item, delay)

    def done(self, item: T) -> None:
        """Mark an item returned by `get` as finished processing."""
        self._processing.discard(item)
        if item in self._dirty:
            self._queue.append(item)
            self._wake_one()

    def forget(self, item: T) -> None:
        """Reset the rate limiting history of an item."""
        self._rate_limiter.forget(item)

    def num_requeues(self, item: T) -> int:
        """Number of times the item has been rate-limited."""
        return self._rate_limiter.num_requeues(item)

    async def get(self) -> T:
        """Remove the next item from the queue, waiting if necessary.

        The caller must call `done` with the item when finished with it.

        Returns
        -------
        typing.Any
            Next item.

        Raises
        ------
        QueueShutdownError
            Raised if the queue is empty and has been shut down.
        """
        while not self._queue:
            if self._shutting_down:
                raise QueueShutdownError(f"Queue {self.name} is shut down")
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            except asyncio.CancelledError:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
                elif self._queue:
                    # We were woken for an item we will not take.
                    self._wake_one()
                raise
        item = self._queue.popleft()
        self._processing.add(item)
        self._dirty.discard(item)
        return item

    def shut_down(self) -> None:
        """Stop accepting new items and release idle workers.

        Items already in the queue are still returned by `get`. Once the
        queue is empty, `get` raises `QueueShutdownError`.
        """
        self._shutting_down = True
        for handle in self._delayed:
            handle.cancel()
        self._delayed.clear()
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    def _wake_one(self) -> None:
        """Wake up the longest-waiting worker, if any."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
