"""Timeout class for Kubernetes operations."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from safir.datetime import current_datetime

from .exceptions import ControllerTimeoutError

__all__ = ["Timeout"]


class Timeout:
    """Track a cumulative timeout on a series of operations.

    Creating a job, or collecting the status of all jobs for an image cache,
    is a sequence of Kubernetes API calls that should all finish within one
    overall timeout. This class encapsulates that type of timeout and
    provides the remaining time for each individual call.

    Parameters
    ----------
    operation
        Human-readable name of operation, for error reporting.
    timeout
        Duration of the timeout.
    """

    def __init__(self, operation: str, timeout: timedelta) -> None:
        self._operation = operation
        self._timeout = timeout
        self._start = current_datetime(microseconds=True)

    def elapsed(self) -> float:
        """Elapsed time since the timeout started, in seconds."""
        now = current_datetime(microseconds=True)
        return (now - self._start).total_seconds()

    @asynccontextmanager
    async def enforce(self) -> AsyncIterator[None]:
        """Enforce the timeout and translate `TimeoutError`.

        Raises
        ------
        ControllerTimeoutError
            Raised if `TimeoutError` was raised inside the enclosed operation.
        """
        try:
            async with asyncio.timeout(self.left()):
                yield
        except TimeoutError as e:
            raise ControllerTimeoutError(
                self._operation,
                started_at=self._start,
                failed_at=current_datetime(microseconds=True),
            ) from e

    def left(self) -> float:
        """Return the amount of time remaining in seconds.

        Raises
        ------
        ControllerTimeoutError
            Raised if the timeout has expired.
        """
        now = current_datetime(microseconds=True)
        left = (self._timeout - (now - self._start)).total_seconds()
        if left <= 0.0:
            raise ControllerTimeoutError(
                self._operation, started_at=self._start, failed_at=now
            )
        return left
