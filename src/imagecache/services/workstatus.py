"""Table of the jobs created by the image manager and their state."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from ..models.domain.imagework import ImageWorkResult, ImageWorkResultStatus

__all__ = ["WorkStatusTable"]


class WorkStatusTable:
    """Record of every outstanding pull or purge job, keyed by job name.

    The table is shared by the dispatcher workers, the pod watch and the
    status refresh tasks. Every method holds the table lock for its whole
    operation, and entries are immutable, so callers always see either the
    old or the new state of an entry. Snapshots are copies and do not change
    after they are returned.
    """

    def __init__(self) -> None:
        self._entries: dict[str, ImageWorkResult] = {}
        self._expecting_completion: set[str] = set()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def insert(self, job: str, result: ImageWorkResult) -> None:
        """Record a newly-created job, replacing any previous entry."""
        async with self._lock:
            self._entries[job] = result

    async def insert_if_missing(
        self, job: str, result: ImageWorkResult
    ) -> bool:
        """Record a job unless it is already tracked.

        Returns
        -------
        bool
            `True` if the entry was added, `False` if the job was already
            tracked.
        """
        async with self._lock:
            if job in self._entries:
                return False
            self._entries[job] = result
            return True

    async def get(self, job: str) -> ImageWorkResult | None:
        """Return the entry for a job, or `None` if it is not tracked."""
        async with self._lock:
            return self._entries.get(job)

    async def finalize(
        self,
        job: str,
        status: ImageWorkResultStatus,
        *,
        reason: str | None = None,
        message: str | None = None,
    ) -> ImageWorkResult | None:
        """Move the entry for a job to a terminal status.

        Parameters
        ----------
        job
            Name of the job.
        status
            New terminal status.
        reason
            Short reason for the outcome, if known.
        message
            Diagnostic message for the outcome, if known.

        Returns
        -------
        ImageWorkResult or None
            The updated entry if this call finalized it, or `None` if the job
            is not tracked or its entry was already terminal.
        """
        async with self._lock:
            current = self._entries.get(job)
            if not current or current.status.is_terminal:
                return None
            result = current.finalize(status, reason=reason, message=message)
            self._entries[job] = result
            return result

    async def add_diagnostics(
        self, job: str, reason: str | None, message: str | None
    ) -> ImageWorkResult | None:
        """Attach failure diagnostics to the entry for a job.

        Returns
        -------
        ImageWorkResult or None
            The updated entry, or `None` if the job is not tracked.
        """
        async with self._lock:
            current = self._entries.get(job)
            if not current:
                return None
            result = current.with_diagnostics(reason, message)
            self._entries[job] = result
            return result

    async def delete(self, job: str) -> None:
        """Stop tracking a job. Unknown jobs are ignored."""
        async with self._lock:
            self._entries.pop(job, None)

    async def mark_job_deleted(self, job: str) -> ImageWorkResult | None:
        """Record that the job behind an entry has been deleted.

        Returns
        -------
        ImageWorkResult or None
            The updated entry, or `None` if the job is not tracked.
        """
        async with self._lock:
            current = self._entries.get(job)
            if not current:
                return None
            result = current.with_job_deleted()
            self._entries[job] = result
            return result

    async def expect_completion(self, image_cache: str) -> None:
        """Note that all work for an image cache has been queued.

        Once that is known, the image cache is reported as finished as soon
        as all of its jobs have finished.
        """
        async with self._lock:
            self._expecting_completion.add(image_cache)

    async def completion_expected(self, image_cache: str) -> bool:
        """Whether `expect_completion` was called for an image cache."""
        async with self._lock:
            return image_cache in self._expecting_completion

    async def complete(self, image_cache: str, jobs: Iterable[str]) -> None:
        """Stop tracking the finished jobs of an image cache.

        Parameters
        ----------
        image_cache
            Name of the image cache whose status has been reported.
        jobs
            Jobs included in that report.
        """
        async with self._lock:
            for job in jobs:
                self._entries.pop(job, None)
            self._expecting_completion.discard(image_cache)

    async def entries_for_image_cache(
        self, name: str
    ) -> dict[str, ImageWorkResult]:
        """Return a snapshot of the entries owned by an image cache.

        Parameters
        ----------
        name
            Name of the image cache.

        Returns
        -------
        dict of ImageWorkResult
            Entries whose request names that image cache, keyed by job name.
        """
        async with self._lock:
            return {
                job: result
                for job, result in self._entries.items()
                if result.request.image_cache
                and result.request.image_cache.name == name
            }

    async def snapshot(self) -> dict[str, ImageWorkResult]:
        """Return a snapshot of every entry, keyed by job name."""
        async with self._lock:
            return dict(self._entries)
