"""Tests for the work status table."""

from __future__ import annotations

import asyncio

import pytest

from imagecache.models.domain.imagework import (
    ImageCacheReference,
    ImageWorkResult,
    ImageWorkResultStatus,
)
from imagecache.services.workstatus import WorkStatusTable

from ..support.data import make_pull, make_purge


@pytest.mark.asyncio
async def test_lifecycle() -> None:
    table = WorkStatusTable()
    result = ImageWorkResult(request=make_pull())
    await table.insert("job1", result)
    assert len(table) == 1
    assert await table.get("job1") == result
    assert await table.get("unknown") is None

    finalized = await table.finalize(
        "job1", ImageWorkResultStatus.FAILED, reason="Error", message="oops"
    )
    assert finalized
    assert finalized.status == ImageWorkResultStatus.FAILED
    assert await table.get("job1") == finalized

    # Finalizing again, or finalizing an unknown job, does nothing.
    status = ImageWorkResultStatus.SUCCEEDED
    assert await table.finalize("job1", status) is None
    status = ImageWorkResultStatus.FAILED
    assert await table.finalize("unknown", status) is None
    entry = await table.get("job1")
    assert entry
    assert entry.status == ImageWorkResultStatus.FAILED

    updated = await table.add_diagnostics("job1", "Error", "pull failed")
    assert updated
    assert updated.message == "pull failed"
    assert await table.add_diagnostics("unknown", None, None) is None

    await table.delete("job1")
    await table.delete("job1")
    assert len(table) == 0


@pytest.mark.asyncio
async def test_insert_if_missing() -> None:
    table = WorkStatusTable()
    first = ImageWorkResult(request=make_pull())
    second = ImageWorkResult(request=make_purge())
    assert await table.insert_if_missing("job1", first)
    assert not await table.insert_if_missing("job1", second)
    assert await table.get("job1") == first


@pytest.mark.asyncio
async def test_entries_for_image_cache() -> None:
    table = WorkStatusTable()
    other = ImageCacheReference(name="other-cache", namespace="default")
    await table.insert("job1", ImageWorkResult(request=make_pull()))
    await table.insert("job2", ImageWorkResult(request=make_purge()))
    await table.insert(
        "job3", ImageWorkResult(request=make_pull(image_cache=other))
    )
    await table.insert(
        "job4", ImageWorkResult(request=make_pull(image_cache=None))
    )

    entries = await table.entries_for_image_cache("test-cache")
    assert sorted(entries) == ["job1", "job2"]
    assert list(await table.entries_for_image_cache("other-cache")) == ["job3"]
    assert await table.entries_for_image_cache("missing") == {}

    # Snapshots do not change when the table does.
    await table.delete("job1")
    assert "job1" in entries
    assert sorted(await table.snapshot()) == ["job2", "job3", "job4"]


@pytest.mark.asyncio
async def test_concurrent_finalize() -> None:
    table = WorkStatusTable()
    await table.insert("job1", ImageWorkResult(request=make_pull()))
    results = await asyncio.gather(
        table.finalize("job1", ImageWorkResultStatus.SUCCEEDED),
        table.finalize("job1", ImageWorkResultStatus.FAILED),
        table.finalize("job1", ImageWorkResultStatus.SUCCEEDED),
    )

    # Exactly one of the calls records the outcome.
    assert len([r for r in results if r]) == 1
    entry = await table.get("job1")
    assert entry
    assert entry.status == ImageWorkResultStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_mark_job_deleted() -> None:
    table = WorkStatusTable()
    await table.insert("job1", ImageWorkResult(request=make_purge()))
    await table.finalize("job1", ImageWorkResultStatus.SUCCEEDED)

    deleted = await table.mark_job_deleted("job1")
    assert deleted
    assert deleted.job_deleted
    assert deleted.status == ImageWorkResultStatus.SUCCEEDED
    assert await table.get("job1") == deleted
    assert await table.mark_job_deleted("unknown") is None


@pytest.mark.asyncio
async def test_complete() -> None:
    table = WorkStatusTable()
    other = ImageCacheReference(name="other-cache", namespace="default")
    await table.insert("job1", ImageWorkResult(request=make_pull()))
    await table.insert(
        "job2", ImageWorkResult(request=make_pull(image_cache=other))
    )
    assert not await table.completion_expected("test-cache")

    await table.expect_completion("test-cache")
    assert await table.completion_expected("test-cache")
    assert not await table.completion_expected("other-cache")

    await table.complete("test-cache", ["job1"])
    assert not await table.completion_expected("test-cache")
    assert sorted(await table.snapshot()) == ["job2"]
