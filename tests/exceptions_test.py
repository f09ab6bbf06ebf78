"""Tests for exception formatting."""

from __future__ import annotations

import json

from kubernetes_asyncio.client import ApiException

from imagecache.exceptions import (
    AmbiguousPodMatchError,
    KubernetesError,
    NoPodsMatchedError,
)


def test_kubernetes_error_reason() -> None:
    reason = "Internal error occurred: fake error"
    exc = ApiException(status=500, reason=reason)
    error = KubernetesError.from_exception(
        "Error creating object", exc, kind="Job", namespace="ns", name="job"
    )
    assert str(error) == (
        "Internal error occurred: fake error: Error creating object"
        " (Job ns/job, status 500)"
    )
    assert error.status == 500


def test_kubernetes_error_body() -> None:
    exc = ApiException(status=409, reason="Conflict")
    exc.body = json.dumps(
        {
            "kind": "Status",
            "apiVersion": "v1",
            "status": "Failure",
            "message": 'jobs.batch "job" already exists',
            "reason": "AlreadyExists",
            "code": 409,
        }
    )
    error = KubernetesError.from_exception(
        "Error creating object", exc, kind="Job", namespace="ns", name="job"
    )
    assert str(error).startswith('jobs.batch "job" already exists: ')
    assert error.body == 'jobs.batch "job" already exists'

    # A body that is not a Kubernetes status is used as is.
    exc.body = "upstream connect error"
    error = KubernetesError.from_exception("Error listing objects", exc)
    expected = "upstream connect error: Error listing objects (status 409)"
    assert str(error) == expected


def test_kubernetes_error_no_message() -> None:
    error = KubernetesError("Error deleting object", kind="Job", status=503)
    assert str(error) == "Error deleting object (Job, status 503)"

    slack = error.to_slack()
    assert slack.message == "Error deleting object (Job, status 503)"


def test_pod_match_errors() -> None:
    error = NoPodsMatchedError("fakejob", "imagecache")
    assert str(error) == "No pods matched job fakejob"
    assert error.job == "fakejob"
    assert error.namespace == "imagecache"

    ambiguous = AmbiguousPodMatchError(
        "fakejob", "imagecache", ["fakepod1", "fakepod2"]
    )
    assert str(ambiguous).startswith("More than one pod matched job fakejob")
    assert ambiguous.pods == ["fakepod1", "fakepod2"]
    assert ambiguous.to_sentry().tags["job"] == "fakejob"
