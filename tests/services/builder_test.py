"""Tests for construction of pull and purge jobs."""

from __future__ import annotations

from datetime import timedelta

import pytest

from imagecache.constants import (
    ANNOTATION_IMAGE,
    ANNOTATION_IMAGE_CACHE,
    ANNOTATION_NODE,
    ANNOTATION_RUNTIME_VERSION,
    ANNOTATION_WORK_TYPE,
    JOB_NAME_MAX_LENGTH,
    MANAGER_LABELS,
)
from imagecache.models.domain.imagework import ImageCacheReference
from imagecache.models.domain.kubernetes import PullPolicy
from imagecache.services.builder.job import JobBuilder

from ..support.data import (
    TEST_IMAGE,
    TEST_IMAGE_CACHE,
    TEST_NODE,
    make_pull,
    make_purge,
)

HELPER_IMAGE = "ghcr.io/example/image-manager:1.0.0"


def make_builder(**kwargs: object) -> JobBuilder:
    return JobBuilder(
        helper_image=HELPER_IMAGE,
        pull_deadline=timedelta(minutes=5),
        **kwargs,  # type: ignore[arg-type]
    )


def test_pull_job() -> None:
    builder = make_builder()
    request = make_pull("containerd://1.7.2")
    job = builder.build_pull_job(request, TEST_IMAGE_CACHE)

    assert job.metadata.name.startswith("test-cache-")
    assert job.metadata.labels == MANAGER_LABELS
    assert job.metadata.annotations == {
        ANNOTATION_IMAGE: TEST_IMAGE,
        ANNOTATION_IMAGE_CACHE: "default/test-cache",
        ANNOTATION_NODE: TEST_NODE,
        ANNOTATION_RUNTIME_VERSION: "containerd://1.7.2",
        ANNOTATION_WORK_TYPE: "create",
    }
    assert job.spec.backoff_limit == 0
    assert job.spec.active_deadline_seconds == 300
    assert job.spec.ttl_seconds_after_finished is None

    pod_spec = job.spec.template.spec
    assert pod_spec.restart_policy == "Never"
    assert pod_spec.node_selector == {"kubernetes.io/hostname": TEST_NODE}
    assert [t.operator for t in pod_spec.tolerations] == ["Exists"]
    assert pod_spec.image_pull_secrets is None
    assert pod_spec.volumes[0].host_path.path == (
        "/run/containerd/containerd.sock"
    )

    assert len(pod_spec.containers) == 1
    container = pod_spec.containers[0]
    assert container.name == "image-manager"
    assert container.image == HELPER_IMAGE
    assert container.command == [
        "image-manager",
        "pull",
        "--pull-policy",
        "IfNotPresent",
        TEST_IMAGE,
    ]
    env = {e.name: e.value for e in container.env}
    assert env["CONTAINER_RUNTIME_ENDPOINT"] == (
        "unix:///run/containerd/containerd.sock"
    )
    assert container.volume_mounts[0].mount_path == (
        "/run/containerd/containerd.sock"
    )


def test_pull_job_options() -> None:
    builder = make_builder(
        pull_policy=PullPolicy.ALWAYS,
        job_ttl=timedelta(hours=1),
        pull_secret="pull-secret",
    )
    job = builder.build_pull_job(make_pull(None), TEST_IMAGE_CACHE)
    assert job.spec.ttl_seconds_after_finished == 3600
    assert ANNOTATION_RUNTIME_VERSION not in job.metadata.annotations
    pod_spec = job.spec.template.spec
    assert pod_spec.image_pull_secrets[0].name == "pull-secret"
    assert pod_spec.containers[0].command[3] == "Always"


@pytest.mark.parametrize(
    ("version", "command", "socket"),
    [
        (
            "docker://24.0.5",
            ["docker", "image", "rm", TEST_IMAGE],
            "/var/run/docker.sock",
        ),
        (
            None,
            ["docker", "image", "rm", TEST_IMAGE],
            "/var/run/docker.sock",
        ),
        (
            "containerd://1.7.2",
            [
                "crictl",
                "--runtime-endpoint",
                "unix:///run/containerd/containerd.sock",
                "rmi",
                TEST_IMAGE,
            ],
            "/run/containerd/containerd.sock",
        ),
        (
            "cri-o://1.28.1",
            [
                "crictl",
                "--runtime-endpoint",
                "unix:///var/run/crio/crio.sock",
                "rmi",
                TEST_IMAGE,
            ],
            "/var/run/crio/crio.sock",
        ),
    ],
)
def test_purge_job(
    version: str | None, command: list[str], socket: str
) -> None:
    builder = make_builder(job_ttl=timedelta(hours=1))
    job = builder.build_purge_job(make_purge(version), TEST_IMAGE_CACHE)

    assert job.metadata.annotations[ANNOTATION_WORK_TYPE] == "purge"
    assert job.spec.active_deadline_seconds is None
    assert job.spec.ttl_seconds_after_finished is None
    pod_spec = job.spec.template.spec
    assert pod_spec.containers[0].command == command
    assert pod_spec.volumes[0].host_path.path == socket
    if command[0] == "docker":
        env = {e.name: e.value for e in pod_spec.containers[0].env}
        assert env == {"DOCKER_HOST": f"unix://{socket}"}


def test_job_name() -> None:
    builder = make_builder()
    image_cache = ImageCacheReference(name="a" * 80, namespace="default")
    request = make_pull(image_cache=image_cache)
    names = set()
    for _ in range(10):
        job = builder.build_pull_job(request, image_cache)
        name = job.metadata.name
        assert len(name) <= JOB_NAME_MAX_LENGTH
        assert name.startswith("aaaa")
        names.add(name)
    assert len(names) > 1
