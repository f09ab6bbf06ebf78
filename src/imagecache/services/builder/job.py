"""Construct Kubernetes jobs that pull or remove images on a node."""

from __future__ import annotations

import random
import re
import string
from datetime import timedelta

from kubernetes_asyncio.client import (
    V1Container,
    V1EnvVar,
    V1HostPathVolumeSource,
    V1Job,
    V1JobSpec,
    V1LocalObjectReference,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Toleration,
    V1Volume,
    V1VolumeMount,
)

from ...constants import (
    ANNOTATION_IMAGE,
    ANNOTATION_IMAGE_CACHE,
    ANNOTATION_NODE,
    ANNOTATION_RUNTIME_VERSION,
    ANNOTATION_WORK_TYPE,
    HELPER_CONTAINER_NAME,
    JOB_NAME_MAX_LENGTH,
    MANAGER_LABELS,
    NODE_HOSTNAME_LABEL,
)
from ...models.domain.imagework import (
    ContainerRuntime,
    ImageCacheReference,
    ImageWorkRequest,
)
from ...models.domain.kubernetes import PullPolicy

__all__ = ["JobBuilder"]

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
"""Characters used for the random suffix of job names."""

_SUFFIX_LENGTH = 5
"""Length of the random suffix of job names."""


class JobBuilder:
    """Construct the Kubernetes jobs that pull or remove images.

    Every job runs a single helper container on the target node with the
    node's container runtime socket mounted. The helper image knows how to
    pull an image through the runtime; removal uses the runtime's own
    command-line tool, which the helper image also provides.

    Parameters
    ----------
    helper_image
        Image reference of the helper container.
    pull_policy
        Pull policy the helper applies when pulling the target image.
    pull_deadline
        Maximum run time of a pull job.
    job_ttl
        If set, how long Kubernetes keeps finished pull jobs.
    pull_secret
        Optional name of ``Secret`` object to use for pulling the helper
        image.
    """

    def __init__(
        self,
        *,
        helper_image: str,
        pull_policy: PullPolicy = PullPolicy.IF_NOT_PRESENT,
        pull_deadline: timedelta,
        job_ttl: timedelta | None = None,
        pull_secret: str | None = None,
    ) -> None:
        self._helper_image = helper_image
        self._pull_policy = pull_policy
        self._pull_deadline = pull_deadline
        self._job_ttl = job_ttl
        self._pull_secret = pull_secret

    def build_pull_job(
        self, request: ImageWorkRequest, image_cache: ImageCacheReference
    ) -> V1Job:
        """Construct the job that pulls an image onto a node.

        Parameters
        ----------
        request
            Pull request.
        image_cache
            Image cache that owns the request.

        Returns
        -------
        kubernetes_asyncio.client.V1Job
            Kubernetes ``Job`` object to create.
        """
        runtime = request.runtime
        command = [
            HELPER_CONTAINER_NAME,
            "pull",
            "--pull-policy",
            self._pull_policy.value,
            request.image,
        ]
        env = [
            V1EnvVar(
                name="CONTAINER_RUNTIME_ENDPOINT",
                value=f"unix://{runtime.socket}",
            ),
            V1EnvVar(name="CONTAINER_RUNTIME", value=runtime.value),
        ]
        job = self._build_job(request, image_cache, command, env)
        job.spec.active_deadline_seconds = int(
            self._pull_deadline.total_seconds()
        )
        if self._job_ttl is not None:
            job.spec.ttl_seconds_after_finished = int(
                self._job_ttl.total_seconds()
            )
        return job

    def build_purge_job(
        self, request: ImageWorkRequest, image_cache: ImageCacheReference
    ) -> V1Job:
        """Construct the job that removes an image from a node.

        Parameters
        ----------
        request
            Purge request.
        image_cache
            Image cache that owns the request.

        Returns
        -------
        kubernetes_asyncio.client.V1Job
            Kubernetes ``Job`` object to create.
        """
        runtime = request.runtime
        match runtime:
            case ContainerRuntime.CONTAINERD | ContainerRuntime.CRIO:
                command = [
                    "crictl",
                    "--runtime-endpoint",
                    f"unix://{runtime.socket}",
                    "rmi",
                    request.image,
                ]
                env: list[V1EnvVar] = []
            case _:
                command = ["docker", "image", "rm", request.image]
                docker_host = f"unix://{runtime.socket}"
                env = [V1EnvVar(name="DOCKER_HOST", value=docker_host)]
        return self._build_job(request, image_cache, command, env)

    def _build_job(
        self,
        request: ImageWorkRequest,
        image_cache: ImageCacheReference,
        command: list[str],
        env: list[V1EnvVar],
    ) -> V1Job:
        """Construct the job shared by pulls and purges."""
        socket = request.runtime.socket
        pull_secrets = None
        if self._pull_secret:
            pull_secrets = [V1LocalObjectReference(name=self._pull_secret)]
        annotations = {
            ANNOTATION_IMAGE: request.image,
            ANNOTATION_IMAGE_CACHE: image_cache.key,
            ANNOTATION_NODE: request.node,
            ANNOTATION_WORK_TYPE: request.work_type.value,
        }
        if request.container_runtime_version:
            version = request.container_runtime_version
            annotations[ANNOTATION_RUNTIME_VERSION] = version
        return V1Job(
            metadata=V1ObjectMeta(
                name=self._build_job_name(image_cache),
                labels=MANAGER_LABELS.copy(),
                annotations=annotations,
            ),
            spec=V1JobSpec(
                backoff_limit=0,
                template=V1PodTemplateSpec(
                    metadata=V1ObjectMeta(labels=MANAGER_LABELS.copy()),
                    spec=V1PodSpec(
                        containers=[
                            V1Container(
                                name=HELPER_CONTAINER_NAME,
                                image=self._helper_image,
                                command=command,
                                env=env or None,
                                volume_mounts=[
                                    V1VolumeMount(
                                        name="runtime-socket",
                                        mount_path=socket,
                                    )
                                ],
                            )
                        ],
                        image_pull_secrets=pull_secrets,
                        node_selector={NODE_HOSTNAME_LABEL: request.node},
                        restart_policy="Never",
                        tolerations=[V1Toleration(operator="Exists")],
                        volumes=[
                            V1Volume(
                                name="runtime-socket",
                                host_path=V1HostPathVolumeSource(
                                    path=socket, type="Socket"
                                ),
                            )
                        ],
                    ),
                ),
            ),
        )

    def _build_job_name(self, image_cache: ImageCacheReference) -> str:
        """Create a unique job name for work on behalf of an image cache.

        The name is the image cache name followed by a random suffix. It is
        also used as the value of the ``job-name`` label on the job's pod,
        so it must be a valid label value.

        Parameters
        ----------
        image_cache
            Image cache that owns the work.

        Returns
        -------
        str
            Job name to use.
        """
        prefix = re.sub(r"[^a-z0-9-]", "-", image_cache.name.lower())
        prefix = prefix[: JOB_NAME_MAX_LENGTH - _SUFFIX_LENGTH - 1]
        prefix = prefix.strip("-") or "image-work"
        suffix = "".join(random.choices(_SUFFIX_ALPHABET, k=_SUFFIX_LENGTH))
        return f"{prefix}-{suffix}"
