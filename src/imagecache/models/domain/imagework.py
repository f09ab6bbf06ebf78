"""Models for image pull and purge work."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Self

__all__ = [
    "ContainerRuntime",
    "ImageCacheReference",
    "ImageCacheStatusUpdate",
    "ImageWorkRequest",
    "ImageWorkResult",
    "ImageWorkResultStatus",
    "WorkType",
]


class WorkType(Enum):
    """Kind of work requested for an image cache."""

    CREATE = "create"
    PURGE = "purge"
    STATUS_REFRESH = "status-refresh"


class ImageWorkResultStatus(Enum):
    """Lifecycle state of a pull or purge job."""

    JOB_CREATED = "JobCreated"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        """Whether the job has finished, successfully or not."""
        return self != ImageWorkResultStatus.JOB_CREATED


class ContainerRuntime(Enum):
    """Container runtime flavor of a node.

    Nodes report their runtime as ``<runtime>://<version>`` in
    ``status.nodeInfo.containerRuntimeVersion``. The runtime determines how
    images are removed and which socket the helper container talks to.
    """

    DOCKER = "docker"
    CONTAINERD = "containerd"
    CRIO = "cri-o"

    @classmethod
    def from_version(cls, version: str | None) -> Self:
        """Determine the runtime from a node's runtime version string.

        Parameters
        ----------
        version
            Runtime version as reported by the node, such as
            ``containerd://1.7.2``.

        Returns
        -------
        ContainerRuntime
            Matching runtime. Docker is used if the version is missing or the
            runtime is not recognized.
        """
        if not version:
            return cls.DOCKER
        prefix = version.split("://", 1)[0].lower()
        try:
            return cls(prefix)
        except ValueError:
            return cls.DOCKER

    @property
    def socket(self) -> str:
        """Path to the runtime's API socket on the node."""
        match self:
            case ContainerRuntime.DOCKER:
                return "/var/run/docker.sock"
            case ContainerRuntime.CONTAINERD:
                return "/run/containerd/containerd.sock"
            case ContainerRuntime.CRIO:
                return "/var/run/crio/crio.sock"


@dataclass(frozen=True, slots=True)
class ImageCacheReference:
    """Reference to the image cache custom resource that requested work."""

    name: str
    """Name of the image cache."""

    namespace: str
    """Namespace of the image cache."""

    @classmethod
    def from_key(cls, key: str) -> Self:
        """Parse a reference from its ``<namespace>/<name>`` form.

        Raises
        ------
        ValueError
            Raised if the key does not contain both parts.
        """
        namespace, sep, name = key.partition("/")
        if not sep or not namespace or not name:
            raise ValueError(f"Invalid image cache key {key}")
        return cls(name=name, namespace=namespace)

    @property
    def key(self) -> str:
        """Reference in ``<namespace>/<name>`` form."""
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True, slots=True)
class ImageWorkRequest:
    """A unit of work for the image manager.

    Pull and purge requests name an image and a node. Status refresh
    requests name neither and ask for the status of all jobs of their image
    cache to be collected. Requests are hashable so that the work queue can
    de-duplicate them.

    Raises
    ------
    ValueError
        Raised if the fields required by the work type are missing or
        fields it does not allow are present.
    """

    work_type: WorkType
    """Kind of work."""

    image_cache: ImageCacheReference | None
    """Image cache that requested the work.

    This is required for all valid requests, but pull and purge requests
    without it may still be constructed so that the image manager can reject
    them.
    """

    image: str | None = None
    """Image reference to pull or purge."""

    node: str | None = None
    """Name of the node on which to pull or purge the image."""

    container_runtime_version: str | None = None
    """Runtime version reported by the node, such as ``docker://24.0.5``."""

    from_pod_change: bool = False
    """Whether this status refresh was triggered by a finished job.

    Such refreshes record progress but never report the image cache as
    finished. Only a refresh requested by the image cache controller does
    that, since only the controller knows that all work for the image cache
    has been queued.
    """

    def __post_init__(self) -> None:
        if self.work_type == WorkType.STATUS_REFRESH:
            if self.image or self.node:
                msg = "Status refresh requests cannot name an image or node"
                raise ValueError(msg)
            if not self.image_cache:
                raise ValueError("Status refresh requests need an image cache")
        elif not self.image or not self.node:
            msg = f"{self.work_type.value} requests need an image and a node"
            raise ValueError(msg)
        elif self.from_pod_change:
            msg = f"{self.work_type.value} requests cannot be pod changes"
            raise ValueError(msg)

    @classmethod
    def pull(
        cls,
        image_cache: ImageCacheReference | None,
        image: str,
        node: str,
        container_runtime_version: str | None = None,
    ) -> Self:
        """Create a request to pull an image onto a node."""
        return cls(
            work_type=WorkType.CREATE,
            image_cache=image_cache,
            image=image,
            node=node,
            container_runtime_version=container_runtime_version,
        )

    @classmethod
    def purge(
        cls,
        image_cache: ImageCacheReference | None,
        image: str,
        node: str,
        container_runtime_version: str | None = None,
    ) -> Self:
        """Create a request to remove an image from a node."""
        return cls(
            work_type=WorkType.PURGE,
            image_cache=image_cache,
            image=image,
            node=node,
            container_runtime_version=container_runtime_version,
        )

    @classmethod
    def status_refresh(
        cls, image_cache: ImageCacheReference, *, from_pod_change: bool = False
    ) -> Self:
        """Create a request to collect the job status of an image cache."""
        return cls(
            work_type=WorkType.STATUS_REFRESH,
            image_cache=image_cache,
            from_pod_change=from_pod_change,
        )

    @property
    def runtime(self) -> ContainerRuntime:
        """Container runtime of the target node."""
        return ContainerRuntime.from_version(self.container_runtime_version)


@dataclass(frozen=True, slots=True)
class ImageWorkResult:
    """Current state of the job created for an image work request."""

    request: ImageWorkRequest
    """Request that caused the job to be created."""

    status: ImageWorkResultStatus = ImageWorkResultStatus.JOB_CREATED
    """Lifecycle state of the job."""

    reason: str | None = None
    """Short reason for a failure, if known."""

    message: str | None = None
    """Longer diagnostic message for a failure, if known."""

    job_deleted: bool = False
    """Whether the manager has deleted the job, which it does for purges."""

    def finalize(
        self,
        status: ImageWorkResultStatus,
        *,
        reason: str | None = None,
        message: str | None = None,
    ) -> Self:
        """Move the result to a terminal state.

        Results only move from ``JobCreated`` to a terminal state. Calling
        this on a result that is already terminal returns it unchanged.

        Parameters
        ----------
        status
            New terminal status.
        reason
            Short reason for the outcome, if known.
        message
            Diagnostic message for the outcome, if known.

        Returns
        -------
        ImageWorkResult
            Updated result.

        Raises
        ------
        ValueError
            Raised if ``status`` is not a terminal status.
        """
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        if self.status.is_terminal:
            return self
        return replace(self, status=status, reason=reason, message=message)

    def with_diagnostics(
        self, reason: str | None, message: str | None
    ) -> Self:
        """Add failure diagnostics without changing the status."""
        return replace(self, reason=reason, message=message)

    def with_job_deleted(self) -> Self:
        """Record that the job has been deleted."""
        return replace(self, job_deleted=True)


@dataclass(frozen=True, slots=True)
class ImageCacheStatusUpdate:
    """Outcome of all jobs for an image cache.

    Sent to the image cache queue once every job for the image cache has
    finished, so that the image cache controller can update the status of
    the custom resource.
    """

    image_cache: ImageCacheReference
    """Image cache whose jobs finished."""

    results: tuple[tuple[str, ImageWorkResult], ...] = field(default=())
    """Results keyed by job name, sorted by job name."""

    @property
    def failed(self) -> list[ImageWorkResult]:
        """Results of the jobs that failed."""
        return [
            r
            for _, r in self.results
            if r.status == ImageWorkResultStatus.FAILED
        ]

    @property
    def succeeded(self) -> bool:
        """Whether every job for the image cache succeeded."""
        return not self.failed
