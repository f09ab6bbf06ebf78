"""Global constants."""

from datetime import timedelta
from pathlib import Path

__all__ = [
    "ANNOTATION_IMAGE",
    "ANNOTATION_IMAGE_CACHE",
    "ANNOTATION_NODE",
    "ANNOTATION_RUNTIME_VERSION",
    "ANNOTATION_WORK_TYPE",
    "CONFIGURATION_PATH",
    "CONFIGURATION_PATH_ENV_VAR",
    "HELPER_CONTAINER_NAME",
    "JOB_NAME_LABEL",
    "JOB_NAME_MAX_LENGTH",
    "KUBERNETES_NAME_PATTERN",
    "KUBERNETES_REQUEST_TIMEOUT",
    "MANAGER_LABELS",
    "NODE_HOSTNAME_LABEL",
    "POD_WATCH_RETRY_DELAY",
    "RATE_LIMIT_BASE_DELAY",
    "RATE_LIMIT_MAX_DELAY",
]

ANNOTATION_IMAGE = "imagecache.io/image"
"""Annotation on created jobs holding the target image reference."""

ANNOTATION_IMAGE_CACHE = "imagecache.io/image-cache"
"""Annotation on created jobs holding the owning image cache.

The value is ``<namespace>/<name>``. Together with the other annotations, it
allows the work status table to be rebuilt from the jobs in the cluster
after a restart.
"""

ANNOTATION_NODE = "imagecache.io/node"
"""Annotation on created jobs holding the target node."""

ANNOTATION_RUNTIME_VERSION = "imagecache.io/container-runtime-version"
"""Annotation on created jobs holding the node's container runtime."""

ANNOTATION_WORK_TYPE = "imagecache.io/work-type"
"""Annotation on created jobs holding the kind of work (pull or purge)."""

CONFIGURATION_PATH = Path("/etc/imagecache/config.yaml")
"""Default path to the manager configuration."""

CONFIGURATION_PATH_ENV_VAR = "IMAGECACHE_CONFIG_PATH"
"""Environment variable that overrides the configuration path."""

HELPER_CONTAINER_NAME = "image-manager"
"""Name of the single container in every pull or purge job."""

JOB_NAME_LABEL = "job-name"
"""Label the Kubernetes job controller adds to the pods of a job."""

JOB_NAME_MAX_LENGTH = 63
"""Maximum length of a job name.

The job name is copied into the ``job-name`` label of its pods, and label
values are limited to 63 characters.
"""

KUBERNETES_NAME_PATTERN = "^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"
"""Pattern matching valid Kubernetes names."""

KUBERNETES_REQUEST_TIMEOUT = timedelta(seconds=30)
"""How long to wait for a sequence of Kubernetes API calls."""

MANAGER_LABELS = {"imagecache.io/category": "image-manager"}
"""Labels added to every job created by the image manager."""

NODE_HOSTNAME_LABEL = "kubernetes.io/hostname"
"""Well-known node label used to place jobs on a specific node."""

POD_WATCH_RETRY_DELAY = timedelta(seconds=5)
"""How long to pause before restarting a failed pod watch."""

RATE_LIMIT_BASE_DELAY = timedelta(milliseconds=5)
"""Delay before the first rate-limited retry of a work queue item."""

RATE_LIMIT_MAX_DELAY = timedelta(seconds=1000)
"""Upper bound on the per-item exponential backoff of the work queue."""
