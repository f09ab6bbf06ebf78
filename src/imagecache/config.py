"""Global configuration parsing."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Annotated, Self

import yaml
from pydantic import Field, SecretStr
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict
from safir.logging import LogLevel, Profile
from safir.pydantic import HumanTimedelta

from .constants import KUBERNETES_NAME_PATTERN
from .models.domain.kubernetes import PullPolicy

__all__ = ["Config"]


class Config(BaseSettings):
    """Image cache manager configuration."""

    model_config = SettingsConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )

    namespace: Annotated[
        str,
        Field(
            title="Namespace for jobs",
            description=(
                "Namespace in which the pull and purge jobs are created and"
                " their pods watched"
            ),
            pattern=KUBERNETES_NAME_PATTERN,
        ),
    ]

    image_manager_image: Annotated[
        str,
        Field(
            title="Helper image",
            description=(
                "Image reference of the helper container run by every pull"
                " and purge job. It must provide the ``image-manager``,"
                " ``docker`` and ``crictl`` commands."
            ),
            examples=["ghcr.io/example/image-manager:1.0.0"],
        ),
    ]

    image_pull_deadline_duration: Annotated[
        HumanTimedelta,
        Field(
            title="Image pull deadline",
            description=(
                "Maximum run time of a pull job, after which Kubernetes"
                " terminates it and the pull is reported as failed"
            ),
        ),
    ] = timedelta(minutes=5)

    image_pull_policy: Annotated[
        PullPolicy,
        Field(
            title="Image pull policy",
            description="Pull policy applied by the helper when pulling",
        ),
    ] = PullPolicy.IF_NOT_PRESENT

    image_pull_secret: Annotated[
        str | None,
        Field(
            title="Pull secret for the helper image",
            description=(
                "Name of a ``Secret`` in the job namespace used to pull the"
                " helper image, if it is not public"
            ),
        ),
    ] = None

    job_ttl: Annotated[
        HumanTimedelta | None,
        Field(
            title="Lifetime of finished pull jobs",
            description=(
                "If set, Kubernetes deletes pull jobs this long after they"
                " finish. Purge jobs are always deleted by the manager."
            ),
        ),
    ] = None

    log_level: Annotated[
        LogLevel,
        Field(
            title="Log level",
            description="Python logging level",
            examples=[LogLevel.INFO],
        ),
    ] = LogLevel.INFO

    name: Annotated[
        str,
        Field(
            title="Name of application",
            description="Used when reporting problems to Slack",
        ),
    ] = "imagecache-manager"

    profile: Annotated[
        Profile,
        Field(
            title="Application logging profile",
            description=(
                "``production`` uses JSON logging. ``development`` uses"
                " logging that may be easier for humans to read but that"
                " cannot be easily parsed by computers or Google Log Explorer."
            ),
            examples=[Profile.development],
        ),
    ] = Profile.production

    slack_webhook: Annotated[
        SecretStr | None,
        Field(
            title="Slack webhook for alerts",
            description=(
                "If set, failures processing image work and any uncaught"
                " exceptions in the manager will be reported to Slack via"
                " this webhook"
            ),
            validation_alias="IMAGECACHE_SLACK_WEBHOOK",
        ),
    ] = None

    workers: Annotated[
        int,
        Field(
            title="Number of workers",
            description="Number of tasks processing the image work queue",
            ge=1,
        ),
    ] = 1

    @classmethod
    def from_file(cls, path: Path) -> Self:
        """Load the manager configuration from a YAML file.

        Parameters
        ----------
        path
            Path to the configuration file.
        """
        with path.open("r") as f:
            return cls.model_validate(yaml.safe_load(f))
