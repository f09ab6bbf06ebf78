"""Component factory and process-wide context management."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass
from typing import Any, Self

import structlog
from kubernetes_asyncio.client.api_client import ApiClient
from safir.slack.webhook import SlackWebhookClient
from structlog.stdlib import BoundLogger

from .config import Config
from .models.domain.imagework import ImageCacheStatusUpdate
from .services.builder.job import JobBuilder
from .services.manager import ImageManager
from .services.workstatus import WorkStatusTable
from .storage.kubernetes.deleter import JobStorage
from .storage.kubernetes.pod import PodStorage
from .workqueue import RateLimitingQueue

__all__ = ["Factory", "ProcessContext"]


@dataclass(frozen=True, slots=True)
class ProcessContext:
    """Per-process global application state.

    This object holds all of the per-process singletons and is used by the
    `Factory` class as a source of dependencies.
    """

    config: Config
    """Image cache manager configuration."""

    kubernetes_client: ApiClient
    """Shared Kubernetes client."""

    image_work_queue: RateLimitingQueue[Any]
    """Queue of incoming pull, purge and status refresh requests."""

    image_cache_queue: RateLimitingQueue[ImageCacheStatusUpdate]
    """Queue receiving the outcome of all jobs for an image cache."""

    work_status: WorkStatusTable
    """Table of the jobs created by the manager."""

    image_manager: ImageManager
    """Image manager."""

    @classmethod
    async def from_config(cls, config: Config) -> Self:
        """Create a new process context from the manager configuration.

        Parameters
        ----------
        config
            Image cache manager configuration.

        Returns
        -------
        ProcessContext
            Shared context for an image cache manager process.
        """
        kubernetes_client = ApiClient()
        logger = structlog.get_logger(__name__)

        slack_client = None
        if config.slack_webhook:
            slack_client = SlackWebhookClient(
                config.slack_webhook.get_secret_value(), config.name, logger
            )

        image_work_queue: RateLimitingQueue[Any] = RateLimitingQueue(
            "image-work", logger
        )
        image_cache_queue: RateLimitingQueue[ImageCacheStatusUpdate] = (
            RateLimitingQueue("image-cache", logger)
        )
        work_status = WorkStatusTable()
        job_builder = JobBuilder(
            helper_image=config.image_manager_image,
            pull_policy=config.image_pull_policy,
            pull_deadline=config.image_pull_deadline_duration,
            job_ttl=config.job_ttl,
            pull_secret=config.image_pull_secret,
        )
        image_manager = ImageManager(
            namespace=config.namespace,
            job_builder=job_builder,
            job_storage=JobStorage(kubernetes_client, logger),
            pod_storage=PodStorage(kubernetes_client, logger),
            work_status=work_status,
            image_work_queue=image_work_queue,
            image_cache_queue=image_cache_queue,
            slack_client=slack_client,
            logger=logger,
        )
        return cls(
            config=config,
            kubernetes_client=kubernetes_client,
            image_work_queue=image_work_queue,
            image_cache_queue=image_cache_queue,
            work_status=work_status,
            image_manager=image_manager,
        )

    async def aclose(self) -> None:
        """Free allocated resources."""
        await self.kubernetes_client.close()

    async def start(self) -> None:
        """Start the background tasks running."""
        await self.image_manager.start(self.config.workers)

    async def stop(self) -> None:
        """Stop the background tasks and shut down the work queues."""
        await self.image_manager.stop()
        self.image_cache_queue.shut_down()


class Factory:
    """Build image cache manager components.

    Uses the contents of a `ProcessContext` to provide the components of the
    application.

    Parameters
    ----------
    context
        Shared process context.
    logger
        Logger to use for messages.
    """

    @classmethod
    @asynccontextmanager
    async def standalone(cls, config: Config) -> AsyncIterator[Self]:
        """Async context manager for image cache manager components.

        Intended for the command-line entry point or the test suite.

        Parameters
        ----------
        config
            Image cache manager configuration.

        Yields
        ------
        Factory
            Newly-created factory. Must be used as a context manager.
        """
        logger = structlog.get_logger(__name__)
        context = await ProcessContext.from_config(config)
        factory = cls(context, logger)
        async with aclosing(factory):
            yield factory

    def __init__(self, context: ProcessContext, logger: BoundLogger) -> None:
        self._context = context
        self._logger = logger

    @property
    def image_cache_queue(self) -> RateLimitingQueue[ImageCacheStatusUpdate]:
        """Queue receiving image cache status updates."""
        return self._context.image_cache_queue

    @property
    def image_manager(self) -> ImageManager:
        """Global image manager, from the `ProcessContext`."""
        return self._context.image_manager

    @property
    def image_work_queue(self) -> RateLimitingQueue[Any]:
        """Queue of incoming image work requests."""
        return self._context.image_work_queue

    @property
    def work_status(self) -> WorkStatusTable:
        """Table of the jobs created by the manager."""
        return self._context.work_status

    async def aclose(self) -> None:
        """Shut down the factory.

        After this method is called, the factory object is no longer valid and
        must not be used. Background jobs of the image manager are stopped,
        including status refreshes started without the background services.
        """
        await self._context.stop()
        await self._context.aclose()

    async def start_background_services(self) -> None:
        """Start the image manager workers and pod watch."""
        await self._context.start()
