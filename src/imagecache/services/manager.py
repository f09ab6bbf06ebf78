"""Create and track the jobs that pull and purge images on nodes."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from typing import Any

from aiojobs import Scheduler
from kubernetes_asyncio.client import V1Job, V1Pod
from safir.slack.blockkit import SlackException
from safir.slack.webhook import SlackWebhookClient
from structlog.stdlib import BoundLogger

from ..constants import (
    ANNOTATION_IMAGE,
    ANNOTATION_IMAGE_CACHE,
    ANNOTATION_NODE,
    ANNOTATION_RUNTIME_VERSION,
    ANNOTATION_WORK_TYPE,
    JOB_NAME_LABEL,
    KUBERNETES_REQUEST_TIMEOUT,
    MANAGER_LABELS,
    POD_WATCH_RETRY_DELAY,
)
from ..exceptions import (
    AmbiguousPodMatchError,
    InvalidRequestError,
    KubernetesError,
    NoPodsMatchedError,
    QueueShutdownError,
)
from ..models.domain.imagework import (
    ImageCacheReference,
    ImageCacheStatusUpdate,
    ImageWorkRequest,
    ImageWorkResult,
    ImageWorkResultStatus,
    WorkType,
)
from ..models.domain.kubernetes import PodPhase, PropagationPolicy
from ..storage.kubernetes.deleter import JobStorage
from ..storage.kubernetes.pod import PodStorage
from ..timeout import Timeout
from ..workqueue import RateLimitingQueue
from .builder.job import JobBuilder
from .workstatus import WorkStatusTable

__all__ = ["ImageManager"]


class ImageManager:
    """Create and track the jobs that pull and purge images on nodes.

    There should be a singleton of this class in the manager process. Work
    requests arrive on the image work queue from the image cache controller.
    Pull and purge requests are turned into one job per node, whose pods are
    then followed through a watch until they finish. Once every job for an
    image cache has finished, the per-job results are handed back to the
    image cache controller through the image cache queue.

    Parameters
    ----------
    namespace
        Namespace in which jobs are created.
    job_builder
        Builder for the pull and purge jobs.
    job_storage
        Storage layer for Kubernetes jobs.
    pod_storage
        Storage layer for Kubernetes pods and their events.
    work_status
        Table of the jobs that have been created and their state.
    image_work_queue
        Queue of incoming work requests. Status refresh requests are also
        added to it by the manager itself.
    image_cache_queue
        Queue to which status updates for finished image caches are sent,
        if any.
    slack_client
        Optional Slack webhook client for alerts.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        namespace: str,
        job_builder: JobBuilder,
        job_storage: JobStorage,
        pod_storage: PodStorage,
        work_status: WorkStatusTable,
        image_work_queue: RateLimitingQueue[Any],
        image_cache_queue: RateLimitingQueue[ImageCacheStatusUpdate]
        | None = None,
        slack_client: SlackWebhookClient | None = None,
        logger: BoundLogger,
    ) -> None:
        self._namespace = namespace
        self._builder = job_builder
        self._job_storage = job_storage
        self._pod_storage = pod_storage
        self._work_status = work_status
        self._queue = image_work_queue
        self._image_cache_queue = image_cache_queue
        self._slack = slack_client
        self._logger = logger

        self._scheduler: Scheduler | None = None
        self._started = False

    async def start(self, workers: int = 1) -> None:
        """Recover state from Kubernetes and start processing work.

        Parameters
        ----------
        workers
            Number of tasks taking requests from the work queue.
        """
        if self._started:
            msg = "Image manager already running, cannot start"
            self._logger.warning(msg)
            return
        self._started = True
        await self.reconcile()
        self._logger.info("Starting image manager", workers=workers)
        await self._spawn(self.watch_pods())
        for _ in range(workers):
            await self._spawn(self.run_worker())

    async def stop(self) -> None:
        """Shut down the work queue and stop all background tasks.

        This includes status refreshes that are still running.
        """
        self._logger.info("Stopping image manager")
        self._queue.shut_down()
        if self._scheduler:
            await self._scheduler.close()
            self._scheduler = None
        self._started = False

    async def pull_image(self, request: ImageWorkRequest) -> V1Job:
        """Create the job that pulls an image onto a node.

        Parameters
        ----------
        request
            Pull request.

        Returns
        -------
        kubernetes_asyncio.client.V1Job
            Job that was created.

        Raises
        ------
        ControllerTimeoutError
            Raised if the Kubernetes API calls timed out.
        InvalidRequestError
            Raised if the request has no owning image cache.
        KubernetesError
            Raised if the job could not be created.
        """
        return await self._create_job(request, self._builder.build_pull_job)

    async def delete_image(self, request: ImageWorkRequest) -> V1Job:
        """Create the job that removes an image from a node.

        Parameters
        ----------
        request
            Purge request.

        Returns
        -------
        kubernetes_asyncio.client.V1Job
            Job that was created.

        Raises
        ------
        ControllerTimeoutError
            Raised if the Kubernetes API calls timed out.
        InvalidRequestError
            Raised if the request has no owning image cache.
        KubernetesError
            Raised if the job could not be created.
        """
        return await self._create_job(request, self._builder.build_purge_job)

    async def handle_pod_status_change(self, pod: V1Pod) -> None:
        """Record the outcome of a job whose pod has finished.

        Pods that do not belong to a tracked job, pods that are not yet in a
        terminal phase, and jobs whose outcome was already recorded are
        ignored. When the outcome of a job is recorded, a status refresh is
        requested for its image cache. That refresh records progress but
        does not report the image cache as finished.

        Parameters
        ----------
        pod
            Pod that was added or changed.
        """
        labels = pod.metadata.labels or {}
        job = labels.get(JOB_NAME_LABEL)
        if not job:
            return
        result = await self._finalize_from_pod(job, pod)
        if not result:
            return
        logger = self._logger.bind(job=job, pod=pod.metadata.name)
        logger.info("Job finished", status=result.status.value)
        image_cache = result.request.image_cache
        if image_cache:
            refresh = ImageWorkRequest.status_refresh(
                image_cache, from_pod_change=True
            )
            self._queue.add(refresh)

    async def update_image_cache_status(
        self,
        image_cache_name: str,
        done: asyncio.Future[None],
        *,
        close: bool = True,
    ) -> None:
        """Collect the outcome of all jobs for an image cache.

        Exactly one outcome is set on ``done``: `None` if the status was
        collected, even if some jobs are still running, or the exception
        that stopped the collection. If this coroutine is cancelled, ``done``
        is cancelled as well.

        Parameters
        ----------
        image_cache_name
            Name of the image cache.
        done
            Future that receives the outcome.
        close
            Whether all work for the image cache has been queued. Only then
            is the status update sent once every job has finished. Otherwise
            the outcome of finished jobs is recorded and kept until a later
            collection with ``close`` set.
        """
        try:
            await self._collect_status(image_cache_name, close=close)
        except asyncio.CancelledError:
            done.cancel()
            raise
        except Exception as e:
            if not done.done():
                done.set_exception(e)
        else:
            if not done.done():
                done.set_result(None)

    async def process_next_work_item(self) -> bool:
        """Process one item from the work queue, waiting if necessary.

        Errors are logged (and reported to Slack if configured) but not
        raised. Status refreshes are started as background jobs and are not
        waited for.

        Returns
        -------
        bool
            `False` if the queue is empty and has been shut down, otherwise
            `True`.
        """
        try:
            item = await self._queue.get()
        except QueueShutdownError:
            return False
        try:
            await self._process_item(item)
        except Exception as e:
            msg = "Error processing work item"
            self._logger.exception(msg, item=repr(item))
            await self._report_exception(e)
        finally:
            self._queue.done(item)
        return True

    async def reconcile(self) -> None:
        """Rebuild the table of jobs from the jobs in Kubernetes.

        Jobs created by a previous run of the manager are added to the table
        from their annotations, and a status refresh is requested for their
        image caches so that jobs that finished in the meantime are
        collected.

        Raises
        ------
        ControllerTimeoutError
            Raised if the Kubernetes API calls timed out.
        KubernetesError
            Raised if the jobs could not be listed.
        """
        logger = self._logger.bind(namespace=self._namespace)
        logger.debug("Reconciling jobs")
        timeout = Timeout("Reconciling jobs", KUBERNETES_REQUEST_TIMEOUT)
        selector = ",".join(f"{k}={v}" for k, v in MANAGER_LABELS.items())
        async with timeout.enforce():
            jobs = await self._job_storage.list(
                self._namespace, timeout, label_selector=selector
            )

        image_caches: set[ImageCacheReference] = set()
        for job in jobs:
            name = job.metadata.name
            try:
                request = _request_from_annotations(job.metadata.annotations)
            except (KeyError, ValueError) as e:
                msg = "Ignoring job with invalid annotations"
                logger.warning(msg, job=name, error=str(e))
                continue
            result = ImageWorkResult(request=request)
            if await self._work_status.insert_if_missing(name, result):
                logger.info("Recovered job", job=name)
                if request.image_cache:
                    image_caches.add(request.image_cache)
        for image_cache in image_caches:
            self._queue.add(ImageWorkRequest.status_refresh(image_cache))

    async def run_worker(self) -> None:
        """Process work queue items until the queue is shut down."""
        while await self.process_next_work_item():
            pass

    async def watch_pods(self) -> None:
        """Feed pod changes in the namespace to the job tracking.

        Runs until cancelled, restarting the watch after errors.
        """
        while True:
            try:
                changes = self._pod_storage.watch_pod_changes(self._namespace)
                async for change in changes:
                    await self.handle_pod_status_change(change.pod)
            except Exception as e:
                self._logger.exception("Error watching pods, restarting")
                await self._report_exception(e)
                await asyncio.sleep(POD_WATCH_RETRY_DELAY.total_seconds())

    async def _collect_status(
        self, image_cache_name: str, *, close: bool
    ) -> None:
        """Collect the outcome of all jobs for an image cache.

        Finished purge jobs are deleted, but their entries are kept so that
        the status update includes them. The status update is only sent once
        no job is still running and a collection with ``close`` set has been
        seen for the image cache. All entries of the image cache are then
        removed.

        Raises
        ------
        AmbiguousPodMatchError
            Raised if more than one pod was found for a job.
        ControllerTimeoutError
            Raised if the Kubernetes API calls timed out.
        KubernetesError
            Raised if a Kubernetes API call failed.
        NoPodsMatchedError
            Raised if no pod was found for a job that has not finished.
        """
        logger = self._logger.bind(image_cache=image_cache_name)
        if close:
            await self._work_status.expect_completion(image_cache_name)
        timeout = Timeout("Collecting job status", KUBERNETES_REQUEST_TIMEOUT)
        entries = await self._work_status.entries_for_image_cache(
            image_cache_name
        )
        async with timeout.enforce():
            for job, result in sorted(entries.items()):
                if not result.status.is_terminal:
                    result = await self._check_job(job, result, timeout)
                if result.status == ImageWorkResultStatus.FAILED:
                    result = await self._add_failure_events(
                        job, result, timeout
                    )
                if _needs_deletion(result):
                    await self._job_storage.delete(
                        job,
                        self._namespace,
                        timeout,
                        propagation_policy=PropagationPolicy.BACKGROUND,
                    )
                    deleted = await self._work_status.mark_job_deleted(job)
                    result = deleted or result.with_job_deleted()
                    logger.debug("Deleted purge job", job=job)
                entries[job] = result

        pending = [j for j, r in entries.items() if not r.status.is_terminal]
        if pending:
            logger.debug("Jobs still running", jobs=pending)
            return
        if not entries:
            if close:
                await self._work_status.complete(image_cache_name, [])
            return
        if not await self._work_status.completion_expected(image_cache_name):
            logger.debug("Jobs finished, more work may follow")
            return

        image_cache = next(
            r.request.image_cache
            for r in entries.values()
            if r.request.image_cache
        )
        update = ImageCacheStatusUpdate(
            image_cache=image_cache, results=tuple(sorted(entries.items()))
        )
        if self._image_cache_queue:
            self._image_cache_queue.add_rate_limited(update)
        await self._work_status.complete(image_cache_name, entries)
        logger.info(
            "All jobs finished",
            jobs=len(entries),
            failed=len(update.failed),
        )

    async def _check_job(
        self, job: str, result: ImageWorkResult, timeout: Timeout
    ) -> ImageWorkResult:
        """Check the pod of a job that has not yet finished.

        Returns
        -------
        ImageWorkResult
            Current entry for the job.

        Raises
        ------
        AmbiguousPodMatchError
            Raised if more than one pod was found for the job.
        KubernetesError
            Raised if the pods could not be listed.
        NoPodsMatchedError
            Raised if no pod was found for the job.
        """
        pods = await self._pod_storage.list_for_job(
            job, self._namespace, timeout
        )
        if not pods:
            raise NoPodsMatchedError(job, self._namespace)
        if len(pods) > 1:
            names = sorted(p.metadata.name for p in pods)
            raise AmbiguousPodMatchError(job, self._namespace, names)
        pod = pods[0]
        finalized = await self._finalize_from_pod(job, pod)
        if finalized:
            return finalized
        current = await self._work_status.get(job)
        if current and current.status.is_terminal:
            return current
        self._logger.debug(
            "Job still running",
            job=job,
            pod=pod.metadata.name,
            phase=pod.status.phase if pod.status else None,
            reason=_waiting_reason(pod),
        )
        return result

    async def _add_failure_events(
        self, job: str, result: ImageWorkResult, timeout: Timeout
    ) -> ImageWorkResult:
        """Add the last warning event of a failed pull as its message.

        Errors retrieving the events are logged and otherwise ignored.
        """
        if result.message or result.request.work_type != WorkType.CREATE:
            return result
        logger = self._logger.bind(job=job)
        try:
            pods = await self._pod_storage.list_for_job(
                job, self._namespace, timeout
            )
            messages = []
            for pod in pods:
                events = await self._pod_storage.events_for_pod(
                    pod.metadata.name, self._namespace, timeout
                )
                messages.extend(
                    e.message for e in events if e.type == "Warning"
                )
        except KubernetesError:
            msg = "Unable to get events for failed job"
            logger.warning(msg, exc_info=True)
            return result
        messages = [m for m in messages if m]
        if not messages:
            return result
        updated = await self._work_status.add_diagnostics(
            job, result.reason, messages[-1]
        )
        return updated or result.with_diagnostics(result.reason, messages[-1])

    async def _create_job(
        self,
        request: ImageWorkRequest,
        build: Callable[[ImageWorkRequest, ImageCacheReference], V1Job],
    ) -> V1Job:
        """Build and create a job, then start tracking it."""
        image_cache = request.image_cache
        if not image_cache:
            msg = "Image work request has no image cache"
            raise InvalidRequestError(msg)
        logger = self._logger.bind(
            image=request.image,
            image_cache=image_cache.key,
            node=request.node,
            work_type=request.work_type.value,
        )
        body = build(request, image_cache)
        timeout = Timeout("Creating job", KUBERNETES_REQUEST_TIMEOUT)
        async with timeout.enforce():
            job = await self._job_storage.create(
                self._namespace, body, timeout
            )
        name = job.metadata.name
        await self._work_status.insert(name, ImageWorkResult(request=request))
        logger.info("Created job", job=name)
        return job

    async def _finalize_from_pod(
        self, job: str, pod: V1Pod
    ) -> ImageWorkResult | None:
        """Record the outcome of a job if its pod is in a terminal phase.

        Returns
        -------
        ImageWorkResult or None
            New entry if this call recorded the outcome, otherwise `None`.
        """
        if not pod.status or not pod.status.phase:
            return None
        try:
            phase = PodPhase(pod.status.phase)
        except ValueError:
            self._logger.warning(
                "Unknown pod phase",
                pod=pod.metadata.name,
                phase=pod.status.phase,
            )
            return None
        match phase:
            case PodPhase.SUCCEEDED:
                status = ImageWorkResultStatus.SUCCEEDED
                reason, message = None, None
            case PodPhase.FAILED:
                status = ImageWorkResultStatus.FAILED
                reason, message = _termination_details(pod)
            case _:
                return None
        return await self._work_status.finalize(
            job, status, reason=reason, message=message
        )

    async def _process_item(self, item: object) -> None:
        """Route a work queue item to the matching operation."""
        if not isinstance(item, ImageWorkRequest):
            self._queue.forget(item)
            self._logger.error(
                "Unexpected type in work queue",
                item=repr(item),
                type=type(item).__name__,
            )
            return
        match item.work_type:
            case WorkType.CREATE:
                await self.pull_image(item)
            case WorkType.PURGE:
                await self.delete_image(item)
            case WorkType.STATUS_REFRESH:
                await self._spawn(self._refresh_status(item))
                return
        self._queue.forget(item)

    async def _refresh_status(self, request: ImageWorkRequest) -> None:
        """Collect the status of an image cache and retry if needed.

        The status is collected again with backoff if a job has no pod yet
        or if a Kubernetes API call failed.
        """
        image_cache = request.image_cache
        if not image_cache:
            return
        logger = self._logger.bind(image_cache=image_cache.key)
        loop = asyncio.get_running_loop()
        done: asyncio.Future[None] = loop.create_future()
        close = not request.from_pod_change
        await self.update_image_cache_status(
            image_cache.name, done, close=close
        )
        try:
            await done
        except NoPodsMatchedError as e:
            logger.info("Job has no pod yet, retrying", job=e.job)
            self._queue.add_rate_limited(request)
        except AmbiguousPodMatchError as e:
            logger.exception("Unable to collect job status")
            await self._report_exception(e)
        except Exception as e:
            logger.exception("Unable to collect job status, retrying")
            await self._report_exception(e)
            self._queue.add_rate_limited(request)
        else:
            self._queue.forget(request)

    async def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        """Run a coroutine as a background job of the manager."""
        if not self._scheduler:
            self._scheduler = Scheduler()
        await self._scheduler.spawn(coro)

    async def _report_exception(self, exc: Exception) -> None:
        """Send an exception to Slack if Slack alerts are configured."""
        if not self._slack:
            return
        if isinstance(exc, SlackException):
            await self._slack.post_exception(exc)
        else:
            await self._slack.post_uncaught_exception(exc)


def _request_from_annotations(
    annotations: dict[str, str] | None,
) -> ImageWorkRequest:
    """Rebuild the work request of a job from its annotations.

    Raises
    ------
    KeyError
        Raised if a required annotation is missing.
    ValueError
        Raised if an annotation has an invalid value.
    """
    annotations = annotations or {}
    work_type = WorkType(annotations[ANNOTATION_WORK_TYPE])
    if work_type == WorkType.STATUS_REFRESH:
        raise ValueError("Jobs are never created for status refreshes")
    return ImageWorkRequest(
        work_type=work_type,
        image_cache=ImageCacheReference.from_key(
            annotations[ANNOTATION_IMAGE_CACHE]
        ),
        image=annotations[ANNOTATION_IMAGE],
        node=annotations[ANNOTATION_NODE],
        container_runtime_version=annotations.get(ANNOTATION_RUNTIME_VERSION),
    )


def _needs_deletion(result: ImageWorkResult) -> bool:
    """Whether the job of a result should be deleted now."""
    return (
        result.status.is_terminal
        and result.request.work_type == WorkType.PURGE
        and not result.job_deleted
    )


def _termination_details(pod: V1Pod) -> tuple[str | None, str | None]:
    """Get the reason and message for a failed pod."""
    for status in pod.status.container_statuses or []:
        terminated = status.state.terminated if status.state else None
        if terminated and (terminated.reason or terminated.message):
            return terminated.reason, terminated.message
    return pod.status.reason, pod.status.message


def _waiting_reason(pod: V1Pod) -> str | None:
    """Get the reason a pod's container is waiting, if any."""
    if not pod.status:
        return None
    for status in pod.status.container_statuses or []:
        waiting = status.state.waiting if status.state else None
        if waiting and waiting.reason:
            return waiting.reason
    return None
