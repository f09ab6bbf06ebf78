"""Storage layer for ``Pod`` objects."""

from collections.abc import AsyncIterator

from kubernetes_asyncio import client
from kubernetes_asyncio.client import (
    ApiClient,
    ApiException,
    CoreV1Event,
    V1Pod,
)
from structlog.stdlib import BoundLogger

from ...constants import JOB_NAME_LABEL
from ...exceptions import KubernetesError
from ...models.domain.kubernetes import PodChange, PodPhase, WatchEventType
from ...timeout import Timeout
from .watcher import KubernetesWatcher

__all__ = ["PodStorage"]


class PodStorage:
    """Storage layer for ``Pod`` objects.

    Pods are created and deleted by their jobs, so this only lists and
    watches pods and their events.

    Parameters
    ----------
    api_client
        Kubernetes API client.
    logger
        Logger to use.
    """

    def __init__(self, api_client: ApiClient, logger: BoundLogger) -> None:
        self._api = client.CoreV1Api(api_client)
        self._logger = logger

    async def events_for_pod(
        self, name: str, namespace: str, timeout: Timeout
    ) -> list[CoreV1Event]:
        """List the Kubernetes events involving a pod.

        Parameters
        ----------
        name
            Name of the pod.
        namespace
            Namespace in which the pod is located.
        timeout
            Timeout on operation.

        Returns
        -------
        list of kubernetes_asyncio.client.CoreV1Event
            Events involving the pod, in the order returned by Kubernetes.

        Raises
        ------
        KubernetesError
            Raised if there is some failure in a Kubernetes API call.
        """
        try:
            events = await self._api.list_namespaced_event(
                namespace,
                field_selector=f"involvedObject.name={name}",
                _request_timeout=timeout.left(),
            )
        except ApiException as e:
            raise KubernetesError.from_exception(
                "Error listing events",
                e,
                kind="Pod",
                namespace=namespace,
                name=name,
            ) from e
        return events.items

    async def list_for_job(
        self, job: str, namespace: str, timeout: Timeout
    ) -> list[V1Pod]:
        """List the pods created for a job.

        Parameters
        ----------
        job
            Name of the job.
        namespace
            Namespace of the job.
        timeout
            Timeout on operation.

        Returns
        -------
        list of kubernetes_asyncio.client.V1Pod
            Pods carrying the job's ``job-name`` label.

        Raises
        ------
        KubernetesError
            Raised if there is some failure in a Kubernetes API call.
        """
        try:
            pods = await self._api.list_namespaced_pod(
                namespace,
                label_selector=f"{JOB_NAME_LABEL}={job}",
                _request_timeout=timeout.left(),
            )
        except ApiException as e:
            raise KubernetesError.from_exception(
                "Error listing objects", e, kind="Pod", namespace=namespace
            ) from e
        return pods.items

    async def watch_pod_changes(
        self, namespace: str
    ) -> AsyncIterator[PodChange]:
        """Watch a namespace for pod creation and modification.

        This watch will continue forever until cancelled. It is meant to be
        run from a background task handling pod changes continuously.

        Parameters
        ----------
        namespace
            Namespace to watch for changes.

        Yields
        ------
        PodChange
            Added or changed pod in this namespace.

        Raises
        ------
        KubernetesError
            Raised if there is some failure in a Kubernetes API call.
        """
        logger = self._logger.bind(namespace=namespace)
        logger.debug("Waiting for pod changes")
        watcher = KubernetesWatcher(
            method=self._api.list_namespaced_pod,
            object_type=V1Pod,
            kind="Pod",
            namespace=namespace,
            logger=logger,
        )
        try:
            async for event in watcher.watch():
                if event.action == WatchEventType.DELETED:
                    continue
                pod = event.object
                if not pod.status or not pod.status.phase:
                    continue
                phase = PodPhase(pod.status.phase)
                logger.debug(
                    "Saw pod change",
                    name=pod.metadata.name,
                    action=event.action.value,
                    phase=phase.value,
                )
                yield PodChange(phase=phase, pod=pod)
        finally:
            await watcher.close()
