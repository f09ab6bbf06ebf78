"""Generic Kubernetes object storage including list and delete.

Provides a generic Kubernetes object management class and the storage class
for ``Job`` objects, which only needs the generic operations. Storage classes
with other operations are defined in their own modules.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from kubernetes_asyncio import client
from kubernetes_asyncio.client import ApiClient, ApiException, V1Job
from structlog.stdlib import BoundLogger

from ...exceptions import KubernetesError
from ...models.domain.kubernetes import KubernetesModel, PropagationPolicy
from ...timeout import Timeout
from .creator import KubernetesObjectCreator

__all__ = [
    "JobStorage",
    "KubernetesObjectDeleter",
]


class KubernetesObjectDeleter[T: KubernetesModel](KubernetesObjectCreator[T]):
    """Generic Kubernetes object storage supporting list and delete.

    This class is not meant to be used directly by code outside of the
    Kubernetes storage layer. Use one of the kind-specific classes built on
    top of it instead.

    Parameters
    ----------
    create_method
        Method to create this type of object.
    delete_method
        Method to delete this type of object.
    list_method
        Method to list all of this type of object.
    object_type
        Type of object being acted on.
    kind
        Kubernetes kind of object being acted on.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        create_method: Callable[..., Awaitable[Any]],
        delete_method: Callable[..., Awaitable[Any]],
        list_method: Callable[..., Awaitable[Any]],
        object_type: type[T],
        kind: str,
        logger: BoundLogger,
    ) -> None:
        super().__init__(
            create_method=create_method,
            object_type=object_type,
            kind=kind,
            logger=logger,
        )
        self._delete = delete_method
        self._list = list_method

    async def delete(
        self,
        name: str,
        namespace: str,
        timeout: Timeout,
        *,
        propagation_policy: PropagationPolicy | None = None,
    ) -> None:
        """Delete a Kubernetes object.

        If the object does not exist, this is silently treated as success.

        Parameters
        ----------
        name
            Name of the object.
        namespace
            Namespace of the object.
        timeout
            Timeout on operation.
        propagation_policy
            Propagation policy for the object deletion.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        extra_args: dict[str, str | float] = {
            "_request_timeout": timeout.left()
        }
        if propagation_policy:
            extra_args["propagation_policy"] = propagation_policy.value
        self._logger.debug(
            f"Deleting {self._kind}",
            name=name,
            namespace=namespace,
            options=extra_args,
        )
        try:
            await self._delete(name, namespace, **extra_args)
        except ApiException as e:
            if e.status == 404:
                return
            raise KubernetesError.from_exception(
                "Error deleting object",
                e,
                kind=self._kind,
                namespace=namespace,
                name=name,
            ) from e

    async def list(
        self,
        namespace: str,
        timeout: Timeout,
        *,
        label_selector: str | None = None,
    ) -> list[T]:
        """List all objects of the appropriate kind in the namespace.

        Parameters
        ----------
        namespace
            Namespace to list.
        timeout
            Timeout on operation.
        label_selector
            Filter the returned list by the given label selector expression.

        Returns
        -------
        list
            List of objects found.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        extra_args: dict[str, str | float] = {
            "_request_timeout": timeout.left()
        }
        if label_selector:
            extra_args["label_selector"] = label_selector
        try:
            objs = await self._list(namespace, **extra_args)
        except ApiException as e:
            raise KubernetesError.from_exception(
                "Error listing objects",
                e,
                kind=self._kind,
                namespace=namespace,
            ) from e
        return objs.items


class JobStorage(KubernetesObjectDeleter[V1Job]):
    """Storage layer for ``Job`` objects.

    Parameters
    ----------
    api_client
        Kubernetes API client.
    logger
        Logger to use.
    """

    def __init__(self, api_client: ApiClient, logger: BoundLogger) -> None:
        api = client.BatchV1Api(api_client)
        super().__init__(
            create_method=api.create_namespaced_job,
            delete_method=api.delete_namespaced_job,
            list_method=api.list_namespaced_job,
            object_type=V1Job,
            kind="Job",
            logger=logger,
        )
