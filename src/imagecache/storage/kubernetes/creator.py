"""Generic Kubernetes object storage supporting create.

For object types that also need list and delete, see
`~imagecache.storage.kubernetes.deleter.KubernetesObjectDeleter`, which
subclasses `KubernetesObjectCreator` and adds list and delete support.
"""

from collections.abc import Awaitable, Callable
from typing import Any

from kubernetes_asyncio.client import ApiException
from structlog.stdlib import BoundLogger

from ...exceptions import KubernetesError
from ...models.domain.kubernetes import KubernetesModel
from ...timeout import Timeout

__all__ = ["KubernetesObjectCreator"]


class KubernetesObjectCreator[T: KubernetesModel]:
    """Generic Kubernetes object storage supporting create.

    This class provides a wrapper around any Kubernetes object type that
    implements the create operation with logging and exception
    conversion.

    This class is not meant to be used directly by code outside of the
    Kubernetes storage layer. Use one of the kind-specific classes built on
    top of it instead.

    Parameters
    ----------
    create_method
        Method to create this type of object.
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
        object_type: type[T],
        kind: str,
        logger: BoundLogger,
    ) -> None:
        self._create = create_method
        self._type = object_type
        self._kind = kind
        self._logger = logger

    async def create(self, namespace: str, body: T, timeout: Timeout) -> T:
        """Create a new Kubernetes object.

        Parameters
        ----------
        namespace
            Namespace of the object.
        body
            New object.
        timeout
            Timeout on operation.

        Returns
        -------
        typing.Any
            The object as created by Kubernetes, or the provided body if the
            API returned nothing.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        name = body.metadata.name
        self._logger.debug(f"Creating {self._kind}", name=name)
        try:
            created = await self._create(
                namespace, body, _request_timeout=timeout.left()
            )
        except ApiException as e:
            raise KubernetesError.from_exception(
                "Error creating object",
                e,
                kind=self._kind,
                namespace=namespace,
                name=name,
            ) from e
        if isinstance(created, self._type):
            return created
        return body
