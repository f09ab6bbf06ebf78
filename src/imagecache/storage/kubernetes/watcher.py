"""Watch a Kubernetes namespace for changes to objects."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Self

from kubernetes_asyncio.client import ApiException
from kubernetes_asyncio.watch import Watch
from structlog.stdlib import BoundLogger

from ...exceptions import KubernetesError
from ...models.domain.kubernetes import WatchEventType

__all__ = [
    "KubernetesWatcher",
    "WatchEvent",
]


@dataclass
class WatchEvent[T]:
    """Parsed event from a Kubernetes watch.

    This model is intended only for use within the Kubernetes storage layer.
    """

    action: WatchEventType
    """Action the event represents."""

    object: T
    """Affected Kubernetes object."""

    @classmethod
    def from_event(cls, event: dict[str, Any], object_type: type[T]) -> Self:
        """Create a `WatchEvent` from a watch event.

        Parameters
        ----------
        event
            Event as returned by the Kubernetes watch API.
        object_type
            Expected type of the object.

        Raises
        ------
        TypeError
            Raised if the type of the object in the watch event was incorrect.
        """
        action = WatchEventType(event["type"])
        obj = event["object"]
        if not isinstance(obj, object_type):
            real_type = type(obj).__name__
            expected_type = object_type.__name__
            msg = f"Watch object was of type {real_type}, not {expected_type}"
            raise TypeError(msg)
        return cls(action=action, object=obj)


class KubernetesWatcher[T]:
    """Watch the objects of one kind in a namespace until cancelled.

    The watch is restarted whenever the server closes it, and retried if
    Kubernetes reports that it has expired. It passes an explicit return
    type to the watch API, since ``kubernetes_asyncio`` otherwise finds the
    type by parsing the docstring of the list method, which fails with the
    Safir `~safir.testing.kubernetes.MockKubernetesApi` mock.

    Parameters
    ----------
    method
        API list method that supports the watch API.
    object_type
        Type of object returned by the method.
    kind
        Kubernetes kind of object being watched, for error reporting.
    namespace
        Namespace to watch.
    label_selector
        Only watch objects matching this label selector.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        method: Callable[..., Awaitable[Any]],
        object_type: type[T],
        kind: str,
        namespace: str,
        label_selector: str | None = None,
        logger: BoundLogger,
    ) -> None:
        self._method = method
        self._type = object_type
        self._kind = kind
        self._namespace = namespace
        self._logger = logger

        self._args = {"namespace": namespace}
        if label_selector:
            self._args["label_selector"] = label_selector
        self._watch = Watch(return_type=object_type)

    async def close(self) -> None:
        """Close the internal API client used by the watch API."""
        self._watch.stop()
        await self._watch.close()

    async def watch(self) -> AsyncIterator[WatchEvent[T]]:
        """Watch Kubernetes for changes.

        Yields
        ------
        WatchEvent
            Next event from the watch.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server during the
            watch, other than expiration of the watch.
        """
        while True:
            try:
                async with self._watch.stream(self._method, **self._args) as s:
                    async for event in s:
                        yield WatchEvent.from_event(event, self._type)
                self._logger.debug("Watch closed by server, restarting")
            except ApiException as e:
                if e.status == 410:
                    self._logger.info("Watch expired, retrying")
                    continue
                raise KubernetesError.from_exception(
                    "Error watching objects",
                    e,
                    kind=self._kind,
                    namespace=self._namespace,
                ) from e
