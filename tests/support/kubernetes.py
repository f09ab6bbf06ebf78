"""Support functions for Kubernetes tests."""

from __future__ import annotations

from kubernetes_asyncio.client import (
    CoreV1Event,
    V1Container,
    V1ObjectMeta,
    V1ObjectReference,
    V1Pod,
    V1PodSpec,
)
from safir.testing.kubernetes import MockKubernetesApi

from imagecache.constants import JOB_NAME_LABEL
from imagecache.models.domain.kubernetes import PodPhase

__all__ = [
    "create_event_for_pod",
    "create_pod_for_job",
    "pods_for_job",
    "set_pod_phase",
]


async def create_event_for_pod(
    mock_kubernetes: MockKubernetesApi,
    pod: str,
    namespace: str,
    message: str,
    *,
    event_type: str = "Warning",
) -> None:
    """Create a Kubernetes event involving a pod."""
    event = CoreV1Event(
        metadata=V1ObjectMeta(name=f"{pod}-event", namespace=namespace),
        message=message,
        reason="Failed",
        type=event_type,
        involved_object=V1ObjectReference(
            kind="Pod", name=pod, namespace=namespace
        ),
    )
    await mock_kubernetes.create_namespaced_event(namespace, event)


async def create_pod_for_job(
    mock_kubernetes: MockKubernetesApi,
    job: str,
    name: str,
    namespace: str,
    phase: PodPhase,
) -> None:
    """Create a pod belonging to a job without creating the job.

    Parameters
    ----------
    mock_kubernetes
        Mock Kubernetes API.
    job
        Name of the job the pod claims to belong to.
    name
        Name of the pod.
    namespace
        Namespace of the pod.
    phase
        Phase the pod should be in.
    """
    pod = V1Pod(
        metadata=V1ObjectMeta(
            name=name, namespace=namespace, labels={JOB_NAME_LABEL: job}
        ),
        spec=V1PodSpec(
            containers=[
                V1Container(name="image-manager", image="example/helper")
            ],
            restart_policy="Never",
        ),
    )
    await mock_kubernetes.create_namespaced_pod(namespace, pod)
    await set_pod_phase(mock_kubernetes, name, namespace, phase)


async def pods_for_job(
    mock_kubernetes: MockKubernetesApi, job: str, namespace: str
) -> list[V1Pod]:
    """Return the pods the mock created for a job."""
    selector = f"{JOB_NAME_LABEL}={job}"
    pods = await mock_kubernetes.list_namespaced_pod(
        namespace, label_selector=selector
    )
    return pods.items


async def set_pod_phase(
    mock_kubernetes: MockKubernetesApi,
    name: str,
    namespace: str,
    phase: PodPhase,
) -> None:
    """Change the phase of a pod, generating a watch event."""
    await mock_kubernetes.patch_namespaced_pod_status(
        name,
        namespace,
        [{"op": "replace", "path": "/status/phase", "value": phase.value}],
    )
