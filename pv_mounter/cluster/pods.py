"""Pure helpers over V1Pod objects."""

from __future__ import annotations

from kubernetes_asyncio import client

from pv_mounter.models import ContainerState, EphemeralContainerRef

TERMINAL_PHASES = frozenset({"Succeeded", "Failed"})


def pod_phase(pod: client.V1Pod) -> str | None:
    return pod.status.phase if pod.status else None


def pod_is_ready(pod: client.V1Pod) -> bool:
    """True when the pod reports condition Ready=True."""
    if pod.status is None:
        return False
    for cond in pod.status.conditions or []:
        if cond.type == "Ready" and cond.status == "True":
            return True
    return False


def claim_volume_name(pod: client.V1Pod, claim_name: str) -> str | None:
    """Name of the pod volume backed by ``claim_name``, if any."""
    if pod.spec is None:
        return None
    for volume in pod.spec.volumes or []:
        pvc = volume.persistent_volume_claim
        if pvc is not None and pvc.claim_name == claim_name:
            return volume.name
    return None


def pods_using_claim(pods: list[client.V1Pod], claim_name: str) -> list[client.V1Pod]:
    """Live pods that reference ``claim_name``, in listing order."""
    return [
        pod
        for pod in pods
        if pod_phase(pod) not in TERMINAL_PHASES
        and claim_volume_name(pod, claim_name) is not None
    ]


def _container_state(status: client.V1ContainerStatus) -> tuple[ContainerState, str | None]:
    state = status.state
    if state is None:
        return ContainerState.UNKNOWN, None
    if state.running is not None:
        return ContainerState.RUNNING, None
    if state.terminated is not None:
        return ContainerState.TERMINATED, state.terminated.reason
    if state.waiting is not None:
        return ContainerState.WAITING, state.waiting.reason
    return ContainerState.UNKNOWN, None


def ephemeral_container_refs(pod: client.V1Pod) -> list[EphemeralContainerRef]:
    """Observed state of every ephemeral container in ``pod``."""
    if pod.status is None:
        return []
    refs = []
    for status in pod.status.ephemeral_container_statuses or []:
        state, reason = _container_state(status)
        refs.append(
            EphemeralContainerRef(
                name=status.name,
                host_pod=pod.metadata.name,
                state=state,
                reason=reason,
            )
        )
    return refs


def ephemeral_container_ref(pod: client.V1Pod, name: str) -> EphemeralContainerRef | None:
    for ref in ephemeral_container_refs(pod):
        if ref.name == name:
            return ref
    return None


def ephemeral_container_env(pod: client.V1Pod, name: str) -> dict[str, str] | None:
    """Literal env values of ephemeral container ``name`` as declared in the pod spec."""
    if pod.spec is None:
        return None
    for container in pod.spec.ephemeral_containers or []:
        if container.name == name:
            return {e.name: e.value for e in container.env or [] if e.value is not None}
    return None
