"""Volume access classification.

Decides whether a PVC can be mounted by a fresh exposer pod (free) or is
pinned to a workload pod that already mounts it (held).
"""

from __future__ import annotations

import structlog

from pv_mounter.cluster.client import ClusterClient
from pv_mounter.cluster.pods import pods_using_claim
from pv_mounter.errors import NotBoundError
from pv_mounter.models import BOUND, Occupancy, VolumeHandle

logger = structlog.get_logger()


async def find_holder(cluster: ClusterClient, namespace: str, pvc_name: str) -> Occupancy:
    """Scan the namespace for live pods mounting ``pvc_name``.

    The first pod in listing order wins; more than one candidate is logged
    so the operator can check which workload was picked.
    """
    pods = await cluster.list_pods(namespace)
    candidates = tuple(pod.metadata.name for pod in pods_using_claim(pods, pvc_name))

    if not candidates:
        return Occupancy.free()

    if len(candidates) > 1:
        logger.warning(
            "classifier.multiple_holders",
            namespace=namespace,
            pvc=pvc_name,
            candidates=list(candidates),
            selected=candidates[0],
        )

    return Occupancy(held_by=candidates[0], candidates=candidates)


async def classify_volume(
    cluster: ClusterClient, namespace: str, pvc_name: str
) -> tuple[VolumeHandle, Occupancy]:
    """Fetch the PVC and its PV and work out who holds the volume.

    Raises:
        NotFoundError: PVC or PV missing
        NotBoundError: PVC is not Bound
    """
    pvc = await cluster.get_pvc(namespace, pvc_name)

    phase = pvc.status.phase if pvc.status else None
    if phase != BOUND:
        raise NotBoundError(
            f"PVC {pvc_name} is not bound (phase: {phase})",
            details={"namespace": namespace, "pvc": pvc_name, "phase": phase},
        )

    volume_name = pvc.spec.volume_name
    pv = await cluster.get_pv(volume_name)

    handle = VolumeHandle(
        namespace=namespace,
        pvc_name=pvc_name,
        volume_name=volume_name,
        access_modes=frozenset(pv.spec.access_modes or []),
        phase=phase,
    )

    if not handle.exclusive:
        occupancy = Occupancy.free()
    else:
        occupancy = await find_holder(cluster, namespace, pvc_name)

    logger.info(
        "classifier.classified",
        namespace=namespace,
        pvc=pvc_name,
        access_modes=sorted(handle.access_modes),
        held_by=occupancy.held_by,
    )
    return handle, occupancy
