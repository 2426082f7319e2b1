"""Clean orchestration.

``clean`` reconstructs what ``mount`` left behind from cluster labels alone:

1. unmount the local path
2. exposer pod labelled for the PVC found: stop local forwards to it,
   stop the tunnel in the workload pod it proxies for (if any), delete it
3. otherwise: stop local forwards to the workload pod holding the PVC and
   the exposer process in its ephemeral container; the workload pod itself
   is never deleted

``pkill`` matching nothing is not an error, so running clean twice is safe.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field

import structlog
from kubernetes_asyncio import client

from pv_mounter.builders import (
    APP_LABEL,
    BACKEND_NFS,
    LABEL_APP,
    LABEL_BACKEND,
    LABEL_ORIGINAL_POD,
    LABEL_PVC,
    NFS_EPHEMERAL_PREFIX,
    PROXY_POD_PREFIX,
    SSH_EPHEMERAL_PREFIX,
)
from pv_mounter.cluster.classifier import find_holder
from pv_mounter.cluster.client import ClusterClient
from pv_mounter.config import Settings, get_settings
from pv_mounter.errors import CleanupError, NoMatchingPodError, NotFoundError
from pv_mounter.executor import MountExecutor
from pv_mounter.models import TransportKind
from pv_mounter.process import CommandResult, ProcessRunner
from pv_mounter.tunnel import port_forward_pattern
from pv_mounter.validation import validate_kubernetes_name

logger = structlog.get_logger()

# pkill: 1 means no process matched
PKILL_NO_MATCH = 1

REMOTE_KILL_COMMANDS: dict[TransportKind, list[str]] = {
    TransportKind.NFS: ["pkill", "ganesha.nfsd"],
    TransportKind.SSH: ["pkill", "-f", "ssh"],
}


def exposer_selector(pvc_name: str, transport: TransportKind) -> str:
    backend = f"{LABEL_BACKEND}={BACKEND_NFS}" if transport is TransportKind.NFS else f"!{LABEL_BACKEND}"
    return f"{LABEL_APP}={APP_LABEL},{LABEL_PVC}={pvc_name},{backend}"


def find_exposer_container(
    pod: client.V1Pod, transport: TransportKind, preferred: str | None = None
) -> str | None:
    """Ephemeral container of ``transport`` in ``pod``; the newest wins."""
    names = [c.name for c in (pod.spec.ephemeral_containers or [])] if pod.spec else []
    if preferred is not None and preferred in names:
        return preferred
    prefix = NFS_EPHEMERAL_PREFIX if transport is TransportKind.NFS else SSH_EPHEMERAL_PREFIX
    matching = [name for name in names if name.startswith(prefix)]
    return matching[-1] if matching else None


@dataclass
class CleanupReport:
    """What a clean run found and removed."""

    mount_point: str
    exposer_pod: str | None = None
    workload_pod: str | None = None
    remote_container: str | None = None
    deleted_pods: list[str] = field(default_factory=list)


class CleanupOrchestrator:
    """Undoes a mount without any state from the run that created it."""

    def __init__(
        self,
        cluster: ClusterClient,
        runner: ProcessRunner,
        settings: Settings | None = None,
        *,
        platform: str | None = None,
    ) -> None:
        self._cluster = cluster
        self._runner = runner
        self._executor = MountExecutor(
            runner, settings or get_settings(), platform=platform or sys.platform
        )
        self._log = logger.bind(component="cleanup")

    async def clean(
        self,
        namespace: str,
        pvc_name: str,
        mount_point: str,
        transport: TransportKind = TransportKind.SSH,
    ) -> CleanupReport:
        """Unmount and tear down remote resources for ``pvc_name``.

        Raises:
            UnmountError: local unmount failed (nothing else is attempted)
            NoMatchingPodError: no exposer pod, and no holder pod with an
                exposer container
            CleanupError: a pkill step failed
            ClusterError: the exposer pod could not be deleted
        """
        validate_kubernetes_name(namespace, "namespace")
        validate_kubernetes_name(pvc_name, "pvc-name", subdomain=True)
        self._log = self._log.bind(namespace=namespace, pvc=pvc_name, transport=transport.value)

        await self._executor.unmount(transport, mount_point)
        report = CleanupReport(mount_point=mount_point)

        pods = await self._cluster.list_pods(
            namespace, label_selector=exposer_selector(pvc_name, transport)
        )
        if pods:
            await self._clean_exposer(namespace, pods[0], transport, report)
            return report

        occupancy = await find_holder(self._cluster, namespace, pvc_name)
        if occupancy.is_free:
            raise NoMatchingPodError(
                f"no pod found for PVC {pvc_name} in namespace {namespace}",
                details={"namespace": namespace, "pvc": pvc_name},
            )
        await self._clean_holder(namespace, occupancy.held_by, transport, report)
        return report

    async def _clean_exposer(
        self,
        namespace: str,
        pod: client.V1Pod,
        transport: TransportKind,
        report: CleanupReport,
    ) -> None:
        name = pod.metadata.name
        labels = pod.metadata.labels or {}
        report.exposer_pod = name

        await self._kill_local_forwards(name)

        original_pod = labels.get(LABEL_ORIGINAL_POD)
        if original_pod:
            report.workload_pod = original_pod
            preferred = None
            if name.startswith(PROXY_POD_PREFIX):
                preferred = SSH_EPHEMERAL_PREFIX + name[len(PROXY_POD_PREFIX):]
            try:
                holder = await self._cluster.get_pod(namespace, original_pod)
            except NotFoundError:
                self._log.warning("cleanup.workload_pod.not_found", pod_name=original_pod)
            else:
                report.remote_container = await self._kill_remote(
                    namespace, holder, transport, preferred
                )

        await self._cluster.delete_pod(namespace, name)
        report.deleted_pods.append(name)
        self._log.info("cleanup.pod.deleted", pod_name=name)

    async def _clean_holder(
        self,
        namespace: str,
        pod_name: str,
        transport: TransportKind,
        report: CleanupReport,
    ) -> None:
        report.workload_pod = pod_name
        await self._kill_local_forwards(pod_name)
        holder = await self._cluster.get_pod(namespace, pod_name)
        report.remote_container = await self._kill_remote(namespace, holder, transport)
        if report.remote_container is None:
            raise NoMatchingPodError(
                f"no {transport.value} exposer container found in pod {pod_name}",
                details={"pod": pod_name, "transport": transport.value},
            )

    async def _kill_local_forwards(self, pod_name: str) -> None:
        result = await self._runner.run(["pkill", "-f", port_forward_pattern(pod_name)])
        self._check_pkill(result, f"port-forward to pod {pod_name}")

    async def _kill_remote(
        self,
        namespace: str,
        pod: client.V1Pod,
        transport: TransportKind,
        preferred: str | None = None,
    ) -> str | None:
        pod_name = pod.metadata.name
        container = find_exposer_container(pod, transport, preferred)
        if container is None:
            self._log.warning("cleanup.container.not_found", pod_name=pod_name)
            return None

        argv = [
            "kubectl", "exec", pod_name,
            "-n", namespace,
            "-c", container,
            "--",
            *REMOTE_KILL_COMMANDS[transport],
        ]
        result = await self._runner.run(argv)
        self._check_pkill(result, f"exposer process in {pod_name}/{container}")
        return container

    def _check_pkill(self, result: CommandResult, target: str) -> None:
        if result.returncode == 0:
            self._log.info("cleanup.killed", target=target)
            return
        if result.returncode == PKILL_NO_MATCH:
            self._log.info("cleanup.kill.no_match", target=target, output=result.output)
            return
        raise CleanupError(
            f"failed to stop {target}: {result.output or result.returncode}",
            details={"command": result.command, "returncode": result.returncode},
        )
