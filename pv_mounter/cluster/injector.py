"""Ephemeral container injection into pods that already hold the volume."""

from __future__ import annotations

from typing import Callable

import structlog
from kubernetes_asyncio import client

from pv_mounter.builders import (
    ExposerSpec,
    NFS_EPHEMERAL_PREFIX,
    bool_env,
    build_nfs_ephemeral_container,
    build_ssh_ephemeral_container,
)
from pv_mounter.cluster.client import ClusterClient
from pv_mounter.cluster.pods import (
    claim_volume_name,
    ephemeral_container_env,
    ephemeral_container_refs,
)
from pv_mounter.config import Settings, get_settings
from pv_mounter.errors import PatchError
from pv_mounter.models import ContainerState, KeyPair, PrivilegeProfile

logger = structlog.get_logger()

# (container name, pod volume name) -> container spec
ContainerFactory = Callable[[str, str], client.V1EphemeralContainer]


def running_container_with_prefix(pod: client.V1Pod, prefix: str) -> str | None:
    for ref in ephemeral_container_refs(pod):
        if ref.name.startswith(prefix) and ref.state is ContainerState.RUNNING:
            return ref.name
    return None


class EphemeralInjector:
    """Adds exposer containers to a running pod, reusing live ones.

    Containers cannot be removed from a pod once added, so a running
    container with the expected name prefix is reused instead of patching
    a second one in.
    """

    def __init__(self, cluster: ClusterClient, settings: Settings | None = None) -> None:
        self._cluster = cluster
        self._settings = settings or get_settings()
        self._log = logger.bind(component="injector")

    async def find_tunnel(
        self,
        namespace: str,
        pod_name: str,
        proxies: dict[str, str],
        privilege: PrivilegeProfile,
    ) -> tuple[str, KeyPair] | None:
        """Locate a running reverse-tunnel container that can be reattached.

        Args:
            proxies: container name -> IP of the proxy pod it must point at.

        Returns:
            (container name, key pair read back from its env), or None.
        """
        pod = await self._cluster.get_pod(namespace, pod_name)
        running = {
            ref.name
            for ref in ephemeral_container_refs(pod)
            if ref.state is ContainerState.RUNNING
        }
        for name, proxy_ip in proxies.items():
            if name not in running:
                continue
            env = ephemeral_container_env(pod, name) or {}
            if (
                env.get("PROXY_POD_IP") != proxy_ip
                or env.get("NEEDS_ROOT") != bool_env(privilege is PrivilegeProfile.ROOT)
                or not env.get("SSH_PRIVATE_KEY")
                or not env.get("SSH_PUBLIC_KEY")
            ):
                continue
            return name, KeyPair(
                private_pem=env["SSH_PRIVATE_KEY"], public_pem=env["SSH_PUBLIC_KEY"]
            )
        return None

    async def _ensure(
        self,
        namespace: str,
        pod_name: str,
        pvc_name: str,
        *,
        name: str,
        reuse_prefix: str,
        factory: ContainerFactory,
    ) -> tuple[str, bool]:
        pod = await self._cluster.get_pod(namespace, pod_name)

        existing = running_container_with_prefix(pod, reuse_prefix)
        if existing is not None:
            self._log.info(
                "injector.reuse", pod_name=pod_name, container=existing
            )
            return existing, True

        volume_name = claim_volume_name(pod, pvc_name)
        if volume_name is None:
            raise PatchError(
                f"pod {pod_name} has no volume referencing PVC {pvc_name}",
                details={"pod": pod_name, "pvc": pvc_name},
            )

        container = factory(name, volume_name)
        self._log.info(
            "injector.inject",
            pod_name=pod_name,
            container=name,
            volume=volume_name,
            image=container.image,
        )
        await self._cluster.patch_ephemeral_containers(namespace, pod_name, [container])
        return name, False

    async def ensure_ssh(
        self,
        namespace: str,
        pod_name: str,
        pvc_name: str,
        spec: ExposerSpec,
        *,
        name: str,
        key_pair: KeyPair,
        proxy_pod_ip: str,
    ) -> tuple[str, bool]:
        """Inject the reverse-tunnel container, or reuse it if running.

        Only a container with exactly ``name`` is reused: each tunnel is
        bound to the proxy pod it was created for.

        Returns:
            (container name, reused)
        """

        def factory(container_name: str, volume_name: str) -> client.V1EphemeralContainer:
            return build_ssh_ephemeral_container(
                spec,
                name=container_name,
                volume_name=volume_name,
                key_pair=key_pair,
                proxy_pod_ip=proxy_pod_ip,
                settings=self._settings,
            )

        return await self._ensure(
            namespace, pod_name, pvc_name, name=name, reuse_prefix=name, factory=factory
        )

    async def ensure_nfs(
        self,
        namespace: str,
        pod_name: str,
        pvc_name: str,
        spec: ExposerSpec,
        *,
        name: str,
    ) -> tuple[str, bool]:
        """Inject an NFS re-export container, or reuse any running one."""

        def factory(container_name: str, volume_name: str) -> client.V1EphemeralContainer:
            return build_nfs_ephemeral_container(
                spec, name=container_name, volume_name=volume_name, settings=self._settings
            )

        return await self._ensure(
            namespace,
            pod_name,
            pvc_name,
            name=name,
            reuse_prefix=NFS_EPHEMERAL_PREFIX,
            factory=factory,
        )
