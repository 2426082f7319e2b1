"""Exposer pod and ephemeral container specs.

Everything here is pure: functions take settings and plain values and return
``kubernetes_asyncio.client`` model objects, leaving the API calls to the
cluster package.

Exposer variants are keyed by (TransportKind, PrivilegeProfile):

    (ssh, non_root)  unprivileged sshd, UID/GID 2137, drop ALL
    (ssh, root)      privileged sshd, SYS_ADMIN + SYS_CHROOT
    (nfs, *)         NFS-Ganesha with the capabilities it needs to re-export
"""

from __future__ import annotations

import random
import string
from dataclasses import dataclass
from typing import Callable

from kubernetes_asyncio import client

from pv_mounter.config import Settings, get_settings
from pv_mounter.models import KeyPair, PrivilegeProfile, Role, TransportKind

APP_LABEL = "volume-exposer"

LABEL_APP = "app"
LABEL_PVC = "pvcName"
LABEL_PORT = "portNumber"
LABEL_BACKEND = "backend"
LABEL_ORIGINAL_POD = "originalPodName"

BACKEND_NFS = "nfs"

SSH_CONTAINER_NAME = "volume-exposer"
NFS_CONTAINER_NAME = "nfs-ganesha"

SSH_POD_PREFIX = "volume-exposer-"
PROXY_POD_PREFIX = "volume-exposer-proxy-"
NFS_POD_PREFIX = "volume-exposer-nfs-"

SSH_EPHEMERAL_PREFIX = "volume-exposer-ephemeral-"
NFS_EPHEMERAL_PREFIX = "nfs-ganesha-ephemeral-"

# Pod volume name used by standalone exposers
VOLUME_NAME = "my-pvc"

SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
SUFFIX_LENGTH = 5

NFS_CAPABILITIES = [
    "SYS_ADMIN",
    "DAC_READ_SEARCH",
    "DAC_OVERRIDE",
    "SYS_RESOURCE",
    "CHOWN",
    "FOWNER",
    "SETUID",
    "SETGID",
]


def random_suffix(length: int = SUFFIX_LENGTH) -> str:
    """Lowercase alphanumeric suffix for generated names."""
    return "".join(random.choice(SUFFIX_ALPHABET) for _ in range(length))


def pod_name(prefix: str, suffix: str | None = None) -> str:
    return f"{prefix}{suffix or random_suffix()}"


def ephemeral_container_name(transport: TransportKind, suffix: str | None = None) -> str:
    prefix = NFS_EPHEMERAL_PREFIX if transport is TransportKind.NFS else SSH_EPHEMERAL_PREFIX
    return f"{prefix}{suffix or random_suffix()}"


@dataclass(frozen=True)
class ExposerSpec:
    """Inputs shared by every exposer pod/container."""

    transport: TransportKind
    privilege: PrivilegeProfile = PrivilegeProfile.NON_ROOT
    image: str | None = None
    image_secret: str | None = None
    cpu_limit: str | None = None


# -- images, resources, labels --


def select_image(spec: ExposerSpec, settings: Settings | None = None) -> str:
    """Override image if given, else the default for transport and privilege."""
    if spec.image:
        return spec.image
    images = (settings or get_settings()).images
    if spec.transport is TransportKind.NFS:
        return images.nfs
    if spec.privilege is PrivilegeProfile.ROOT:
        return images.ssh_privileged
    return images.ssh


def build_resources(
    cpu_limit: str | None = None, settings: Settings | None = None
) -> client.V1ResourceRequirements:
    res = (settings or get_settings()).resources
    limits = {
        "memory": res.memory_limit,
        "ephemeral-storage": res.ephemeral_storage_limit,
    }
    if cpu_limit:
        limits["cpu"] = cpu_limit
    return client.V1ResourceRequirements(
        requests={
            "cpu": res.cpu_request,
            "memory": res.memory_request,
            "ephemeral-storage": res.ephemeral_storage_request,
        },
        limits=limits,
    )


def build_labels(
    pvc_name: str,
    port: int,
    transport: TransportKind = TransportKind.SSH,
    original_pod: str | None = None,
) -> dict[str, str]:
    labels = {
        LABEL_APP: APP_LABEL,
        LABEL_PVC: pvc_name,
        LABEL_PORT: str(port),
    }
    if transport is TransportKind.NFS:
        labels[LABEL_BACKEND] = BACKEND_NFS
    if original_pod:
        labels[LABEL_ORIGINAL_POD] = original_pod
    return labels


def proxy_selector(pvc_name: str, original_pod: str) -> str:
    """Label selector for SSH proxies created for ``original_pod``."""
    return (
        f"{LABEL_APP}={APP_LABEL},{LABEL_PVC}={pvc_name},"
        f"{LABEL_ORIGINAL_POD}={original_pod}"
    )


def build_image_pull_secrets(
    image_secret: str | None,
) -> list[client.V1LocalObjectReference] | None:
    if not image_secret:
        return None
    return [client.V1LocalObjectReference(name=image_secret)]


# -- security profiles --


def root_security_context(settings: Settings) -> client.V1SecurityContext:
    # Ephemeral containers run under the host pod's pod-level context
    return client.V1SecurityContext(
        allow_privilege_escalation=True,
        read_only_root_filesystem=True,
        capabilities=client.V1Capabilities(add=["SYS_ADMIN", "SYS_CHROOT"]),
        seccomp_profile=client.V1SeccompProfile(type="RuntimeDefault"),
        run_as_user=0,
        run_as_group=0,
        run_as_non_root=False,
    )


def non_root_security_context(settings: Settings) -> client.V1SecurityContext:
    sec = settings.security
    return client.V1SecurityContext(
        allow_privilege_escalation=False,
        read_only_root_filesystem=True,
        capabilities=client.V1Capabilities(drop=["ALL"]),
        seccomp_profile=client.V1SeccompProfile(type="RuntimeDefault"),
        run_as_user=sec.user_id,
        run_as_group=sec.group_id,
        run_as_non_root=True,
    )


def nfs_security_context(settings: Settings) -> client.V1SecurityContext:
    # ganesha writes its config at startup, so the root fs stays writable
    return client.V1SecurityContext(
        allow_privilege_escalation=True,
        read_only_root_filesystem=False,
        capabilities=client.V1Capabilities(drop=["ALL"], add=list(NFS_CAPABILITIES)),
        seccomp_profile=client.V1SeccompProfile(type="Unconfined"),
    )


SecurityContextBuilder = Callable[[Settings], client.V1SecurityContext]

SECURITY_PROFILES: dict[tuple[TransportKind, PrivilegeProfile], SecurityContextBuilder] = {
    (TransportKind.SSH, PrivilegeProfile.NON_ROOT): non_root_security_context,
    (TransportKind.SSH, PrivilegeProfile.ROOT): root_security_context,
    (TransportKind.NFS, PrivilegeProfile.NON_ROOT): nfs_security_context,
    (TransportKind.NFS, PrivilegeProfile.ROOT): nfs_security_context,
}


def container_security_context(
    spec: ExposerSpec, settings: Settings | None = None
) -> client.V1SecurityContext:
    settings = settings or get_settings()
    return SECURITY_PROFILES[(spec.transport, spec.privilege)](settings)


def pod_security_context(
    privilege: PrivilegeProfile, settings: Settings | None = None
) -> client.V1PodSecurityContext:
    if privilege is PrivilegeProfile.ROOT:
        return client.V1PodSecurityContext(
            run_as_non_root=False, run_as_user=0, run_as_group=0
        )
    sec = (settings or get_settings()).security
    return client.V1PodSecurityContext(
        run_as_non_root=True, run_as_user=sec.user_id, run_as_group=sec.group_id
    )


# -- env --


def _env(**values: str) -> list[client.V1EnvVar]:
    return [client.V1EnvVar(name=k, value=v) for k, v in values.items()]


def bool_env(value: bool) -> str:
    return "true" if value else "false"


def ssh_env(
    public_key: str,
    role: Role,
    privilege: PrivilegeProfile,
    ssh_port: int | None = None,
) -> list[client.V1EnvVar]:
    values = {
        "SSH_PUBLIC_KEY": public_key,
        "NEEDS_ROOT": bool_env(privilege is PrivilegeProfile.ROOT),
        "ROLE": role.value,
    }
    if ssh_port is not None:
        values["SSH_PORT"] = str(ssh_port)
    return _env(**values)


def nfs_env() -> list[client.V1EnvVar]:
    return _env(NEEDS_ROOT="true", LOG_LEVEL="EVENT")


# -- pods --


def _exposer_pod(
    name: str,
    labels: dict[str, str],
    container: client.V1Container,
    spec: ExposerSpec,
    pod_privilege: PrivilegeProfile,
    settings: Settings,
    pvc_name: str | None,
) -> client.V1Pod:
    volumes = None
    if pvc_name is not None:
        container.volume_mounts = [
            client.V1VolumeMount(name=VOLUME_NAME, mount_path=settings.volume_path)
        ]
        volumes = [
            client.V1Volume(
                name=VOLUME_NAME,
                persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                    claim_name=pvc_name
                ),
            )
        ]

    return client.V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=client.V1ObjectMeta(name=name, labels=labels),
        spec=client.V1PodSpec(
            containers=[container],
            volumes=volumes,
            security_context=pod_security_context(pod_privilege, settings),
            image_pull_secrets=build_image_pull_secrets(spec.image_secret),
        ),
    )


def build_ssh_pod(
    spec: ExposerSpec,
    *,
    name: str,
    pvc_name: str,
    local_port: int,
    public_key: str,
    settings: Settings | None = None,
) -> client.V1Pod:
    """Standalone SSH exposer mounting the PVC."""
    settings = settings or get_settings()
    port = settings.ports.ssh
    container = client.V1Container(
        name=SSH_CONTAINER_NAME,
        image=select_image(spec, settings),
        image_pull_policy=settings.images.pull_policy,
        ports=[client.V1ContainerPort(container_port=port)],
        env=ssh_env(public_key, Role.STANDALONE, spec.privilege, ssh_port=port),
        security_context=container_security_context(spec, settings),
        resources=build_resources(spec.cpu_limit, settings),
    )
    return _exposer_pod(
        name,
        build_labels(pvc_name, local_port),
        container,
        spec,
        spec.privilege,
        settings,
        pvc_name,
    )


def build_proxy_pod(
    spec: ExposerSpec,
    *,
    name: str,
    pvc_name: str,
    local_port: int,
    public_key: str,
    original_pod: str,
    settings: Settings | None = None,
) -> client.V1Pod:
    """SSH proxy the ephemeral container in ``original_pod`` tunnels back to.

    The proxy does not mount the volume.
    """
    settings = settings or get_settings()
    port = settings.ports.proxy_ssh
    container = client.V1Container(
        name=SSH_CONTAINER_NAME,
        image=select_image(spec, settings),
        image_pull_policy=settings.images.pull_policy,
        ports=[client.V1ContainerPort(container_port=port)],
        env=ssh_env(public_key, Role.PROXY, spec.privilege, ssh_port=port),
        security_context=container_security_context(spec, settings),
        resources=build_resources(spec.cpu_limit, settings),
    )
    return _exposer_pod(
        name,
        build_labels(pvc_name, local_port, original_pod=original_pod),
        container,
        spec,
        spec.privilege,
        settings,
        None,
    )


def build_nfs_pod(
    spec: ExposerSpec,
    *,
    name: str,
    pvc_name: str,
    local_port: int,
    settings: Settings | None = None,
) -> client.V1Pod:
    """Standalone NFS-Ganesha exposer. Always runs as root."""
    settings = settings or get_settings()
    container = client.V1Container(
        name=NFS_CONTAINER_NAME,
        image=select_image(spec, settings),
        image_pull_policy=settings.images.pull_policy,
        ports=[client.V1ContainerPort(container_port=settings.ports.nfs)],
        env=nfs_env(),
        security_context=container_security_context(spec, settings),
        resources=build_resources(spec.cpu_limit, settings),
    )
    return _exposer_pod(
        name,
        build_labels(pvc_name, local_port, TransportKind.NFS),
        container,
        spec,
        PrivilegeProfile.ROOT,
        settings,
        pvc_name,
    )


# -- ephemeral containers --


def build_ssh_ephemeral_container(
    spec: ExposerSpec,
    *,
    name: str,
    volume_name: str,
    key_pair: KeyPair,
    proxy_pod_ip: str,
    settings: Settings | None = None,
) -> client.V1EphemeralContainer:
    """Reverse-tunnel container injected next to the workload."""
    settings = settings or get_settings()
    env = ssh_env(key_pair.public_pem, Role.EPHEMERAL, spec.privilege)
    env.extend(
        _env(SSH_PRIVATE_KEY=key_pair.private_pem, PROXY_POD_IP=proxy_pod_ip)
    )
    return client.V1EphemeralContainer(
        name=name,
        image=select_image(spec, settings),
        image_pull_policy=settings.images.pull_policy,
        env=env,
        security_context=container_security_context(spec, settings),
        volume_mounts=[
            client.V1VolumeMount(name=volume_name, mount_path=settings.volume_path)
        ],
    )


def build_nfs_ephemeral_container(
    spec: ExposerSpec,
    *,
    name: str,
    volume_name: str,
    settings: Settings | None = None,
) -> client.V1EphemeralContainer:
    """NFS re-export container injected into the pod holding the volume.

    Runs as nobody so it passes the host pod's runAsNonRoot policy;
    capabilities cover file access.
    """
    settings = settings or get_settings()
    security_context = container_security_context(spec, settings)
    security_context.run_as_user = settings.security.nfs_ephemeral_user_id
    return client.V1EphemeralContainer(
        name=name,
        image=select_image(spec, settings),
        image_pull_policy=settings.images.pull_policy,
        env=nfs_env(),
        security_context=security_context,
        volume_mounts=[
            client.V1VolumeMount(name=volume_name, mount_path=settings.volume_path)
        ],
    )
