"""Mount orchestration.

A mount run moves through:

    init -> classified -> strategy_selected -> remote_ready
         -> tunnel_established -> mounted

and to ``aborted`` from any state on failure or cancellation. The strategy
is picked from a fixed table keyed by (volume held?, transport):

    free, ssh   standalone        SSH exposer pod bound to the PVC
    free, nfs   standalone        NFS exposer pod bound to the PVC
    held, ssh   proxy_tunnel      proxy pod + reverse tunnel from the holder
    held, nfs   direct_ephemeral  NFS container injected into the holder

On failure the tunnel is killed and the temp key file removed before the
error propagates unchanged. Remote pods and injected containers are left in
place for inspection; ``clean`` removes them.
"""

from __future__ import annotations

import asyncio
import sys
from typing import Awaitable, Callable

import structlog

from pv_mounter.builders import (
    NFS_POD_PREFIX,
    PROXY_POD_PREFIX,
    SSH_POD_PREFIX,
    ExposerSpec,
    build_nfs_pod,
    build_proxy_pod,
    build_ssh_pod,
    ephemeral_container_name,
    pod_name,
    proxy_selector,
    random_suffix,
)
from pv_mounter.cluster.classifier import classify_volume
from pv_mounter.cluster.client import ClusterClient
from pv_mounter.cluster.injector import EphemeralInjector
from pv_mounter.cluster.pods import pod_is_ready
from pv_mounter.config import Settings, get_settings
from pv_mounter.credentials import TempFileRegistry, generate_key_pair
from pv_mounter.errors import ReadinessTimeoutError, ValidationError
from pv_mounter.executor import MountExecutor
from pv_mounter.models import (
    KeyPair,
    MountRequest,
    MountSession,
    MountState,
    Occupancy,
    PrivilegeProfile,
    Strategy,
    TransportKind,
)
from pv_mounter.process import ProcessRunner
from pv_mounter.prober import ReadinessProber
from pv_mounter.tunnel import TunnelManager, pick_local_port
from pv_mounter.validation import (
    check_client_tools,
    validate_cpu_limit,
    validate_kubernetes_name,
    validate_mount_point,
)

logger = structlog.get_logger()

# (volume held by a workload pod, transport) -> strategy
STRATEGY_TABLE: dict[tuple[bool, TransportKind], Strategy] = {
    (False, TransportKind.SSH): Strategy.STANDALONE,
    (False, TransportKind.NFS): Strategy.STANDALONE,
    (True, TransportKind.SSH): Strategy.PROXY_TUNNEL,
    (True, TransportKind.NFS): Strategy.DIRECT_EPHEMERAL,
}


def select_strategy(occupancy: Occupancy, transport: TransportKind) -> Strategy:
    return STRATEGY_TABLE[(not occupancy.is_free, transport)]


Handler = Callable[
    [MountRequest, MountSession, Occupancy, TunnelManager], Awaitable[None]
]


class MountOrchestrator:
    """Drives one mount run end to end."""

    def __init__(
        self,
        cluster: ClusterClient,
        runner: ProcessRunner,
        registry: TempFileRegistry,
        settings: Settings | None = None,
        *,
        platform: str | None = None,
        key_generator: Callable[[], KeyPair] = generate_key_pair,
    ) -> None:
        self._settings = settings or get_settings()
        self._cluster = cluster
        self._runner = runner
        self._registry = registry
        self._platform = platform or sys.platform
        self._generate_keys = key_generator

        self._injector = EphemeralInjector(cluster, self._settings)
        self._prober = ReadinessProber(cluster, self._settings)
        self._executor = MountExecutor(runner, self._settings, platform=self._platform)

        self._handlers: dict[tuple[Strategy, TransportKind], Handler] = {
            (Strategy.STANDALONE, TransportKind.SSH): self._standalone_ssh,
            (Strategy.STANDALONE, TransportKind.NFS): self._standalone_nfs,
            (Strategy.PROXY_TUNNEL, TransportKind.SSH): self._proxy_tunnel_ssh,
            (Strategy.DIRECT_EPHEMERAL, TransportKind.NFS): self._direct_ephemeral_nfs,
        }

        self.state = MountState.INIT
        self._log = logger.bind(component="orchestrator")

    def preflight(self, request: MountRequest) -> None:
        """Reject bad input before touching the cluster."""
        validate_kubernetes_name(request.namespace, "namespace")
        validate_kubernetes_name(request.pvc_name, "pvc-name", subdomain=True)
        validate_mount_point(request.mount_point)
        validate_cpu_limit(request.cpu_limit)
        if request.transport is TransportKind.NFS and request.privilege is PrivilegeProfile.ROOT:
            raise ValidationError(
                "--needs-root is not supported with the nfs backend",
                details={"backend": request.transport.value},
            )
        check_client_tools(request.transport, self._platform, which=self._runner.which)

    def _transition(self, session: MountSession | None, state: MountState) -> None:
        self.state = state
        if session is not None:
            session.state = state
            session.history.append(state)
        self._log.info("mount.state", state=state.value)

    async def mount(self, request: MountRequest) -> MountSession:
        """Mount ``request.pvc_name`` at ``request.mount_point``.

        Returns the session of the completed run. The port-forward keeps
        running in the background.
        """
        self._log = self._log.bind(
            namespace=request.namespace,
            pvc=request.pvc_name,
            transport=request.transport.value,
        )
        self.state = MountState.INIT
        session: MountSession | None = None

        try:
            self.preflight(request)

            _, occupancy = await classify_volume(
                self._cluster, request.namespace, request.pvc_name
            )
            self._transition(None, MountState.CLASSIFIED)

            strategy = select_strategy(occupancy, request.transport)
            session = MountSession(
                strategy=strategy,
                transport=request.transport,
                local_port=pick_local_port(),
                history=[MountState.INIT, MountState.CLASSIFIED],
            )
            self._log = self._log.bind(strategy=strategy.value)
            self._transition(session, MountState.STRATEGY_SELECTED)

            handler = self._handlers[(strategy, request.transport)]
            async with TunnelManager(self._runner) as tunnels:
                await handler(request, session, occupancy, tunnels)
                tunnels.detach()

        except (Exception, asyncio.CancelledError) as e:
            failed_in = self.state
            self._transition(session, MountState.ABORTED)
            self._log.error(
                "mount.aborted",
                failed_in=failed_in.value,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise

        finally:
            if session is not None and session.key_file is not None:
                self._registry.remove(session.key_file)
                session.key_file = None

        self._log.info(
            "mount.completed",
            mount_point=request.mount_point,
            local_port=session.local_port,
            remote_pod=session.remote_pod,
        )
        return session

    # -- shared tail --

    async def _connect_and_mount(
        self,
        request: MountRequest,
        session: MountSession,
        tunnels: TunnelManager,
        remote_port: int,
    ) -> None:
        tunnel = await tunnels.open(
            request.namespace, session.forward_target, session.local_port, remote_port
        )
        await self._prober.wait_for_transport(session.transport, session.local_port, tunnel)
        self._transition(session, MountState.TUNNEL_ESTABLISHED)

        if session.transport is TransportKind.SSH:
            session.key_file = self._registry.create_key_file(session.key_pair.private_pem)
            await self._executor.mount_ssh(
                session.key_file,
                request.privilege,
                request.mount_point,
                session.local_port,
            )
        else:
            await self._executor.mount_nfs(request.mount_point, session.local_port)

        self._transition(session, MountState.MOUNTED)

    @staticmethod
    def _spec(request: MountRequest) -> ExposerSpec:
        return ExposerSpec(
            transport=request.transport,
            privilege=request.privilege,
            image=request.image,
            image_secret=request.image_secret,
            cpu_limit=request.cpu_limit,
        )

    # -- strategy handlers --

    async def _standalone_ssh(
        self,
        request: MountRequest,
        session: MountSession,
        occupancy: Occupancy,
        tunnels: TunnelManager,
    ) -> None:
        session.key_pair = self._generate_keys()
        name = pod_name(SSH_POD_PREFIX)
        pod = build_ssh_pod(
            self._spec(request),
            name=name,
            pvc_name=request.pvc_name,
            local_port=session.local_port,
            public_key=session.key_pair.public_pem,
            settings=self._settings,
        )
        await self._cluster.create_pod(request.namespace, pod)
        session.remote_pod = name
        self._log.info("mount.pod.created", pod_name=name)

        await self._prober.wait_for_pod_ready(request.namespace, name)
        self._transition(session, MountState.REMOTE_READY)

        await self._connect_and_mount(request, session, tunnels, self._settings.ports.ssh)

    async def _standalone_nfs(
        self,
        request: MountRequest,
        session: MountSession,
        occupancy: Occupancy,
        tunnels: TunnelManager,
    ) -> None:
        name = pod_name(NFS_POD_PREFIX)
        pod = build_nfs_pod(
            self._spec(request),
            name=name,
            pvc_name=request.pvc_name,
            local_port=session.local_port,
            settings=self._settings,
        )
        await self._cluster.create_pod(request.namespace, pod)
        session.remote_pod = name
        self._log.info("mount.pod.created", pod_name=name)

        await self._prober.wait_for_pod_ready(request.namespace, name)
        self._transition(session, MountState.REMOTE_READY)

        await self._connect_and_mount(request, session, tunnels, self._settings.ports.nfs)

    async def _find_reusable_proxy(
        self, request: MountRequest, holder: str
    ) -> tuple[str, str, KeyPair] | None:
        """A Ready proxy for ``holder`` whose tunnel container is still running."""
        proxies = await self._cluster.list_pods(
            request.namespace, label_selector=proxy_selector(request.pvc_name, holder)
        )
        candidates: dict[str, str] = {}
        by_container: dict[str, str] = {}
        for pod in proxies:
            name = pod.metadata.name
            if not name.startswith(PROXY_POD_PREFIX) or not pod_is_ready(pod):
                continue
            if not pod.status.pod_ip:
                continue
            container = ephemeral_container_name(
                TransportKind.SSH, name[len(PROXY_POD_PREFIX):]
            )
            candidates[container] = pod.status.pod_ip
            by_container[container] = name
        if not candidates:
            return None

        found = await self._injector.find_tunnel(
            request.namespace, holder, candidates, request.privilege
        )
        if found is None:
            return None
        container, key_pair = found
        return by_container[container], container, key_pair

    async def _proxy_tunnel_ssh(
        self,
        request: MountRequest,
        session: MountSession,
        occupancy: Occupancy,
        tunnels: TunnelManager,
    ) -> None:
        holder = occupancy.held_by
        session.remote_pod = holder

        reusable = await self._find_reusable_proxy(request, holder)
        if reusable is not None:
            session.proxy_pod, session.ephemeral_container, session.key_pair = reusable
            session.reused_container = True
            self._log.info(
                "mount.proxy.reused",
                pod_name=session.proxy_pod,
                container=session.ephemeral_container,
            )
            self._transition(session, MountState.REMOTE_READY)
            await self._connect_and_mount(request, session, tunnels, self._settings.ports.ssh)
            return

        session.key_pair = self._generate_keys()

        # The tunnel container is named after its proxy so reuse never
        # crosses proxies
        suffix = random_suffix()
        proxy_name = pod_name(PROXY_POD_PREFIX, suffix)
        pod = build_proxy_pod(
            self._spec(request),
            name=proxy_name,
            pvc_name=request.pvc_name,
            local_port=session.local_port,
            public_key=session.key_pair.public_pem,
            original_pod=holder,
            settings=self._settings,
        )
        await self._cluster.create_pod(request.namespace, pod)
        session.proxy_pod = proxy_name
        self._log.info("mount.pod.created", pod_name=proxy_name, original_pod=holder)

        await self._prober.wait_for_pod_ready(request.namespace, proxy_name)

        proxy = await self._cluster.get_pod(request.namespace, proxy_name)
        proxy_ip = proxy.status.pod_ip if proxy.status else None
        if not proxy_ip:
            raise ReadinessTimeoutError(
                f"proxy pod {proxy_name} has no IP address",
                details={"pod": proxy_name},
                phase="pod",
            )

        container, reused = await self._injector.ensure_ssh(
            request.namespace,
            holder,
            request.pvc_name,
            self._spec(request),
            name=ephemeral_container_name(TransportKind.SSH, suffix),
            key_pair=session.key_pair,
            proxy_pod_ip=proxy_ip,
        )
        session.ephemeral_container = container
        session.reused_container = reused
        if not reused:
            await self._prober.wait_for_container_running(request.namespace, holder, container)
        self._transition(session, MountState.REMOTE_READY)

        await self._connect_and_mount(request, session, tunnels, self._settings.ports.ssh)

    async def _direct_ephemeral_nfs(
        self,
        request: MountRequest,
        session: MountSession,
        occupancy: Occupancy,
        tunnels: TunnelManager,
    ) -> None:
        holder = occupancy.held_by
        session.remote_pod = holder

        container, reused = await self._injector.ensure_nfs(
            request.namespace,
            holder,
            request.pvc_name,
            self._spec(request),
            name=ephemeral_container_name(TransportKind.NFS),
        )
        session.ephemeral_container = container
        session.reused_container = reused
        if reused:
            self._log.info("mount.container.reused", pod_name=holder, container=container)
        else:
            await self._prober.wait_for_container_running(request.namespace, holder, container)
        self._transition(session, MountState.REMOTE_READY)

        await self._connect_and_mount(request, session, tunnels, self._settings.ports.nfs)
