"""Readiness probing.

Three phases, each polled at a fixed interval under its own deadline:

- pod readiness (condition Ready=True)
- ephemeral container readiness (state running, then a settle delay)
- transport readiness through the local port-forward (SSH banner, or an
  NFS server that accepts a connection and stays silent)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from pv_mounter.cluster.pods import (
    TERMINAL_PHASES,
    ephemeral_container_ref,
    pod_is_ready,
    pod_phase,
)
from pv_mounter.config import Settings, get_settings
from pv_mounter.errors import (
    ContainerTerminatedError,
    ReadinessTimeoutError,
    TunnelError,
)
from pv_mounter.models import ContainerState, TransportKind

if TYPE_CHECKING:
    from pv_mounter.cluster.client import ClusterClient
    from pv_mounter.tunnel import Tunnel

logger = structlog.get_logger()

LOCALHOST = "127.0.0.1"
SSH_BANNER_PREFIX = b"SSH"


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


async def probe_ssh(
    port: int,
    *,
    host: str = LOCALHOST,
    connect_timeout: float = 1.0,
    read_timeout: float = 2.0,
) -> bool:
    """True when sshd answers with its banner through the forward.

    kubectl accepts the local connection before the remote end is up, so
    a successful connect alone proves nothing.
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=connect_timeout
        )
    except (OSError, asyncio.TimeoutError):
        return False

    try:
        data = await asyncio.wait_for(reader.read(4), timeout=read_timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    finally:
        await _close(writer)

    return data.startswith(SSH_BANNER_PREFIX)


async def probe_nfs(
    port: int,
    *,
    host: str = LOCALHOST,
    connect_timeout: float = 1.0,
    read_timeout: float = 0.5,
) -> bool:
    """True when the NFS server accepts a connection and stays silent.

    NFS servers wait for the client to speak first. While the remote side
    is down, kubectl accepts and then drops the connection, so the read
    returns (EOF) or errors; only a read that times out means ready.
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=connect_timeout
        )
    except (OSError, asyncio.TimeoutError):
        return False

    try:
        await asyncio.wait_for(reader.read(1), timeout=read_timeout)
    except asyncio.TimeoutError:
        return True
    except OSError:
        return False
    finally:
        await _close(writer)

    return False


class ReadinessProber:
    """Waits for remote and local endpoints to become usable."""

    def __init__(
        self,
        cluster: "ClusterClient",
        settings: Settings | None = None,
    ) -> None:
        self._cluster = cluster
        self._timeouts = (settings or get_settings()).timeouts
        self._log = logger.bind(component="prober")

    async def wait_for_pod_ready(self, namespace: str, pod_name: str) -> None:
        """Poll until the pod is Ready.

        Raises:
            ReadinessTimeoutError: pod terminated, or not Ready in time
        """
        timeouts = self._timeouts
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeouts.pod_ready

        self._log.info("prober.pod.waiting", pod_name=pod_name, timeout=timeouts.pod_ready)

        attempt = 0
        while True:
            attempt += 1
            pod = await self._cluster.get_pod(namespace, pod_name)

            if pod_is_ready(pod):
                self._log.info("prober.pod.ready", pod_name=pod_name)
                return

            phase = pod_phase(pod)
            if phase in TERMINAL_PHASES:
                raise ReadinessTimeoutError(
                    f"pod {pod_name} terminated with phase {phase}",
                    details={"pod": pod_name, "pod_phase": phase},
                    phase="pod",
                )

            self._log.debug(
                "prober.pod.not_ready", pod_name=pod_name, phase=phase, attempt=attempt
            )

            if loop.time() + timeouts.poll_interval > deadline:
                raise ReadinessTimeoutError(
                    f"pod {pod_name} not ready within {timeouts.pod_ready:g}s",
                    details={"pod": pod_name},
                    phase="pod",
                )
            await asyncio.sleep(timeouts.poll_interval)

    async def wait_for_container_running(
        self, namespace: str, pod_name: str, container: str
    ) -> None:
        """Poll until an ephemeral container is running, then settle.

        Raises:
            ContainerTerminatedError: container terminated
            ReadinessTimeoutError: not running in time
        """
        timeouts = self._timeouts
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeouts.container_ready

        self._log.info(
            "prober.container.waiting",
            pod_name=pod_name,
            container=container,
            timeout=timeouts.container_ready,
        )

        while True:
            pod = await self._cluster.get_pod(namespace, pod_name)
            ref = ephemeral_container_ref(pod, container)
            state = ref.state if ref is not None else ContainerState.UNKNOWN

            if state is ContainerState.RUNNING:
                self._log.info("prober.container.running", pod_name=pod_name, container=container)
                # sshd / ganesha are not listening the moment the process starts
                await asyncio.sleep(timeouts.container_settle)
                return

            if state is ContainerState.TERMINATED:
                raise ContainerTerminatedError(
                    f"ephemeral container {container} terminated: {ref.reason}",
                    details={"pod": pod_name, "container": container, "reason": ref.reason},
                )

            self._log.debug(
                "prober.container.not_running",
                pod_name=pod_name,
                container=container,
                state=state.value,
                reason=ref.reason if ref is not None else None,
            )

            if loop.time() + timeouts.poll_interval > deadline:
                raise ReadinessTimeoutError(
                    f"ephemeral container {container} not running within "
                    f"{timeouts.container_ready:g}s",
                    details={"pod": pod_name, "container": container},
                    phase="container",
                )
            await asyncio.sleep(timeouts.poll_interval)

    async def _probe(self, transport: TransportKind, port: int) -> bool:
        timeouts = self._timeouts
        if transport is TransportKind.SSH:
            return await probe_ssh(
                port,
                connect_timeout=timeouts.connect,
                read_timeout=timeouts.ssh_banner_read,
            )
        return await probe_nfs(
            port,
            connect_timeout=timeouts.connect,
            read_timeout=timeouts.nfs_read,
        )

    async def wait_for_transport(
        self,
        transport: TransportKind,
        port: int,
        tunnel: "Tunnel | None" = None,
    ) -> None:
        """Poll the local forwarded port until the transport answers.

        Raises:
            TunnelError: port-forward exited, or no answer in time
        """
        timeouts = self._timeouts
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeouts.transport_ready

        self._log.info(
            "prober.transport.waiting",
            transport=transport.value,
            port=port,
            timeout=timeouts.transport_ready,
        )

        while True:
            if tunnel is not None and not tunnel.alive:
                raise TunnelError(
                    f"port-forward exited with code {tunnel.returncode} before "
                    f"{transport.value} became ready",
                    details={"port": port, "returncode": tunnel.returncode},
                )

            if await self._probe(transport, port):
                self._log.info("prober.transport.ready", transport=transport.value, port=port)
                return

            if loop.time() + timeouts.transport_poll_interval > deadline:
                raise TunnelError(
                    f"timeout waiting for {transport.value} to become ready on port {port}",
                    details={"port": port, "transport": transport.value},
                )
            await asyncio.sleep(timeouts.transport_poll_interval)
