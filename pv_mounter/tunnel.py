"""kubectl port-forward management.

The forward runs in its own process session. While a mount run is in
progress the TunnelManager supervises it and kills it on any exit from its
block; after a successful mount the process is detached so the mount keeps
working once pv-mounter exits (``clean`` stops it by command line).
"""

from __future__ import annotations

import asyncio
import random
import subprocess
from dataclasses import dataclass

import structlog

from pv_mounter.errors import TunnelError
from pv_mounter.process import ProcessRunner

logger = structlog.get_logger()

MIN_LOCAL_PORT = 1024
MAX_LOCAL_PORT = 65535


def pick_local_port() -> int:
    """Pseudo-random local port in [1024, 65535]."""
    return random.randint(MIN_LOCAL_PORT, MAX_LOCAL_PORT)


def port_forward_command(namespace: str, pod_name: str, local_port: int, remote_port: int) -> list[str]:
    return [
        "kubectl",
        "port-forward",
        f"pod/{pod_name}",
        f"{local_port}:{remote_port}",
        "-n",
        namespace,
    ]


def port_forward_pattern(pod_name: str) -> str:
    """Command-line pattern matching every local forward to ``pod_name``."""
    return f"kubectl port-forward pod/{pod_name}"


@dataclass
class Tunnel:
    """A running port-forward subprocess."""

    namespace: str
    pod_name: str
    local_port: int
    remote_port: int
    process: subprocess.Popen

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.poll()

    @property
    def alive(self) -> bool:
        return self.process.poll() is None


class TunnelManager:
    """Owns at most one port-forward for the duration of a mount run.

    Usage:
        async with TunnelManager(runner) as tunnels:
            tunnel = await tunnels.open(ns, pod, local_port, 2137)
            ...
            tunnels.detach()
    """

    def __init__(self, runner: ProcessRunner) -> None:
        self._runner = runner
        self._tunnel: Tunnel | None = None
        self._log = logger.bind(component="tunnel")

    async def __aenter__(self) -> "TunnelManager":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def tunnel(self) -> Tunnel | None:
        return self._tunnel

    async def open(
        self, namespace: str, pod_name: str, local_port: int, remote_port: int
    ) -> Tunnel:
        """Start ``kubectl port-forward``. Does not wait for readiness.

        Raises:
            TunnelError: process could not be started
        """
        if self._tunnel is not None:
            raise TunnelError(
                "a port-forward is already open",
                details={"pod": self._tunnel.pod_name, "local_port": self._tunnel.local_port},
            )

        argv = port_forward_command(namespace, pod_name, local_port, remote_port)
        try:
            process = self._runner.spawn(argv)
        except OSError as e:
            raise TunnelError(
                f"failed to start port-forward: {e}",
                details={"pod": pod_name, "local_port": local_port},
            ) from e

        self._tunnel = Tunnel(
            namespace=namespace,
            pod_name=pod_name,
            local_port=local_port,
            remote_port=remote_port,
            process=process,
        )
        self._log.info(
            "tunnel.opened",
            pod_name=pod_name,
            local_port=local_port,
            remote_port=remote_port,
            pid=process.pid,
        )
        return self._tunnel

    async def close(self) -> None:
        """Kill the forward if one is still owned. Never raises."""
        tunnel, self._tunnel = self._tunnel, None
        if tunnel is None:
            return

        if tunnel.alive:
            try:
                tunnel.process.kill()
            except ProcessLookupError:
                pass
        self._log.info("tunnel.closed", pod_name=tunnel.pod_name, pid=tunnel.pid)
        try:
            # Shielded: the reaper thread finishes even if we are cancelled here
            await asyncio.shield(asyncio.to_thread(tunnel.process.wait))
        except OSError as e:
            self._log.warning("tunnel.close.wait_failed", pid=tunnel.pid, error=str(e))

    def detach(self) -> Tunnel | None:
        """Hand the forward off; it keeps running after this manager exits."""
        tunnel, self._tunnel = self._tunnel, None
        if tunnel is not None:
            self._log.info(
                "tunnel.detached",
                pod_name=tunnel.pod_name,
                local_port=tunnel.local_port,
                pid=tunnel.pid,
            )
        return tunnel
