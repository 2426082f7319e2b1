"""Local mount and unmount commands."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import structlog

from pv_mounter.config import Settings, get_settings
from pv_mounter.errors import MountFailed, UnmountError
from pv_mounter.models import PrivilegeProfile, TransportKind
from pv_mounter.process import ProcessRunner

logger = structlog.get_logger()

NFS_HOST = "127.0.0.1"


def ssh_user(privilege: PrivilegeProfile) -> str:
    """Login user inside the SSH exposer image."""
    return "root" if privilege is PrivilegeProfile.ROOT else "ve"


def sshfs_command(
    key_file: Path | str,
    user: str,
    mount_point: str,
    port: int,
    remote_path: str = "/volume",
) -> list[str]:
    return [
        "sshfs",
        "-o", f"IdentityFile={key_file}",
        "-o", "StrictHostKeyChecking=no",
        "-o", "UserKnownHostsFile=/dev/null",
        "-o", "nomap=ignore",
        f"{user}@localhost:{remote_path}",
        mount_point,
        "-p", str(port),
    ]


def nfs_mount_command(
    mount_point: str,
    port: int,
    platform: str | None = None,
    remote_path: str = "/volume",
) -> list[str]:
    platform = platform or sys.platform
    source = f"{NFS_HOST}:{remote_path}"
    if platform == "darwin":
        return ["mount", "-t", "nfs", "-o", f"nfsvers=4,port={port},tcp", source, mount_point]
    return [
        "mount",
        "-t", "nfs4",
        "-o", f"port={port},vers=4.2,soft,timeo=50,retrans=2,retry=0",
        source,
        mount_point,
    ]


def unmount_command(
    transport: TransportKind, mount_point: str, platform: str | None = None
) -> list[str]:
    platform = platform or sys.platform
    if transport is TransportKind.SSH and platform != "darwin":
        return ["fusermount", "-u", mount_point]
    return ["umount", mount_point]


class MountExecutor:
    """Runs sshfs / mount / umount against the local forwarded port."""

    def __init__(
        self,
        runner: ProcessRunner,
        settings: Settings | None = None,
        *,
        platform: str | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._runner = runner
        self._remote_path = settings.volume_path
        self._attempts = settings.timeouts.nfs_mount_attempts
        self._backoff = settings.timeouts.nfs_mount_backoff
        self._platform = platform or sys.platform
        self._log = logger.bind(component="executor")

    async def mount_ssh(
        self,
        key_file: Path | str,
        privilege: PrivilegeProfile,
        mount_point: str,
        port: int,
    ) -> None:
        """Mount over sshfs. Single attempt."""
        argv = sshfs_command(
            key_file, ssh_user(privilege), mount_point, port, self._remote_path
        )
        result = await self._runner.run(argv)
        if not result.ok:
            raise MountFailed(
                f"failed to mount volume using sshfs: {result.output or result.returncode}",
                details={"mount_point": mount_point, "returncode": result.returncode},
                last_error=result.output,
            )
        self._log.info("executor.mounted", transport="ssh", mount_point=mount_point)

    async def mount_nfs(self, mount_point: str, port: int) -> None:
        """Mount over NFS, retrying while ganesha finishes starting."""
        argv = nfs_mount_command(mount_point, port, self._platform, self._remote_path)
        last_error = ""

        for attempt in range(1, self._attempts + 1):
            if attempt > 1:
                await asyncio.sleep(self._backoff)

            result = await self._runner.run(argv)
            if result.ok:
                self._log.info(
                    "executor.mounted",
                    transport="nfs",
                    mount_point=mount_point,
                    attempt=attempt,
                )
                return

            last_error = result.output or f"exit code {result.returncode}"
            self._log.warning(
                "executor.mount.retry",
                attempt=attempt,
                max_attempts=self._attempts,
                error=last_error,
            )

        raise MountFailed(
            f"failed to mount volume using NFS after {self._attempts} attempts: {last_error}",
            details={"mount_point": mount_point, "attempts": self._attempts},
            last_error=last_error,
        )

    async def unmount(self, transport: TransportKind, mount_point: str) -> None:
        argv = unmount_command(transport, mount_point, self._platform)
        result = await self._runner.run(argv)
        if not result.ok:
            raise UnmountError(
                f"failed to unmount {mount_point}: {result.output or result.returncode}",
                details={"mount_point": mount_point, "returncode": result.returncode},
            )
        self._log.info("executor.unmounted", mount_point=mount_point)
