"""pv-mounter command line.

Usage:
    pv-mounter mount [--needs-root] [--debug] [--image IMG] [--image-secret NAME]
                     [--cpu-limit Q] [--backend ssh|nfs] <namespace> <pvc> <local-path>
    pv-mounter clean [--backend ssh|nfs] <namespace> <pvc> <local-path>

Environment overrides (take precedence over flags):
    NEEDS_ROOT, DEBUG    booleans (true/false, 1/0, t/f)
    IMAGE, IMAGE_SECRET, CPU_LIMIT
    BACKEND              ssh or nfs

Examples:
    # Mount PVC 'data' from namespace 'default' at /mnt/data
    pv-mounter mount default data /mnt/data

    # Undo it
    pv-mounter clean default data /mnt/data
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from typing import Any, Awaitable, Callable, Sequence

import structlog

from pv_mounter import __version__, log
from pv_mounter.cleanup import CleanupOrchestrator
from pv_mounter.cluster.client import ClusterClient
from pv_mounter.config import get_settings
from pv_mounter.credentials import TempFileRegistry
from pv_mounter.errors import PVMounterError
from pv_mounter.models import MountRequest, PrivilegeProfile, TransportKind
from pv_mounter.orchestrator import MountOrchestrator
from pv_mounter.process import ProcessRunner

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

_TRUE = {"1", "t", "true", "y", "yes"}
_FALSE = {"0", "f", "false", "n", "no"}


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(value)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pv-mounter",
        description="Mount Kubernetes PersistentVolumeClaims on the local host",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("namespace", help="Namespace of the PVC")
        sub.add_argument("pvc_name", metavar="pvc-name", help="Name of the PVC")
        sub.add_argument("mount_point", metavar="local-mount-point", help="Local directory")
        sub.add_argument(
            "--backend",
            choices=[t.value for t in TransportKind],
            default=TransportKind.SSH.value,
            help="Transport used to expose the volume (default: ssh)",
        )
        sub.add_argument("--kubeconfig", help="Path to the kubeconfig file")
        sub.add_argument("--context", help="Kubeconfig context to use")
        sub.add_argument(
            "--debug",
            "-d",
            action="store_true",
            help="Enable debug logging and show port-forward output",
        )

    mount = subparsers.add_parser("mount", help="Mount a PVC to a local directory")
    add_common(mount)
    mount.add_argument(
        "--needs-root",
        action="store_true",
        help="Mount the filesystem using the root account",
    )
    mount.add_argument("--image", help="Custom container image for the volume exposer")
    mount.add_argument(
        "--image-secret", help="Kubernetes secret name for accessing a private registry"
    )
    mount.add_argument("--cpu-limit", help="CPU limit for the exposer container (e.g. 100m)")

    clean = subparsers.add_parser("clean", help="Unmount a PVC and remove its exposer resources")
    add_common(clean)

    return parser


def apply_env_overrides(
    args: argparse.Namespace,
    parser: argparse.ArgumentParser,
    environ: dict[str, str] | None = None,
) -> argparse.Namespace:
    """Let environment variables override flags."""
    environ = os.environ if environ is None else environ

    bool_vars = [("DEBUG", "debug")]
    if args.command == "mount":
        bool_vars.append(("NEEDS_ROOT", "needs_root"))
    for env_name, attr in bool_vars:
        if env_name in environ:
            try:
                setattr(args, attr, parse_bool(environ[env_name]))
            except ValueError:
                parser.error(f"invalid value for {env_name}: {environ[env_name]}")

    if args.command == "mount":
        for env_name, attr in (
            ("IMAGE", "image"),
            ("IMAGE_SECRET", "image_secret"),
            ("CPU_LIMIT", "cpu_limit"),
        ):
            if env_name in environ:
                setattr(args, attr, environ[env_name] or None)

    if "BACKEND" in environ:
        backend = environ["BACKEND"].strip().lower()
        if backend not in {t.value for t in TransportKind}:
            parser.error(f"invalid value for BACKEND: {environ['BACKEND']}")
        args.backend = backend

    return args


def _kube_config(args: argparse.Namespace):
    kube = get_settings().kube.model_copy()
    if args.kubeconfig:
        kube.kubeconfig = args.kubeconfig
    if args.context:
        kube.context = args.context
    return kube


async def run_mount(args: argparse.Namespace, registry: TempFileRegistry) -> None:
    settings = get_settings()
    request = MountRequest(
        namespace=args.namespace,
        pvc_name=args.pvc_name,
        mount_point=args.mount_point,
        transport=TransportKind(args.backend),
        privilege=PrivilegeProfile.from_flag(args.needs_root),
        image=args.image,
        image_secret=args.image_secret,
        cpu_limit=args.cpu_limit,
    )
    runner = ProcessRunner(debug=args.debug)

    async with ClusterClient(_kube_config(args)) as cluster:
        orchestrator = MountOrchestrator(cluster, runner, registry, settings)
        session = await orchestrator.mount(request)

    print(
        f"PVC {request.pvc_name} mounted successfully to {request.mount_point} "
        f"(local port {session.local_port})"
    )


async def run_clean(args: argparse.Namespace) -> None:
    runner = ProcessRunner(debug=args.debug)

    async with ClusterClient(_kube_config(args)) as cluster:
        orchestrator = CleanupOrchestrator(cluster, runner, get_settings())
        report = await orchestrator.clean(
            args.namespace,
            args.pvc_name,
            args.mount_point,
            TransportKind(args.backend),
        )

    print(f"Unmounted {report.mount_point} successfully")
    for pod in report.deleted_pods:
        print(f"Pod {pod} deleted successfully")


def run_cancellable(factory: Callable[[], Awaitable[Any]]) -> Any:
    """Run a coroutine; SIGINT/SIGTERM cancel it so cleanup runs first."""

    async def _main() -> Any:
        loop = asyncio.get_running_loop()
        task = asyncio.current_task()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, task.cancel)
            except NotImplementedError:
                # Windows event loops; Ctrl-C still raises KeyboardInterrupt
                continue
            installed.append(sig)
        try:
            return await factory()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    return asyncio.run(_main())


def main(argv: Sequence[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    args = apply_env_overrides(args, parser)

    log.configure(args.debug)

    # Registry outlives the event loop so key files go even if the loop dies
    with TempFileRegistry() as registry:
        try:
            if args.command == "mount":
                run_cancellable(lambda: run_mount(args, registry))
            else:
                run_cancellable(lambda: run_clean(args))
            return EXIT_OK

        except PVMounterError as e:
            logger.debug("cli.failed", **e.to_dict())
            print(f"Error: {e.message}", file=sys.stderr)
            return EXIT_ERROR

        except (KeyboardInterrupt, asyncio.CancelledError):
            print("Interrupted", file=sys.stderr)
            return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
