"""Preflight validation of operator input and local prerequisites."""

from __future__ import annotations

import re
import shutil
import sys
from pathlib import Path
from typing import Callable

from pv_mounter.errors import ValidationError
from pv_mounter.models import TransportKind

# RFC 1123 label: lowercase alphanumerics and '-', 1-63 chars
_DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")
# RFC 1123 subdomain: dot separated labels, up to 253 chars
_DNS_SUBDOMAIN_RE = re.compile(
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"
)

# Kubernetes quantities, e.g. 100m, 0.5, 2, 1Gi
_QUANTITY_RE = re.compile(r"^([0-9]+(\.[0-9]+)?|\.[0-9]+)(m|k|M|G|T|Ki|Mi|Gi|Ti)?$")


def validate_kubernetes_name(value: str, field: str, *, subdomain: bool = False) -> str:
    """Validate a namespace / resource name.

    Namespaces must be DNS labels; PVC names may be DNS subdomains.

    Raises:
        ValidationError: If the name is empty or not RFC 1123 compliant
    """
    if not value:
        raise ValidationError(f"{field} must not be empty", details={"field": field})

    if subdomain:
        valid = len(value) <= 253 and bool(_DNS_SUBDOMAIN_RE.match(value))
    else:
        valid = bool(_DNS_LABEL_RE.match(value))

    if not valid:
        raise ValidationError(
            f"invalid {field} {value!r}: must be a lowercase RFC 1123 name",
            details={"field": field, "value": value},
        )
    return value


def validate_mount_point(path: str) -> Path:
    """The local mount point must exist and be a directory."""
    mount_point = Path(path).expanduser()
    if not mount_point.exists():
        raise ValidationError(
            f"local mount point {path} does not exist",
            details={"mount_point": path},
        )
    if not mount_point.is_dir():
        raise ValidationError(
            f"local mount point {path} is not a directory",
            details={"mount_point": path},
        )
    return mount_point


def validate_cpu_limit(value: str | None) -> str | None:
    if value is None or value == "":
        return None
    if not _QUANTITY_RE.match(value):
        raise ValidationError(
            f"invalid CPU limit {value!r}", details={"cpu_limit": value}
        )
    return value


def _install_hint(binary: str, platform: str) -> str:
    if binary == "sshfs":
        if platform == "darwin":
            return "For macOS, please install sshfs by visiting: https://osxfuse.github.io/"
        if platform.startswith("linux"):
            return "For Linux, please install sshfs by visiting: https://github.com/libfuse/sshfs"
        return "Please install sshfs and try again."
    if binary == "mount.nfs4":
        return "For Linux, please install nfs-common: sudo apt-get install nfs-common"
    if binary == "kubectl":
        return "Please install kubectl: https://kubernetes.io/docs/tasks/tools/"
    return f"Please install {binary} and try again."


def required_binaries(transport: TransportKind, platform: str | None = None) -> list[str]:
    """Local commands a mount over ``transport`` depends on."""
    platform = platform or sys.platform
    if transport is TransportKind.SSH:
        return ["kubectl", "sshfs"]
    if platform == "darwin":
        # macOS ships mount -t nfs
        return ["kubectl", "mount"]
    return ["kubectl", "mount.nfs4"]


def check_client_tools(
    transport: TransportKind,
    platform: str | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> None:
    """Fail early when a local client binary is missing from PATH."""
    platform = platform or sys.platform
    for binary in required_binaries(transport, platform):
        if which(binary) is None:
            raise ValidationError(
                f"{binary} is not available in your environment. "
                f"{_install_hint(binary, platform)}",
                details={"binary": binary},
            )
