"""pv-mounter error types.

Every fatal condition of a mount or clean run is raised as a subclass of
PVMounterError. Error codes are stable strings for programmatic handling;
the CLI prints ``message`` and exits non-zero.
"""

from __future__ import annotations

from typing import Any


class PVMounterError(Exception):
    """Base error for all pv-mounter exceptions."""

    code: str = "internal_error"
    message: str = "An internal error occurred"

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(PVMounterError):
    """Invalid input or missing local prerequisite."""

    code = "validation_error"
    message = "Validation error"


class NotFoundError(PVMounterError):
    """PVC (or its PV, or a pod) does not exist."""

    code = "not_found"
    message = "Resource not found"


class NotBoundError(PVMounterError):
    """PVC exists but is not in the Bound phase."""

    code = "not_bound"
    message = "PersistentVolumeClaim is not bound"


class ClusterError(PVMounterError):
    """Unexpected Kubernetes API failure."""

    code = "cluster_error"
    message = "Kubernetes API request failed"


class PodCreateError(PVMounterError):
    """The cluster rejected creation of an exposer pod."""

    code = "pod_create_failed"
    message = "Failed to create pod"


class PatchError(PVMounterError):
    """Ephemeral container could not be injected into the host pod."""

    code = "patch_failed"
    message = "Failed to patch pod with ephemeral container"


class ReadinessTimeoutError(PVMounterError):
    """A polling phase did not reach its ready condition in time."""

    code = "readiness_timeout"
    message = "Timed out waiting for readiness"

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        *,
        phase: str = "unknown",
    ) -> None:
        super().__init__(message, details)
        self.phase = phase
        self.details.setdefault("phase", phase)


class ContainerTerminatedError(PVMounterError):
    """The injected ephemeral container terminated instead of running."""

    code = "container_terminated"
    message = "Ephemeral container terminated"


class TunnelError(PVMounterError):
    """Port-forward failed to start or the transport never became ready."""

    code = "tunnel_error"
    message = "Port-forward tunnel failed"


class MountFailed(PVMounterError):
    """Local mount command failed (after retries, where allowed)."""

    code = "mount_failed"
    message = "Failed to mount volume"

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        *,
        last_error: str | None = None,
    ) -> None:
        super().__init__(message, details)
        self.last_error = last_error
        if last_error is not None:
            self.details.setdefault("last_error", last_error)


class UnmountError(PVMounterError):
    """Local unmount command failed."""

    code = "unmount_failed"
    message = "Failed to unmount volume"


class CleanupError(PVMounterError):
    """A cleanup step (process kill, pod deletion) failed."""

    code = "cleanup_failed"
    message = "Cleanup failed"


class NoMatchingPodError(PVMounterError):
    """Cleanup found no remote resource for the PVC."""

    code = "no_matching_pod"
    message = "No pod found for the PVC"
