"""Data model shared by the orchestration layers.

Cluster objects are never exposed past the cluster package: the classifier
and the prober translate them into the values below.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

READ_WRITE_ONCE = "ReadWriteOnce"
READ_WRITE_ONCE_POD = "ReadWriteOncePod"
READ_WRITE_MANY = "ReadWriteMany"
READ_ONLY_MANY = "ReadOnlyMany"

# Access modes that pin the volume to a single node/pod
EXCLUSIVE_ACCESS_MODES = frozenset({READ_WRITE_ONCE, READ_WRITE_ONCE_POD})

BOUND = "Bound"


class TransportKind(str, Enum):
    """How the volume is exposed to the local host."""

    SSH = "ssh"
    NFS = "nfs"


class PrivilegeProfile(str, Enum):
    """Security posture of exposer containers."""

    ROOT = "root"
    NON_ROOT = "non_root"

    @classmethod
    def from_flag(cls, needs_root: bool) -> "PrivilegeProfile":
        return cls.ROOT if needs_root else cls.NON_ROOT


class Strategy(str, Enum):
    """Remote setup strategy selected for a mount run."""

    STANDALONE = "standalone"
    PROXY_TUNNEL = "proxy_tunnel"
    DIRECT_EPHEMERAL = "direct_ephemeral"


class Role(str, Enum):
    """ROLE passed to the SSH exposer image."""

    STANDALONE = "standalone"
    PROXY = "proxy"
    EPHEMERAL = "ephemeral"


class MountState(str, Enum):
    """Mount orchestration states."""

    INIT = "init"
    CLASSIFIED = "classified"
    STRATEGY_SELECTED = "strategy_selected"
    REMOTE_READY = "remote_ready"
    TUNNEL_ESTABLISHED = "tunnel_established"
    MOUNTED = "mounted"
    ABORTED = "aborted"


class ContainerState(str, Enum):
    """Observed state of an ephemeral container."""

    WAITING = "waiting"
    RUNNING = "running"
    TERMINATED = "terminated"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class VolumeHandle:
    """A bound PVC and the access modes of its PV."""

    namespace: str
    pvc_name: str
    volume_name: str
    access_modes: frozenset[str]
    phase: str = BOUND

    @property
    def exclusive(self) -> bool:
        """True when the PV only allows a single writer (RWO/RWOP)."""
        return bool(self.access_modes & EXCLUSIVE_ACCESS_MODES)


@dataclass(frozen=True)
class Occupancy:
    """Whether a workload pod currently holds the volume.

    ``candidates`` lists every pod referencing the claim, in listing order;
    ``held_by`` is the first of them.
    """

    held_by: str | None = None
    candidates: tuple[str, ...] = ()

    @property
    def is_free(self) -> bool:
        return self.held_by is None

    @classmethod
    def free(cls) -> "Occupancy":
        return cls()


@dataclass(frozen=True)
class KeyPair:
    """Ephemeral key pair, PEM encoded."""

    private_pem: str
    public_pem: str

    def __repr__(self) -> str:
        return "KeyPair(private_pem=<redacted>, public_pem=...)"


@dataclass(frozen=True)
class EphemeralContainerRef:
    """An ephemeral container observed in a pod the cluster owns."""

    name: str
    host_pod: str
    state: ContainerState = ContainerState.UNKNOWN
    reason: str | None = None


@dataclass
class MountRequest:
    """Operator input for a mount run."""

    namespace: str
    pvc_name: str
    mount_point: str
    transport: TransportKind = TransportKind.SSH
    privilege: PrivilegeProfile = PrivilegeProfile.NON_ROOT
    image: str | None = None
    image_secret: str | None = None
    cpu_limit: str | None = None


@dataclass
class MountSession:
    """State of one mount run, created at strategy selection."""

    strategy: Strategy
    transport: TransportKind
    remote_pod: str | None = None
    ephemeral_container: str | None = None
    local_port: int = 0
    key_pair: KeyPair | None = None
    key_file: Path | None = None
    proxy_pod: str | None = None
    reused_container: bool = False
    state: MountState = MountState.STRATEGY_SELECTED
    history: list[MountState] = field(default_factory=list)

    @property
    def forward_target(self) -> str | None:
        """Pod the local port-forward connects to."""
        return self.proxy_pod or self.remote_pod
