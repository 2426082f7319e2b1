"""pv-mounter configuration management.

Configuration sources (in priority order):
1. Environment variables (PV_MOUNTER_ prefix)
2. Config file (pv-mounter.yaml)
3. Defaults
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

IMAGE_VERSION = "v0.2.1"


class KubeConfig(BaseModel):
    """Cluster access configuration."""

    # None = $KUBECONFIG or ~/.kube/config, then in-cluster config
    kubeconfig: str | None = None
    context: str | None = None


class ImageConfig(BaseModel):
    """Exposer container images.

    The SSH exposer comes in two flavours: the default one runs sshd as an
    unprivileged user, the privileged one runs as root (``--needs-root``).
    """

    ssh: str = f"bfenski/volume-exposer:{IMAGE_VERSION}"
    ssh_privileged: str = f"bfenski/volume-exposer-privileged:{IMAGE_VERSION}"
    nfs: str = "bfenski/nfs-ganesha:latest"
    pull_policy: str = "Always"


class SecurityConfig(BaseModel):
    """Identity used by exposer containers."""

    user_id: int = 2137
    group_id: int = 2137
    # Ephemeral NFS containers must satisfy runAsNonRoot on the host pod
    nfs_ephemeral_user_id: int = 65534


class ResourceConfig(BaseModel):
    """Exposer container resource requests and limits."""

    cpu_request: str = "10m"
    memory_request: str = "50Mi"
    memory_limit: str = "100Mi"
    ephemeral_storage_request: str = "1Mi"
    ephemeral_storage_limit: str = "2Mi"


class PortConfig(BaseModel):
    """Ports the exposer images listen on."""

    ssh: int = 2137
    proxy_ssh: int = 6666
    nfs: int = 2049


class TimeoutConfig(BaseModel):
    """Polling intervals and per-phase timeouts (seconds)."""

    poll_interval: float = 1.0
    pod_ready: float = 300.0
    container_ready: float = 60.0
    # sshd/ganesha need a moment after the container reports Running
    container_settle: float = 3.0

    transport_poll_interval: float = 0.5
    transport_ready: float = 30.0
    connect: float = 1.0
    ssh_banner_read: float = 2.0
    nfs_read: float = 0.5

    nfs_mount_attempts: int = 5
    nfs_mount_backoff: float = 3.0


class Settings(BaseSettings):
    """pv-mounter settings."""

    model_config = SettingsConfigDict(
        env_prefix="PV_MOUNTER_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    kube: KubeConfig = Field(default_factory=KubeConfig)
    images: ImageConfig = Field(default_factory=ImageConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    resources: ResourceConfig = Field(default_factory=ResourceConfig)
    ports: PortConfig = Field(default_factory=PortConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)

    # Path the volume is mounted at inside exposer containers
    volume_path: str = "/volume"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # File values arrive as init kwargs; environment must win over them.
        return (env_settings, init_settings, dotenv_settings, file_secret_settings)


def _load_config_file() -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. PV_MOUNTER_CONFIG_FILE environment variable
    2. ./pv-mounter.yaml
    3. ~/.config/pv-mounter/config.yaml
    """
    import os

    config_paths = [
        os.environ.get("PV_MOUNTER_CONFIG_FILE"),
        Path("pv-mounter.yaml"),
        Path.home() / ".config" / "pv-mounter" / "config.yaml",
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Configuration is loaded from:
    1. YAML config file (if exists)
    2. Environment variables (override)
    3. Defaults
    """
    file_config = _load_config_file()
    return Settings(**file_config)
