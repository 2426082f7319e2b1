"""Shared fixtures."""

from __future__ import annotations

import pytest

from pv_mounter.config import Settings, TimeoutConfig, get_settings
from tests.fakes import FakeClusterClient, FakeProcessRunner


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    """Settings with polling shrunk to keep tests fast."""
    return Settings(
        timeouts=TimeoutConfig(
            poll_interval=0.01,
            pod_ready=0.2,
            container_ready=0.2,
            container_settle=0,
            transport_poll_interval=0.01,
            transport_ready=0.2,
            connect=0.2,
            ssh_banner_read=0.2,
            nfs_read=0.05,
            nfs_mount_attempts=3,
            nfs_mount_backoff=0,
        )
    )


@pytest.fixture
def cluster() -> FakeClusterClient:
    return FakeClusterClient()


@pytest.fixture
def runner() -> FakeProcessRunner:
    return FakeProcessRunner()
