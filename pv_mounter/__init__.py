"""pv-mounter - mount Kubernetes PersistentVolumeClaims on the local host."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version


def _get_version() -> str:
    """Get version from the installed distribution metadata."""
    try:
        return version("pv-mounter")
    except PackageNotFoundError:
        return "unknown"


__version__ = _get_version()
