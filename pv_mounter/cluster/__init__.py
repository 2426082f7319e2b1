"""Cluster layer - Kubernetes API access and pod inspection."""

from pv_mounter.cluster.classifier import classify_volume, find_holder
from pv_mounter.cluster.client import ClusterClient
from pv_mounter.cluster.injector import EphemeralInjector

__all__ = [
    "ClusterClient",
    "EphemeralInjector",
    "classify_volume",
    "find_holder",
]
