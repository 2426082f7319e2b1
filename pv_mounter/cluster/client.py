"""Kubernetes API access using kubernetes-asyncio.

ClusterClient is the only place that talks to the API server. It returns
``kubernetes_asyncio.client`` model objects and maps API failures onto the
pv-mounter error types:

- 404 on a read -> NotFoundError
- rejected pod creation -> PodCreateError
- rejected ephemeral container patch -> PatchError
- anything else, including an unreadable kubeconfig or an unreachable API
  server -> ClusterError
"""

from __future__ import annotations

from typing import Any

import aiohttp
import structlog
from kubernetes_asyncio import client, config
from kubernetes_asyncio.client import ApiClient, ApiException

from pv_mounter.config import KubeConfig
from pv_mounter.errors import (
    ClusterError,
    NotFoundError,
    PatchError,
    PodCreateError,
)

logger = structlog.get_logger()


def _api_error(e: ApiException, action: str) -> ClusterError:
    return ClusterError(
        f"failed to {action}: {e.status} {e.reason}",
        details={"status": e.status, "reason": e.reason},
    )


def _connection_error(e: aiohttp.ClientError, action: str) -> ClusterError:
    return ClusterError(
        f"failed to {action}: cannot reach the Kubernetes API server: {e}",
        details={"error": str(e)},
    )


class ClusterClient:
    """Namespace-scoped wrapper over CoreV1Api.

    Usage:
        async with ClusterClient(settings.kube) as cluster:
            pvc = await cluster.get_pvc("default", "data")
    """

    def __init__(self, kube: KubeConfig | None = None) -> None:
        kube = kube or KubeConfig()
        self._kubeconfig = kube.kubeconfig
        self._context = kube.context

        self._log = logger.bind(component="cluster")
        self._api_client: ApiClient | None = None
        self._config_loaded = False

    async def __aenter__(self) -> "ClusterClient":
        await self._get_api_client()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _ensure_config(self) -> None:
        """Load Kubernetes configuration once.

        An explicit kubeconfig wins; otherwise $KUBECONFIG / ~/.kube/config,
        falling back to the in-cluster service account.
        """
        if self._config_loaded:
            return

        if self._kubeconfig:
            try:
                await config.load_kube_config(
                    config_file=self._kubeconfig, context=self._context
                )
            except config.ConfigException as e:
                raise ClusterError(
                    f"invalid kubeconfig {self._kubeconfig}: {e}",
                    details={"kubeconfig": self._kubeconfig, "context": self._context},
                ) from e
            self._log.debug("k8s.config.loaded", source="kubeconfig", path=self._kubeconfig)
        else:
            try:
                await config.load_kube_config(context=self._context)
                self._log.debug("k8s.config.loaded", source="kubeconfig")
            except config.ConfigException as kube_error:
                try:
                    config.load_incluster_config()
                except config.ConfigException as e:
                    raise ClusterError(
                        "no Kubernetes configuration found: "
                        f"{kube_error}; not running in a cluster: {e}",
                        details={"context": self._context},
                    ) from e
                self._log.debug("k8s.config.loaded", source="incluster")

        self._config_loaded = True

    async def _get_api_client(self) -> ApiClient:
        await self._ensure_config()
        if self._api_client is None:
            self._api_client = ApiClient()
        return self._api_client

    async def _core(self) -> client.CoreV1Api:
        return client.CoreV1Api(await self._get_api_client())

    async def close(self) -> None:
        """Close the API client."""
        if self._api_client is not None:
            await self._api_client.close()
            self._api_client = None

    # -- reads --

    async def get_pvc(self, namespace: str, name: str) -> client.V1PersistentVolumeClaim:
        v1 = await self._core()
        try:
            return await v1.read_namespaced_persistent_volume_claim(
                name=name, namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(
                    f"PVC {name} not found in namespace {namespace}",
                    details={"namespace": namespace, "pvc": name},
                )
            raise _api_error(e, f"get PVC {name}")
        except aiohttp.ClientError as e:
            raise _connection_error(e, f"get PVC {name}") from e

    async def get_pv(self, name: str) -> client.V1PersistentVolume:
        v1 = await self._core()
        try:
            return await v1.read_persistent_volume(name=name)
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(
                    f"PersistentVolume {name} not found", details={"pv": name}
                )
            raise _api_error(e, f"get PV {name}")
        except aiohttp.ClientError as e:
            raise _connection_error(e, f"get PV {name}") from e

    async def list_pods(
        self, namespace: str, label_selector: str | None = None
    ) -> list[client.V1Pod]:
        v1 = await self._core()
        kwargs: dict[str, Any] = {"namespace": namespace}
        if label_selector:
            kwargs["label_selector"] = label_selector
        try:
            pod_list = await v1.list_namespaced_pod(**kwargs)
        except ApiException as e:
            raise _api_error(e, f"list pods in namespace {namespace}")
        except aiohttp.ClientError as e:
            raise _connection_error(e, f"list pods in namespace {namespace}") from e
        return list(pod_list.items or [])

    async def get_pod(self, namespace: str, name: str) -> client.V1Pod:
        v1 = await self._core()
        try:
            return await v1.read_namespaced_pod(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(
                    f"pod {name} not found in namespace {namespace}",
                    details={"namespace": namespace, "pod": name},
                )
            raise _api_error(e, f"get pod {name}")
        except aiohttp.ClientError as e:
            raise _connection_error(e, f"get pod {name}") from e

    # -- mutations --

    async def create_pod(self, namespace: str, pod: client.V1Pod) -> client.V1Pod:
        v1 = await self._core()
        pod_name = pod.metadata.name

        self._log.info(
            "k8s.create_pod",
            namespace=namespace,
            pod_name=pod_name,
            image=pod.spec.containers[0].image,
        )

        try:
            return await v1.create_namespaced_pod(namespace=namespace, body=pod)
        except ApiException as e:
            raise PodCreateError(
                f"failed to create pod {pod_name}: {e.status} {e.reason}",
                details={"pod": pod_name, "status": e.status, "reason": e.reason},
            )
        except aiohttp.ClientError as e:
            raise _connection_error(e, f"create pod {pod_name}") from e

    async def patch_ephemeral_containers(
        self,
        namespace: str,
        pod_name: str,
        containers: list[client.V1EphemeralContainer],
    ) -> client.V1Pod:
        """Append ephemeral containers through the pod's subresource.

        A dict body is sent as a strategic merge patch, which merges the
        list by container name instead of replacing it.
        """
        api_client = await self._get_api_client()
        v1 = client.CoreV1Api(api_client)
        body = {
            "spec": {
                "ephemeralContainers": [
                    api_client.sanitize_for_serialization(c) for c in containers
                ]
            }
        }

        self._log.info(
            "k8s.patch_ephemeral_containers",
            namespace=namespace,
            pod_name=pod_name,
            containers=[c.name for c in containers],
        )

        try:
            return await v1.patch_namespaced_pod_ephemeralcontainers(
                name=pod_name, namespace=namespace, body=body
            )
        except ApiException as e:
            raise PatchError(
                f"failed to patch pod {pod_name} with ephemeral container: "
                f"{e.status} {e.reason}",
                details={"pod": pod_name, "status": e.status, "reason": e.reason},
            )
        except aiohttp.ClientError as e:
            raise _connection_error(e, f"patch pod {pod_name}") from e

    async def delete_pod(self, namespace: str, name: str) -> bool:
        """Delete a pod. Returns False if it was already gone."""
        v1 = await self._core()

        self._log.info("k8s.delete_pod", namespace=namespace, pod_name=name)

        try:
            await v1.delete_namespaced_pod(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                self._log.warning("k8s.delete_pod.not_found", pod_name=name)
                return False
            raise _api_error(e, f"delete pod {name}")
        except aiohttp.ClientError as e:
            raise _connection_error(e, f"delete pod {name}") from e
        return True
