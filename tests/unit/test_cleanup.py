"""Unit tests for CleanupOrchestrator."""

from __future__ import annotations

import pytest

from pv_mounter.cleanup import CleanupOrchestrator, exposer_selector, find_exposer_container
from pv_mounter.errors import CleanupError, NoMatchingPodError, UnmountError, ValidationError
from pv_mounter.models import TransportKind
from pv_mounter.process import CommandResult
from tests.fakes import make_pod

SSH_LABELS = {"app": "volume-exposer", "pvcName": "data", "portNumber": "31000"}
NFS_LABELS = {**SSH_LABELS, "backend": "nfs"}


@pytest.fixture
def cleaner(cluster, runner, settings):
    return CleanupOrchestrator(cluster, runner, settings, platform="linux")


def test_exposer_selector():
    assert exposer_selector("data", TransportKind.SSH) == "app=volume-exposer,pvcName=data,!backend"
    assert exposer_selector("data", TransportKind.NFS) == "app=volume-exposer,pvcName=data,backend=nfs"


class TestFindExposerContainer:
    def test_newest_with_prefix(self):
        pod = make_pod(
            "web",
            ephemeral=[
                ("volume-exposer-ephemeral-aaaaa", "terminated"),
                ("nfs-ganesha-ephemeral-bbbbb", "running"),
                ("volume-exposer-ephemeral-ccccc", "running"),
            ],
        )
        assert find_exposer_container(pod, TransportKind.SSH) == "volume-exposer-ephemeral-ccccc"
        assert find_exposer_container(pod, TransportKind.NFS) == "nfs-ganesha-ephemeral-bbbbb"

    def test_preferred(self):
        pod = make_pod(
            "web",
            ephemeral=[
                ("volume-exposer-ephemeral-aaaaa", "running"),
                ("volume-exposer-ephemeral-ccccc", "running"),
            ],
        )
        assert (
            find_exposer_container(pod, TransportKind.SSH, "volume-exposer-ephemeral-aaaaa")
            == "volume-exposer-ephemeral-aaaaa"
        )
        assert (
            find_exposer_container(pod, TransportKind.SSH, "volume-exposer-ephemeral-zzzzz")
            == "volume-exposer-ephemeral-ccccc"
        )

    def test_none(self):
        assert find_exposer_container(make_pod("web"), TransportKind.SSH) is None


class TestStandaloneExposer:
    @pytest.mark.asyncio
    async def test_ssh(self, cluster, runner, cleaner):
        cluster.add_pod(make_pod("volume-exposer-abcde", labels=SSH_LABELS))

        report = await cleaner.clean("default", "data", "/mnt/data")

        assert runner.runs == [
            ["fusermount", "-u", "/mnt/data"],
            ["pkill", "-f", "kubectl port-forward pod/volume-exposer-abcde"],
        ]
        assert cluster.deleted == ["volume-exposer-abcde"]
        assert report.deleted_pods == ["volume-exposer-abcde"]
        assert report.exposer_pod == "volume-exposer-abcde"
        assert report.workload_pod is None

    @pytest.mark.asyncio
    async def test_nfs_ignores_ssh_exposer(self, cluster, runner, cleaner):
        cluster.add_pod(make_pod("volume-exposer-abcde", labels=SSH_LABELS))
        cluster.add_pod(make_pod("volume-exposer-nfs-fghij", labels=NFS_LABELS))

        await cleaner.clean("default", "data", "/mnt/data", TransportKind.NFS)

        assert runner.runs[0] == ["umount", "/mnt/data"]
        assert cluster.deleted == ["volume-exposer-nfs-fghij"]

    @pytest.mark.asyncio
    async def test_no_forward_running(self, cluster, runner, cleaner):
        cluster.add_pod(make_pod("volume-exposer-abcde", labels=SSH_LABELS))
        runner.set_result("pkill", 1)

        report = await cleaner.clean("default", "data", "/mnt/data")

        assert report.deleted_pods == ["volume-exposer-abcde"]

    @pytest.mark.asyncio
    async def test_pkill_error(self, cluster, runner, cleaner):
        cluster.add_pod(make_pod("volume-exposer-abcde", labels=SSH_LABELS))
        runner.set_result("pkill", CommandResult(argv=("pkill",), returncode=2, stderr="bad pattern"))

        with pytest.raises(CleanupError, match="bad pattern"):
            await cleaner.clean("default", "data", "/mnt/data")

        assert cluster.deleted == []


class TestProxyExposer:
    @pytest.mark.asyncio
    async def test_kills_tunnel_in_workload_pod(self, cluster, runner, cleaner):
        cluster.add_pod(
            make_pod(
                "volume-exposer-proxy-abcde",
                labels={**SSH_LABELS, "originalPodName": "web"},
            )
        )
        cluster.add_pod(
            make_pod(
                "web",
                claim_name="data",
                ephemeral=[
                    ("volume-exposer-ephemeral-abcde", "running"),
                    ("volume-exposer-ephemeral-zzzzz", "running"),
                ],
            )
        )

        report = await cleaner.clean("default", "data", "/mnt/data")

        assert runner.runs[1] == ["pkill", "-f", "kubectl port-forward pod/volume-exposer-proxy-abcde"]
        assert runner.commands("kubectl") == [
            [
                "kubectl", "exec", "web", "-n", "default",
                "-c", "volume-exposer-ephemeral-abcde",
                "--", "pkill", "-f", "ssh",
            ]
        ]
        assert report.workload_pod == "web"
        assert report.remote_container == "volume-exposer-ephemeral-abcde"
        # the workload pod survives
        assert cluster.deleted == ["volume-exposer-proxy-abcde"]

    @pytest.mark.asyncio
    async def test_workload_pod_gone(self, cluster, runner, cleaner):
        cluster.add_pod(
            make_pod(
                "volume-exposer-proxy-abcde",
                labels={**SSH_LABELS, "originalPodName": "web"},
            )
        )

        report = await cleaner.clean("default", "data", "/mnt/data")

        assert runner.commands("kubectl") == []
        assert report.remote_container is None
        assert cluster.deleted == ["volume-exposer-proxy-abcde"]


class TestHolderPod:
    @pytest.mark.asyncio
    async def test_nfs_ephemeral(self, cluster, runner, cleaner):
        cluster.add_pod(
            make_pod(
                "web",
                claim_name="data",
                ephemeral=[("nfs-ganesha-ephemeral-abcde", "running")],
            )
        )

        report = await cleaner.clean("default", "data", "/mnt/data", TransportKind.NFS)

        assert runner.runs == [
            ["umount", "/mnt/data"],
            ["pkill", "-f", "kubectl port-forward pod/web"],
            [
                "kubectl", "exec", "web", "-n", "default",
                "-c", "nfs-ganesha-ephemeral-abcde",
                "--", "pkill", "ganesha.nfsd",
            ],
        ]
        assert report.workload_pod == "web"
        assert cluster.deleted == []

    @pytest.mark.asyncio
    async def test_remote_process_already_gone(self, cluster, runner, cleaner):
        cluster.add_pod(
            make_pod("web", claim_name="data", ephemeral=[("nfs-ganesha-ephemeral-abcde", "running")])
        )
        runner.set_result("kubectl", 1)

        report = await cleaner.clean("default", "data", "/mnt/data", TransportKind.NFS)

        assert report.remote_container == "nfs-ganesha-ephemeral-abcde"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("transport", [TransportKind.SSH, TransportKind.NFS])
    async def test_no_container(self, cluster, runner, cleaner, transport):
        cluster.add_pod(make_pod("web", claim_name="data"))

        with pytest.raises(NoMatchingPodError, match="no .* exposer container found in pod web"):
            await cleaner.clean("default", "data", "/mnt/data", transport)

        assert runner.commands("kubectl") == []
        assert cluster.deleted == []


class TestFailures:
    @pytest.mark.asyncio
    async def test_nothing_found(self, cluster, runner, cleaner):
        with pytest.raises(NoMatchingPodError):
            await cleaner.clean("default", "data", "/mnt/data")

        # unmount still happened
        assert runner.runs == [["fusermount", "-u", "/mnt/data"]]

    @pytest.mark.asyncio
    async def test_unmount_failure_stops(self, cluster, runner, cleaner):
        cluster.add_pod(make_pod("volume-exposer-abcde", labels=SSH_LABELS))
        runner.set_result("fusermount", 1)

        with pytest.raises(UnmountError):
            await cleaner.clean("default", "data", "/mnt/data")

        assert cluster.list_calls == []
        assert cluster.deleted == []

    @pytest.mark.asyncio
    async def test_invalid_namespace(self, runner, cleaner):
        with pytest.raises(ValidationError):
            await cleaner.clean("Bad_NS", "data", "/mnt/data")

        assert runner.runs == []
