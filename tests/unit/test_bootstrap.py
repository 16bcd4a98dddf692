"""Unit tests for the kubeadm bootstrap."""

import asyncio
import os
from unittest.mock import AsyncMock, Mock

import pytest
import yaml

from kvm_cluster.bootstrap import (
    FETCH_KUBECONFIG,
    IMAGE_PULL,
    OS_PREPARATION,
    TOKEN_CREATE,
    RemoteBootstrapper,
    clean_output,
    cluster_network_cidrs,
    kubeadm_init,
    merge_kubeconfig,
)
from kvm_cluster.exceptions import BootstrapError, ConfigurationError, RemoteCommandError
from kvm_cluster.models import Cluster, Instance, Role

JOIN = "kubeadm join c-instance-0.demo.local:6443 --token abc.def --discovery-token-ca-cert-hash sha256:00"

ADMIN_CONF = {
    "apiVersion": "v1",
    "kind": "Config",
    "clusters": [{"name": "kubernetes", "cluster": {"server": "https://c-instance-0.demo.local:6443"}}],
    "users": [{"name": "kubernetes-admin", "user": {"client-certificate-data": "Y2VydA=="}}],
    "contexts": [
        {"name": "kubernetes-admin@kubernetes", "context": {"cluster": "kubernetes", "user": "kubernetes-admin"}}
    ],
    "current-context": "kubernetes-admin@kubernetes",
}


class FakeTransport:
    """Records command batches per host and answers the capture commands."""

    def __init__(self, failing=None, empty_token=()):
        self.batches = []
        self.failing = failing or {}
        self.empty_token = set(empty_token)

    async def run(self, host, commands):
        self.batches.append((host, list(commands)))
        for marker, hosts in self.failing.items():
            if host in hosts and any(marker in c for c in commands):
                raise RemoteCommandError("failed", host, 1)
        if commands == TOKEN_CREATE:
            if host in self.empty_token:
                return b"\r\n"
            return (JOIN + "\r\n").encode()
        if commands == FETCH_KUBECONFIG:
            return yaml.safe_dump(ADMIN_CONF).replace("\n", "\r\n").encode()
        return b""

    def hosts_running(self, marker):
        return [host for host, commands in self.batches if any(marker in c for c in commands)]


def _instance(name, role, address):
    return Instance(name=name, role=role, cluster_name="demo", suffix="local", ip_addresses=[address])


@pytest.fixture
def cluster():
    return Cluster(
        name="demo",
        suffix="local",
        instances=[
            _instance("c-instance-0.demo.local", Role.CONTROLLER, "192.168.66.10"),
            _instance("w-instance-0.demo.local", Role.WORKER, "192.168.66.11"),
            _instance("w-instance-1.demo.local", Role.WORKER, "192.168.66.12"),
        ],
    )


@pytest.fixture
def registry():
    registry = Mock()
    registry.cluster_ordinal = AsyncMock(return_value=2)
    return registry


def _bootstrapper(transport, registry, tmp_path):
    return RemoteBootstrapper(
        transport,
        registry,
        credentials_dir=str(tmp_path / "clusters"),
        kubeconfig_path=str(tmp_path / "kube" / "config"),
    )


class TestHelpers:
    """Test command and address helpers."""

    def test_cluster_network_cidrs(self):
        assert cluster_network_cidrs(0) == ("10.100.0.0/16", "10.200.0.0/16")
        assert cluster_network_cidrs(55) == ("10.155.0.0/16", "10.255.0.0/16")

    def test_cluster_network_cidrs_out_of_range(self):
        with pytest.raises(ConfigurationError, match="at most 56"):
            cluster_network_cidrs(56)
        with pytest.raises(ConfigurationError):
            cluster_network_cidrs(-1)

    def test_kubeadm_init(self):
        (command,) = kubeadm_init("10.100.0.0/16", "10.200.0.0/16", "c-instance-0.demo.local")
        assert command == (
            "kubeadm init --pod-network-cidr=10.100.0.0/16 --service-cidr=10.200.0.0/16 "
            "--control-plane-endpoint=c-instance-0.demo.local --cri-socket /var/run/crio/crio.sock"
        )

    def test_clean_output(self):
        assert clean_output(b"kubeadm join x\r\n") == "kubeadm join x"
        assert clean_output(b"a\r\nb\r\n\r\n") == "a\r\nb"


class TestMergeKubeconfig:
    """Test kubeconfig merging."""

    def test_merge_into_empty(self):
        merged = merge_kubeconfig(None, ADMIN_CONF, "demo", "local")

        assert merged["clusters"] == [
            {"name": "demo.local", "cluster": {"server": "https://c-instance-0.demo.local:6443"}}
        ]
        assert merged["users"][0]["name"] == "admin@demo"
        assert merged["contexts"] == [
            {"name": "demo", "context": {"cluster": "demo.local", "user": "admin@demo"}}
        ]
        assert merged["current-context"] == "demo"
        assert merged["kind"] == "Config"

    def test_existing_entries_kept_and_current_context_preserved(self):
        existing = {
            "apiVersion": "v1",
            "kind": "Config",
            "clusters": [{"name": "prod", "cluster": {"server": "https://prod:6443"}}],
            "users": [{"name": "admin@prod", "user": {}}],
            "contexts": [{"name": "prod", "context": {"cluster": "prod", "user": "admin@prod"}}],
            "current-context": "prod",
        }

        merged = merge_kubeconfig(existing, ADMIN_CONF, "demo", "local")

        assert [c["name"] for c in merged["clusters"]] == ["prod", "demo.local"]
        assert [c["name"] for c in merged["contexts"]] == ["prod", "demo"]
        assert merged["current-context"] == "prod"

    def test_same_names_replaced(self):
        first = merge_kubeconfig(None, ADMIN_CONF, "demo", "local")
        rebuilt = dict(ADMIN_CONF, clusters=[{"name": "kubernetes", "cluster": {"server": "https://new:6443"}}])

        merged = merge_kubeconfig(first, rebuilt, "demo", "local")

        assert merged["clusters"] == [{"name": "demo.local", "cluster": {"server": "https://new:6443"}}]
        assert len(merged["users"]) == 1

    def test_admin_without_clusters(self):
        with pytest.raises(ConfigurationError, match="no clusters entry"):
            merge_kubeconfig(None, {"users": ADMIN_CONF["users"]}, "demo", "local")


class TestRemoteBootstrapper:
    """Test the three bootstrap phases."""

    @pytest.mark.asyncio
    async def test_phases_run_in_order(self, cluster, registry, tmp_path):
        transport = FakeTransport()

        state = await _bootstrapper(transport, registry, tmp_path).bootstrap(cluster)

        hosts = [host for host, _ in transport.batches]
        # Phase A on all three nodes, then init, token, kubeconfig, then two joins
        assert sorted(hosts[:3]) == ["192.168.66.10", "192.168.66.11", "192.168.66.12"]
        assert hosts[3:6] == ["192.168.66.10"] * 3
        assert sorted(hosts[6:]) == ["192.168.66.11", "192.168.66.12"]
        assert transport.batches[3][1][0].startswith("kubeadm init --pod-network-cidr=10.102.0.0/16")
        assert transport.batches[4][1] == TOKEN_CREATE
        assert transport.batches[5][1] == FETCH_KUBECONFIG
        assert state.controller == "c-instance-0.demo.local"
        assert state.joined == {"w-instance-0.demo.local": True, "w-instance-1.demo.local": True}

    @pytest.mark.asyncio
    async def test_prepare_batches(self, cluster, registry, tmp_path):
        transport = FakeTransport()

        await _bootstrapper(transport, registry, tmp_path).bootstrap(cluster)

        prepare = {host: commands for host, commands in transport.batches[:3]}
        controller = prepare["192.168.66.10"]
        worker = prepare["192.168.66.11"]
        assert controller[:3] == [
            "echo '192.168.66.10 c-instance-0.demo.local' >> /etc/hosts",
            "echo '192.168.66.11 w-instance-0.demo.local' >> /etc/hosts",
            "echo '192.168.66.12 w-instance-1.demo.local' >> /etc/hosts",
        ]
        assert controller[3:] == OS_PREPARATION + IMAGE_PULL
        assert worker[3:] == OS_PREPARATION

    @pytest.mark.asyncio
    async def test_join_command_is_trimmed(self, cluster, registry, tmp_path):
        transport = FakeTransport()

        state = await _bootstrapper(transport, registry, tmp_path).bootstrap(cluster)

        assert state.join_command == JOIN
        assert transport.batches[-1][1] == [JOIN]

    @pytest.mark.asyncio
    async def test_kubeconfig_written_and_merged(self, cluster, registry, tmp_path):
        state = await _bootstrapper(FakeTransport(), registry, tmp_path).bootstrap(cluster)

        admin_path = tmp_path / "clusters" / "demo" / "admin.conf"
        assert state.kubeconfig_path == str(admin_path)
        assert "\r" not in admin_path.read_text()
        assert yaml.safe_load(admin_path.read_text())["clusters"][0]["name"] == "kubernetes"
        assert os.stat(admin_path).st_mode & 0o777 == 0o600

        kubeconfig = tmp_path / "kube" / "config"
        merged = yaml.safe_load(kubeconfig.read_text())
        assert merged["current-context"] == "demo"
        assert os.stat(kubeconfig).st_mode & 0o777 == 0o600

    @pytest.mark.asyncio
    async def test_failed_worker_is_left_behind(self, cluster, registry, tmp_path):
        transport = FakeTransport(failing={"swapoff": ["192.168.66.12"]})

        state = await _bootstrapper(transport, registry, tmp_path).bootstrap(cluster)

        assert "w-instance-1.demo.local" not in state.prepared
        assert state.joined == {"w-instance-0.demo.local": True}
        assert transport.hosts_running("kubeadm join") == ["192.168.66.11"]

    @pytest.mark.asyncio
    async def test_failed_join_does_not_abort(self, cluster, registry, tmp_path):
        transport = FakeTransport(failing={"kubeadm join": ["192.168.66.11"]})

        state = await _bootstrapper(transport, registry, tmp_path).bootstrap(cluster)

        assert state.joined == {"w-instance-1.demo.local": True}
        assert state.kubeconfig_path is not None

    @pytest.mark.asyncio
    async def test_next_controller_tried_after_init_failure(self, registry, tmp_path):
        cluster = Cluster(
            name="demo",
            suffix="local",
            instances=[
                _instance("c-instance-0.demo.local", Role.CONTROLLER, "192.168.66.10"),
                _instance("c-instance-1.demo.local", Role.CONTROLLER, "192.168.66.13"),
                _instance("w-instance-0.demo.local", Role.WORKER, "192.168.66.11"),
            ],
        )
        transport = FakeTransport(failing={"kubeadm init": ["192.168.66.10"]})

        state = await _bootstrapper(transport, registry, tmp_path).bootstrap(cluster)

        assert state.controller == "c-instance-1.demo.local"
        assert transport.hosts_running("kubeadm init") == ["192.168.66.10", "192.168.66.13"]

    @pytest.mark.asyncio
    async def test_no_join_command_aborts(self, cluster, registry, tmp_path):
        transport = FakeTransport(failing={"kubeadm init": ["192.168.66.10"]})

        with pytest.raises(BootstrapError) as exc_info:
            await _bootstrapper(transport, registry, tmp_path).bootstrap(cluster)

        assert exc_info.value.phase == "init"
        assert transport.hosts_running("kubeadm join") == []
        assert not (tmp_path / "kube" / "config").exists()

    @pytest.mark.asyncio
    async def test_missing_kubeconfig_blocks_joins(self, cluster, registry, tmp_path):
        transport = FakeTransport(failing={"admin.conf": ["192.168.66.10"]})

        with pytest.raises(BootstrapError) as exc_info:
            await _bootstrapper(transport, registry, tmp_path).bootstrap(cluster)

        assert exc_info.value.phase == "init"
        assert transport.hosts_running("kubeadm join") == []
        assert not (tmp_path / "clusters" / "demo" / "admin.conf").exists()

    @pytest.mark.asyncio
    async def test_captures_come_from_one_controller(self, registry, tmp_path):
        cluster = Cluster(
            name="demo",
            suffix="local",
            instances=[
                _instance("c-instance-0.demo.local", Role.CONTROLLER, "192.168.66.10"),
                _instance("c-instance-1.demo.local", Role.CONTROLLER, "192.168.66.13"),
                _instance("w-instance-0.demo.local", Role.WORKER, "192.168.66.11"),
            ],
        )
        transport = FakeTransport(failing={"admin.conf": ["192.168.66.10"]})

        state = await _bootstrapper(transport, registry, tmp_path).bootstrap(cluster)

        assert state.controller == "c-instance-1.demo.local"
        assert transport.hosts_running("kubeadm token create") == ["192.168.66.10", "192.168.66.13"]
        assert transport.hosts_running("admin.conf") == ["192.168.66.10", "192.168.66.13"]
        assert state.joined == {"w-instance-0.demo.local": True}

    @pytest.mark.asyncio
    async def test_empty_token_tries_next_controller(self, registry, tmp_path):
        cluster = Cluster(
            name="demo",
            suffix="local",
            instances=[
                _instance("c-instance-0.demo.local", Role.CONTROLLER, "192.168.66.10"),
                _instance("c-instance-1.demo.local", Role.CONTROLLER, "192.168.66.13"),
                _instance("w-instance-0.demo.local", Role.WORKER, "192.168.66.11"),
            ],
        )
        transport = FakeTransport(empty_token=["192.168.66.10"])

        state = await _bootstrapper(transport, registry, tmp_path).bootstrap(cluster)

        assert state.controller == "c-instance-1.demo.local"
        assert state.join_command == JOIN
        # The empty capture stops that controller before its kubeconfig fetch
        assert transport.hosts_running("admin.conf") == ["192.168.66.13"]

    @pytest.mark.asyncio
    async def test_empty_token_everywhere_aborts(self, cluster, registry, tmp_path):
        transport = FakeTransport(empty_token=["192.168.66.10"])

        with pytest.raises(BootstrapError):
            await _bootstrapper(transport, registry, tmp_path).bootstrap(cluster)

        assert transport.hosts_running("kubeadm join") == []

    @pytest.mark.asyncio
    async def test_admin_conf_stored_before_joins(self, cluster, registry, tmp_path):
        admin_path = tmp_path / "clusters" / "demo" / "admin.conf"
        stored_at_join = []

        class RecordingTransport(FakeTransport):
            async def run(self, host, commands):
                if commands == [JOIN]:
                    stored_at_join.append(admin_path.exists())
                return await super().run(host, commands)

        await _bootstrapper(RecordingTransport(), registry, tmp_path).bootstrap(cluster)

        assert stored_at_join == [True, True]

    @pytest.mark.asyncio
    async def test_cancel_during_init_stops_dispatch(self, cluster, registry, tmp_path):
        started = asyncio.Event()

        class BlockingTransport(FakeTransport):
            async def run(self, host, commands):
                if any("kubeadm init" in c for c in commands):
                    self.batches.append((host, list(commands)))
                    started.set()
                    await asyncio.Event().wait()
                return await super().run(host, commands)

        transport = BlockingTransport()
        task = asyncio.ensure_future(_bootstrapper(transport, registry, tmp_path).bootstrap(cluster))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert transport.hosts_running("kubeadm token create") == []
        assert transport.hosts_running("kubeadm join") == []
        assert not (tmp_path / "kube" / "config").exists()

    @pytest.mark.asyncio
    async def test_cancel_during_prepare_stops_dispatch(self, cluster, registry, tmp_path):
        started = asyncio.Event()

        class BlockingTransport(FakeTransport):
            async def run(self, host, commands):
                self.batches.append((host, list(commands)))
                if host == "192.168.66.12":
                    started.set()
                    await asyncio.Event().wait()
                return b""

        transport = BlockingTransport()
        task = asyncio.ensure_future(_bootstrapper(transport, registry, tmp_path).bootstrap(cluster))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(transport.batches) == 3
        assert transport.hosts_running("kubeadm init") == []

    @pytest.mark.asyncio
    async def test_instances_without_address_are_skipped(self, cluster, registry, tmp_path):
        cluster.instances.append(
            Instance(name="w-instance-2.demo.local", role=Role.WORKER, cluster_name="demo", suffix="local")
        )
        transport = FakeTransport()

        state = await _bootstrapper(transport, registry, tmp_path).bootstrap(cluster)

        assert "w-instance-2.demo.local" not in state.prepared
        assert len(transport.batches) == 8

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self, cluster, registry, tmp_path):
        transport = Mock()
        transport.run = AsyncMock(side_effect=RuntimeError("bug"))

        with pytest.raises(RuntimeError):
            await _bootstrapper(transport, registry, tmp_path).bootstrap(cluster)
