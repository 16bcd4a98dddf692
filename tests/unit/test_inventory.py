"""Unit tests for kubespray inventory generation."""

import os

import pytest
import yaml

from kvm_cluster.exceptions import ValidationError
from kvm_cluster.inventory import build_inventory, render_inventory, write_inventory
from kvm_cluster.models import Cluster, Instance, Role


@pytest.fixture
def cluster():
    def instance(name, role, address):
        return Instance(name=name, role=role, cluster_name="demo", suffix="local", ip_addresses=[address])

    return Cluster(
        name="demo",
        suffix="local",
        instances=[
            instance("c-instance-0.demo.local", Role.CONTROLLER, "192.168.66.10"),
            instance("w-instance-0.demo.local", Role.WORKER, "192.168.66.11"),
        ],
    )


class TestBuildInventory:

    def test_groups(self, cluster):
        inventory = build_inventory(cluster)

        assert inventory["all"]["hosts"] == {
            "c-instance-0.demo.local": {"ansible_host": "192.168.66.10"},
            "w-instance-0.demo.local": {"ansible_host": "192.168.66.11"},
        }
        assert list(inventory["kube-master"]["hosts"]) == ["c-instance-0.demo.local"]
        assert list(inventory["etcd"]["hosts"]) == ["c-instance-0.demo.local"]
        assert list(inventory["kube-node"]["hosts"]) == ["w-instance-0.demo.local"]
        assert inventory["k8s-cluster"]["children"] == {"kube-master": None, "kube-node": None}

    def test_vars(self, cluster):
        variables = build_inventory(cluster)["all"]["vars"]
        assert variables["cluster_name"] == "demo.local"
        assert variables["container_manager"] == "crio"
        assert variables["artifacts_dir"] == "/tmp/demo"

    def test_missing_address(self, cluster):
        cluster.instances[1].ip_addresses = []
        with pytest.raises(ValidationError, match="has no address"):
            build_inventory(cluster)


class TestRenderInventory:

    def test_group_members_are_bare_keys(self, cluster):
        text = render_inventory(cluster)
        assert "    c-instance-0.demo.local:\n" in text
        assert "null" not in text
        assert yaml.safe_load(text)["kube-node"]["hosts"] == {"w-instance-0.demo.local": None}

    def test_write_inventory_private(self, cluster, tmp_path):
        path = tmp_path / "inventory" / "hosts.yaml"

        written = write_inventory(cluster, str(path))

        assert written == str(path)
        assert os.stat(path).st_mode & 0o777 == 0o600
        assert yaml.safe_load(path.read_text())["all"]["vars"]["cluster_name"] == "demo.local"

    def test_write_inventory_tightens_existing_file(self, cluster, tmp_path):
        path = tmp_path / "hosts.yaml"
        path.write_text("old")
        os.chmod(path, 0o644)

        write_inventory(cluster, str(path))

        assert os.stat(path).st_mode & 0o777 == 0o600
        assert "old" not in path.read_text()
