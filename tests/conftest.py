"""Test configuration and fixtures for kvm-cluster."""

import ipaddress
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from kvm_cluster.exceptions import ResourceNotFoundError  # noqa: E402
from kvm_cluster.models import (  # noqa: E402
    DomainRecord,
    Image,
    ImageKind,
    LocationKind,
    Network,
    NetworkRecord,
    Snapshot,
    StoragePoolRecord,
    VolumeRecord,
)


class FakeBackend:
    """In-memory stand-in for LibvirtWrapper with the same async surface."""

    def __init__(self) -> None:
        self.pools: Dict[str, StoragePoolRecord] = {}
        self.volumes: Dict[str, Dict[str, VolumeRecord]] = {}
        self.networks: Dict[str, NetworkRecord] = {}
        self.domains: Dict[str, DomainRecord] = {}
        self.addresses: Dict[str, List[str]] = {}
        self.metadata: Dict[str, str] = {}
        self.snapshots: Dict[str, List[Snapshot]] = {}
        self.calls: List[tuple] = []

    async def list_storage_pools(self):
        return list(self.pools.values())

    async def ensure_storage_pool(self, name, path):
        self.calls.append(("ensure_storage_pool", name))
        self.pools.setdefault(name, StoragePoolRecord(name=name, path=path))
        self.volumes.setdefault(name, {})
        return self.pools[name]

    async def remove_storage_pool(self, name):
        self.calls.append(("remove_storage_pool", name))
        if name not in self.pools:
            raise ResourceNotFoundError("Storage pool", name)
        self.volumes.pop(name, None)
        return self.pools.pop(name).path

    async def list_volumes(self, pool_name):
        if pool_name not in self.pools:
            raise ResourceNotFoundError("Storage pool", pool_name)
        return list(self.volumes[pool_name].values())

    async def upload_volume(self, pool_name, volume_name, source, fmt="qcow2"):
        self.calls.append(("upload_volume", pool_name, volume_name))
        path = f"{self.pools[pool_name].path}/{volume_name}"
        record = VolumeRecord(name=volume_name, path=path, pool=pool_name)
        self.volumes[pool_name][volume_name] = record
        return record

    async def delete_volume(self, pool_name, volume_name):
        self.calls.append(("delete_volume", pool_name, volume_name))
        if pool_name not in self.pools:
            raise ResourceNotFoundError("Storage pool", pool_name)
        if volume_name not in self.volumes[pool_name]:
            raise ResourceNotFoundError("Storage volume", volume_name)
        del self.volumes[pool_name][volume_name]

    async def list_networks(self):
        return list(self.networks.values())

    async def define_network(self, name, xml):
        self.calls.append(("define_network", name))
        self.networks[name] = NetworkRecord(name=name, xml=xml, active=True)

    async def delete_network(self, name):
        self.calls.append(("delete_network", name))
        if name not in self.networks:
            raise ResourceNotFoundError("Network", name)
        del self.networks[name]

    async def list_domains(self):
        return list(self.domains.values())

    async def define_domain(self, name, xml):
        self.calls.append(("define_domain", name))
        self.domains[name] = DomainRecord(name=name, xml=xml, active=False)

    async def start_domain(self, name):
        self.calls.append(("start_domain", name))
        record = self.domains[name]
        self.domains[name] = DomainRecord(name=name, xml=record.xml, active=True)

    async def interface_addresses(self, name):
        return list(self.addresses.get(name, []))

    async def set_domain_metadata(self, name, xml, key, uri):
        self.calls.append(("set_domain_metadata", name))
        self.metadata[name] = xml

    async def destroy_domain(self, name):
        self.calls.append(("destroy_domain", name))
        if name not in self.domains:
            raise ResourceNotFoundError("Domain", name)
        del self.domains[name]
        self.snapshots.pop(name, None)

    async def create_snapshot(self, name, snapshot_name):
        for snap in self.snapshots.setdefault(name, []):
            snap.is_current = False
        self.snapshots[name].append(Snapshot(instance=name, name=snapshot_name, is_current=True))

    async def list_snapshots(self, name):
        return list(self.snapshots.get(name, []))

    async def revert_snapshot(self, name, snapshot_name=None):
        current = [s for s in self.snapshots.get(name, []) if s.is_current]
        return snapshot_name or current[0].name


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def base_image():
    return Image(
        name="ubuntu2004",
        kind=ImageKind.DISTRIBUTION,
        owner="ubuntu",
        location="https://example.invalid/ubuntu.img",
        location_kind=LocationKind.URL,
        pool="kvmcluster:distribution:ubuntu",
        path="/var/lib/libvirt/images/distribution/ubuntu/ubuntu2004",
    )


@pytest.fixture
def network():
    return Network(
        name="kvmcluster",
        subnet=ipaddress.IPv4Network("192.168.66.0/24"),
        gateway=ipaddress.IPv4Address("192.168.66.1"),
        dns_server=ipaddress.IPv4Address("192.168.66.1"),
    )


def domain_xml(
    name: str,
    cluster: str,
    role: str,
    suffix: str = "local",
    address: Optional[str] = None,
    ordinal: Optional[int] = None,
) -> str:
    """Domain XML as libvirt reports it for an instance created by this tool."""
    ordinal_elem = ""
    if ordinal is not None:
        ordinal_elem = f"<kvmcluster:ordinal>{ordinal}</kvmcluster:ordinal>"
    address_elem = ""
    if address:
        address_elem = (
            '<kvmcluster-address:address xmlns:kvmcluster-address='
            f'"https://kvm-cluster.dev/xmlns/address" version="1">{address}</kvmcluster-address:address>'
        )
    return (
        f"<domain type='kvm'><name>{name}</name><metadata>"
        '<kvmcluster:instance xmlns:kvmcluster="https://kvm-cluster.dev/xmlns/instance" version="1">'
        f"<kvmcluster:cluster>{cluster}</kvmcluster:cluster>"
        f"<kvmcluster:role>{role}</kvmcluster:role>"
        f"<kvmcluster:suffix>{suffix}</kvmcluster:suffix>{ordinal_elem}"
        f"</kvmcluster:instance>{address_elem}</metadata></domain>"
    )


@pytest.fixture
def make_domain_xml():
    return domain_xml
