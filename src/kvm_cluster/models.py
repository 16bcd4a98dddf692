"""
Data models for KVM cluster operations.

This module defines the data structures used throughout the cluster provisioning system.
"""

import ipaddress
from dataclasses import dataclass, field
from typing import Optional, List, Dict
from enum import Enum


class Role(Enum):
    """Instance roles inside a cluster."""

    CONTROLLER = "controller"
    WORKER = "worker"

    @property
    def prefix(self) -> str:
        return "c" if self is Role.CONTROLLER else "w"


class InstanceState(Enum):
    """Per-instance provisioning states, in lifecycle order."""

    PENDING = "pending"
    DISK_DERIVED = "disk_derived"
    SEED_READY = "seed_ready"
    DOMAIN_DEFINED = "domain_defined"
    BOOTED = "booted"
    IP_ASSIGNED = "ip_assigned"
    SSH_READY = "ssh_ready"
    FAILED = "failed"


class ImageKind(Enum):
    """Image classification."""

    DISTRIBUTION = "distribution"
    INSTANCE = "instance"


class LocationKind(Enum):
    """Where a distribution image is materialized from."""

    URL = "url"
    FILE = "file"


class NetworkType(Enum):
    """Link-layer type of a virtual network."""

    BRIDGE = "bridge"
    OVS = "ovs"


@dataclass
class Resources:
    """Per-instance resource template."""

    cpu: int = 4
    memory: int = 12 * 1024 ** 3  # bytes
    disk: str = "10G"  # qemu-img size string


@dataclass
class Image:
    """A distribution base image or an instance-scoped artifact."""

    name: str
    kind: ImageKind
    owner: str  # distribution name or instance name
    location: Optional[str] = None
    location_kind: LocationKind = LocationKind.URL
    pool: Optional[str] = None
    path: Optional[str] = None
    backing: Optional["Image"] = None

    @property
    def distribution(self) -> Optional[str]:
        return self.owner if self.kind is ImageKind.DISTRIBUTION else None

    @property
    def instance(self) -> Optional[str]:
        return self.owner if self.kind is ImageKind.INSTANCE else None


@dataclass
class Network:
    """Virtual network definition."""

    name: str
    subnet: ipaddress.IPv4Network
    gateway: ipaddress.IPv4Address
    dns_server: ipaddress.IPv4Address
    dhcp: bool = True
    type: NetworkType = NetworkType.BRIDGE
    active: bool = True

    @property
    def bridge(self) -> str:
        return self.name


@dataclass
class Instance:
    """A virtual machine that belongs to a cluster."""

    name: str
    role: Role
    cluster_name: str
    suffix: str
    resources: Resources = field(default_factory=Resources)
    public_key: str = ""
    ip_addresses: List[str] = field(default_factory=list)
    state: InstanceState = InstanceState.PENDING
    error: Optional[str] = None
    ordinal: Optional[int] = None

    @property
    def address(self) -> Optional[str]:
        return self.ip_addresses[0] if self.ip_addresses else None


@dataclass
class ClusterSpec:
    """Everything needed to create a cluster."""

    name: str
    image: Image
    network: Network
    controllers: int = 1
    workers: int = 0
    suffix: str = "local"
    resources: Resources = field(default_factory=Resources)
    public_key: str = ""


@dataclass
class Cluster:
    """Transient view of a cluster reconstructed from its instances."""

    name: str
    suffix: str = ""
    instances: List[Instance] = field(default_factory=list)

    @property
    def controllers(self) -> List[Instance]:
        return [i for i in self.instances if i.role is Role.CONTROLLER]

    @property
    def workers(self) -> List[Instance]:
        return [i for i in self.instances if i.role is Role.WORKER]

    @property
    def fqdn(self) -> str:
        return f"{self.name}.{self.suffix}" if self.suffix else self.name

    @property
    def ordinal(self) -> Optional[int]:
        """CIDR slot recorded on the instances at creation time."""
        for instance in self.instances:
            if instance.ordinal is not None:
                return instance.ordinal
        return None


@dataclass
class Snapshot:
    """Domain snapshot information."""

    instance: str
    name: str
    is_current: bool = False


@dataclass
class HostPlatform:
    """Hypervisor host OS identity from /etc/os-release."""

    distribution: str
    version: str


@dataclass
class BootstrapState:
    """Live state of one remote bootstrap run."""

    prepared: Dict[str, bool] = field(default_factory=dict)
    join_command: Optional[str] = None
    kubeconfig: Optional[str] = None
    kubeconfig_path: Optional[str] = None
    controller: Optional[str] = None
    joined: Dict[str, bool] = field(default_factory=dict)


@dataclass
class StoragePoolRecord:
    """Storage pool as reported by libvirt."""

    name: str
    path: str
    active: bool = True


@dataclass
class VolumeRecord:
    """Storage volume as reported by libvirt."""

    name: str
    path: str
    pool: str


@dataclass
class NetworkRecord:
    """Network definition as reported by libvirt."""

    name: str
    xml: str
    active: bool


@dataclass
class DomainRecord:
    """Domain definition as reported by libvirt."""

    name: str
    xml: str
    active: bool


def instance_name(role: Role, index: int, cluster: str, suffix: str) -> str:
    """Build the generated instance name, e.g. ``c-instance-0.demo.local``."""
    return f"{role.prefix}-instance-{index}.{cluster}.{suffix}"
