"""
Main client class for KVM cluster operations.

This module wires the storage, network, lifecycle and bootstrap components
together from an :class:`~kvm_cluster.config.AppConfig` and exposes the
operations the CLI offers.
"""

from typing import List, Optional

from .bootstrap import RemoteBootstrapper
from .config import AppConfig
from .exceptions import ResourceNotFoundError, ValidationError
from .images import ImageStore
from .inventory import write_inventory
from .kubespray import clone_repository, run_playbook
from .libvirt_wrapper import LibvirtWrapper
from .lifecycle import InstanceLifecycle
from .models import (
    BootstrapState,
    Cluster,
    ClusterSpec,
    Image,
    ImageKind,
    LocationKind,
    Network,
    Resources,
    Snapshot,
)
from .networks import NetworkManager, validate_network
from .orchestrator import ClusterOrchestrator
from .registry import ClusterRegistry
from .security import SecurityValidator
from .seed import SeedBuilder
from .transport import KnownHostsStore, SSHReadinessChecker, SSHTransport


class KVMClusterClient:
    """
    Main client for KVM cluster operations.

    Args:
        config (Optional[AppConfig]): Application configuration

    Attributes:
        config (AppConfig): Current configuration
        orchestrator (ClusterOrchestrator): Cluster create/delete/query
        images (ImageStore): Base and instance images
        networks (NetworkManager): Managed virtual networks
    """

    def __init__(self, config: Optional[AppConfig] = None) -> None:
        self.config = config or AppConfig()
        cfg = self.config

        self.backend = LibvirtWrapper(cfg.libvirt_uri)
        self.images = ImageStore(self.backend, cfg.image_dir, cfg.namespace)
        self.networks = NetworkManager(self.backend)
        self.registry = ClusterRegistry(self.backend)
        self.known_hosts = KnownHostsStore(cfg.known_hosts_file)
        self.readiness = SSHReadinessChecker(
            self.known_hosts,
            key_path=cfg.ssh_key_path,
            username=cfg.ssh_username,
            port=cfg.ssh_port,
            max_attempts=cfg.ssh_ready_attempts,
            interval=cfg.ssh_ready_interval,
        )
        self.lifecycle = InstanceLifecycle(
            self.backend,
            self.images,
            SeedBuilder(cfg.unprivileged_user),
            self.readiness,
            ip_wait_timeout=cfg.ip_wait_timeout,
            ip_poll_interval=cfg.ip_poll_interval,
        )
        self.orchestrator = ClusterOrchestrator(
            self.backend, self.registry, self.images, self.networks, self.lifecycle
        )
        self.transport = SSHTransport(
            key_path=cfg.ssh_key_path,
            username=cfg.ssh_username,
            port=cfg.ssh_port,
            known_hosts_file=cfg.known_hosts_file,
            timeout=cfg.command_timeout,
        )
        self.bootstrapper = RemoteBootstrapper(
            self.transport,
            self.registry,
            credentials_dir=cfg.credentials_dir,
            kubeconfig_path=cfg.kubeconfig_path,
        )

    def default_image(self) -> Image:
        cfg = self.config
        return Image(
            name=cfg.default_image_name,
            kind=ImageKind.DISTRIBUTION,
            owner=cfg.default_image_distribution,
            location=cfg.default_image_url,
            location_kind=LocationKind.URL,
        )

    def default_network(self) -> Network:
        cfg = self.config
        return validate_network(
            cfg.default_network_name,
            cfg.default_subnet,
            cfg.default_gateway,
            cfg.default_dns_server,
            cfg.default_dhcp,
            cfg.default_network_type,
        )

    async def build_cluster_spec(
        self,
        name: str,
        *,
        controllers: int = 1,
        workers: int = 0,
        image: str = "default",
        network: Optional[str] = None,
        suffix: Optional[str] = None,
        memory: str = "12G",
        cpu: int = 4,
        disk: str = "10G",
        public_key_path: Optional[str] = None,
    ) -> ClusterSpec:
        """
        Resolve CLI-level options into a :class:`ClusterSpec`.

        ``image="default"`` and the configured default network are created on
        demand; any other image or network must already exist.
        """
        if cpu <= 0:
            raise ValidationError("cpu must be positive", "resources")
        if self.config.ssh_key_path:
            # Readiness checks and bootstrap sessions both authenticate with this key
            SecurityValidator.validate_ssh_key_path(self.config.ssh_key_path)
        resources = Resources(
            cpu=cpu,
            memory=SecurityValidator.parse_size(memory),
            disk=SecurityValidator.validate_size(disk),
        )

        if image == "default":
            base_image = self.default_image()
        else:
            base_image = await self.images.resolve_base(image)
            if base_image is None:
                raise ResourceNotFoundError("Image", image)

        network_name = network or self.config.default_network_name
        if network_name == self.config.default_network_name:
            network_spec = self.default_network()
        else:
            network_spec = await self.networks.resolve(network_name)
            if network_spec is None:
                raise ResourceNotFoundError("Network", network_name)

        public_key = SecurityValidator.read_public_key(
            public_key_path or self.config.public_key_path
        )
        return ClusterSpec(
            name=name,
            image=base_image,
            network=network_spec,
            controllers=controllers,
            workers=workers,
            suffix=suffix or self.config.default_suffix,
            resources=resources,
            public_key=public_key,
        )

    # Clusters

    async def create_cluster(self, spec: ClusterSpec) -> Cluster:
        return await self.orchestrator.create(spec)

    async def bootstrap_cluster(self, cluster: Cluster) -> BootstrapState:
        return await self.bootstrapper.bootstrap(cluster)

    async def deploy_kubespray(self, cluster: Cluster, inventory: str, location: str) -> str:
        path = write_inventory(cluster, inventory)
        await clone_repository(location)
        await run_playbook(path, location)
        return path

    async def delete_cluster(self, name: str) -> List[str]:
        return await self.orchestrator.delete(name)

    async def list_clusters(self) -> List[Cluster]:
        return await self.orchestrator.list()

    async def get_cluster(self, name: str) -> Optional[Cluster]:
        return await self.orchestrator.get(name)

    # Snapshots

    async def create_snapshot(self, name: str, snapshot_name: Optional[str] = None) -> List[Snapshot]:
        return await self.orchestrator.create_snapshot(name, snapshot_name)

    async def list_snapshots(self, name: str) -> List[Snapshot]:
        return await self.orchestrator.list_snapshots(name)

    async def revert_snapshot(self, name: str, snapshot_name: Optional[str] = None) -> List[Snapshot]:
        return await self.orchestrator.revert_snapshot(name, snapshot_name)

    # Images

    async def create_image(
        self,
        name: str,
        distribution: str,
        url: Optional[str] = None,
        path: Optional[str] = None,
    ) -> Image:
        if bool(url) == bool(path):
            raise ValidationError("Exactly one of url or path is required", "image")
        SecurityValidator.validate_resource_name(name, "image")
        SecurityValidator.validate_resource_name(distribution, "distribution")
        spec = Image(
            name=name,
            kind=ImageKind.DISTRIBUTION,
            owner=distribution,
            location=url or path,
            location_kind=LocationKind.URL if url else LocationKind.FILE,
        )
        return await self.images.ensure_base(spec)

    async def list_images(self, kind: Optional[ImageKind] = None) -> List[Image]:
        return await self.images.list(kind)

    async def delete_image(self, name: str, distribution: str) -> None:
        image = await self.images.resolve_base(name, distribution)
        if image is None:
            raise ResourceNotFoundError("Image", name)
        await self.images.delete(image)

    # Networks

    async def create_network(
        self,
        name: str,
        subnet: str,
        gateway: Optional[str] = None,
        dns_server: Optional[str] = None,
        dhcp: bool = True,
        network_type: str = "bridge",
    ) -> Network:
        network = validate_network(name, subnet, gateway, dns_server, dhcp, network_type)
        return await self.networks.create(network)

    async def list_networks(self) -> List[Network]:
        return await self.networks.list()

    async def delete_network(self, name: str) -> None:
        await self.networks.delete(name)

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        return None
