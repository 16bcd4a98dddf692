"""
Cluster provisioning orchestrator.

Resolves the shared base image and network once, then fans out one
:class:`~kvm_cluster.lifecycle.InstanceLifecycle` per instance.
"""

import asyncio
from datetime import datetime
from typing import List, Optional

from .exceptions import ResourceNotFoundError, ValidationError
from .images import ImageStore
from .lifecycle import InstanceLifecycle
from .logging import logger
from .models import Cluster, ClusterSpec, Instance, InstanceState, Role, Snapshot, instance_name
from .networks import NetworkManager
from .registry import ClusterRegistry
from .security import SecurityValidator
from .libvirt_wrapper import LibvirtWrapper


def plan_instances(spec: ClusterSpec, ordinal: Optional[int] = None) -> List[Instance]:
    """Instance records for ``spec``: controllers first, then workers."""
    instances = []
    for role, count in ((Role.CONTROLLER, spec.controllers), (Role.WORKER, spec.workers)):
        for index in range(count):
            instances.append(
                Instance(
                    name=instance_name(role, index, spec.name, spec.suffix),
                    role=role,
                    cluster_name=spec.name,
                    suffix=spec.suffix,
                    resources=spec.resources,
                    public_key=spec.public_key,
                    ordinal=ordinal,
                )
            )
    return instances


class ClusterOrchestrator:
    """Creates, deletes and queries clusters."""

    def __init__(
        self,
        backend: LibvirtWrapper,
        registry: ClusterRegistry,
        images: ImageStore,
        networks: NetworkManager,
        lifecycle: InstanceLifecycle,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.images = images
        self.networks = networks
        self.lifecycle = lifecycle

    async def create(self, spec: ClusterSpec) -> Cluster:
        """
        Create every instance of ``spec`` concurrently.

        A cluster name that any instance already carries is returned as is.
        When instances fail, the first failure in launch order is raised and
        the instances that succeeded are left running.
        """
        SecurityValidator.validate_cluster_name(spec.name)
        SecurityValidator.validate_hostname(spec.suffix)
        if spec.controllers < 0 or spec.workers < 0:
            raise ValidationError("Instance counts must not be negative", "cluster")
        if spec.controllers + spec.workers == 0:
            raise ValidationError("A cluster needs at least one instance", "cluster")

        existing = await self.registry.get_cluster(spec.name)
        if existing is not None:
            logger.info(f"Cluster {spec.name} already exists", cluster=spec.name)
            return existing

        ordinal = await self.registry.allocate_ordinal()
        base_image = await self.images.ensure_base(spec.image)
        network = await self.networks.ensure_default(spec.network)

        instances = plan_instances(spec, ordinal)
        logger.info(
            f"Creating cluster {spec.name}",
            cluster=spec.name,
            ordinal=ordinal,
            controllers=spec.controllers,
            workers=spec.workers,
            image=base_image.name,
            network=network.name,
        )

        results = await asyncio.gather(
            *(self.lifecycle.create(i, base_image, network) for i in instances),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            failed = [i.name for i in instances if i.state is InstanceState.FAILED]
            logger.error(
                f"Cluster {spec.name}: {len(errors)} of {len(instances)} instances failed",
                cluster=spec.name,
                failed=failed,
            )
            raise errors[0]

        logger.info(f"Cluster {spec.name} created", cluster=spec.name)
        return Cluster(name=spec.name, suffix=spec.suffix, instances=instances)

    async def delete(self, name: str) -> List[str]:
        """Tear down each instance of ``name`` in order. The first failure aborts."""
        cluster = await self.registry.get_cluster(name)
        if cluster is None:
            raise ResourceNotFoundError("Cluster", name)
        removed = []
        for instance in cluster.instances:
            await self.lifecycle.destroy(instance.name)
            removed.append(instance.name)
        logger.info(f"Cluster {name} deleted", cluster=name, instances=removed)
        return removed

    async def list(self) -> List[Cluster]:
        return await self.registry.list_clusters()

    async def get(self, name: str) -> Optional[Cluster]:
        return await self.registry.get_cluster(name)

    async def _require(self, name: str) -> Cluster:
        cluster = await self.registry.get_cluster(name)
        if cluster is None:
            raise ResourceNotFoundError("Cluster", name)
        return cluster

    async def create_snapshot(self, name: str, snapshot_name: Optional[str] = None) -> List[Snapshot]:
        cluster = await self._require(name)
        snapshot_name = snapshot_name or datetime.now().strftime("snap-%Y%m%d%H%M%S")
        SecurityValidator.validate_resource_name(snapshot_name, "snapshot")
        created = []
        for instance in cluster.instances:
            await self.backend.create_snapshot(instance.name, snapshot_name)
            created.append(Snapshot(instance=instance.name, name=snapshot_name, is_current=True))
        logger.info(f"Snapshot {snapshot_name} created for {name}", cluster=name, snapshot=snapshot_name)
        return created

    async def list_snapshots(self, name: str) -> List[Snapshot]:
        cluster = await self._require(name)
        snapshots = []
        for instance in cluster.instances:
            snapshots.extend(await self.backend.list_snapshots(instance.name))
        return snapshots

    async def revert_snapshot(self, name: str, snapshot_name: Optional[str] = None) -> List[Snapshot]:
        """Revert every instance to ``snapshot_name`` or to its current snapshot."""
        cluster = await self._require(name)
        reverted = []
        for instance in cluster.instances:
            used = await self.backend.revert_snapshot(instance.name, snapshot_name)
            reverted.append(Snapshot(instance=instance.name, name=used, is_current=True))
        logger.info(f"Cluster {name} reverted", cluster=name)
        return reverted
