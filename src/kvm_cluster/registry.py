"""
Cluster inventory reconstructed from domain metadata tags.

Nothing is cached: every call lists the domains again.
"""

from typing import Dict, List, Optional

from .exceptions import ConfigurationError
from .libvirt_wrapper import LibvirtWrapper
from .metadata import decode_address, decode_instance_tags
from .models import Cluster, DomainRecord, Instance, InstanceState, Role

MAX_CLUSTER_ORDINAL = 56


def _instance_from_record(record: DomainRecord) -> Optional[Instance]:
    tags = decode_instance_tags(record.xml)
    if tags is None:
        return None
    address = decode_address(record.xml)
    return Instance(
        name=record.name,
        role=tags.role,
        cluster_name=tags.cluster,
        suffix=tags.suffix,
        ordinal=tags.ordinal,
        ip_addresses=[address] if address else [],
        state=InstanceState.SSH_READY if record.active and address else InstanceState.DOMAIN_DEFINED,
    )


def _sort_key(instance: Instance):
    # Controllers first, then by name
    return (0 if instance.role is Role.CONTROLLER else 1, instance.name)


class ClusterRegistry:
    """Read-only queries over tagged domains."""

    def __init__(self, backend: LibvirtWrapper) -> None:
        self.backend = backend

    async def list_instances(self, cluster: Optional[str] = None) -> List[Instance]:
        instances = []
        for record in await self.backend.list_domains():
            instance = _instance_from_record(record)
            if instance is None:
                continue
            if cluster is not None and instance.cluster_name != cluster:
                continue
            instances.append(instance)
        return sorted(instances, key=_sort_key)

    async def get_instance(self, name: str, cluster: Optional[str] = None) -> Optional[Instance]:
        for instance in await self.list_instances(cluster):
            if instance.name == name:
                return instance
        return None

    async def list_clusters(self) -> List[Cluster]:
        grouped: Dict[str, Cluster] = {}
        for instance in await self.list_instances():
            cluster = grouped.setdefault(
                instance.cluster_name, Cluster(name=instance.cluster_name, suffix=instance.suffix)
            )
            cluster.instances.append(instance)
        return [grouped[name] for name in sorted(grouped)]

    async def get_cluster(self, name: str) -> Optional[Cluster]:
        instances = await self.list_instances(name)
        if not instances:
            return None
        return Cluster(name=name, suffix=instances[0].suffix, instances=instances)

    async def allocate_ordinal(self) -> int:
        """
        Lowest CIDR slot no tagged cluster holds.

        Raises:
            ConfigurationError: If all slots are taken
        """
        taken = {c.ordinal for c in await self.list_clusters() if c.ordinal is not None}
        ordinal = 0
        while ordinal in taken:
            ordinal += 1
        if ordinal >= MAX_CLUSTER_ORDINAL:
            raise ConfigurationError(
                f"No free cluster slot; at most {MAX_CLUSTER_ORDINAL} clusters are supported"
            )
        return ordinal

    async def cluster_ordinal(self, name: str) -> int:
        """
        CIDR slot of ``name`` as recorded in its instance tags.

        Clusters created before slots were recorded get the lowest free one.
        """
        cluster = await self.get_cluster(name)
        if cluster is not None and cluster.ordinal is not None:
            return cluster.ordinal
        return await self.allocate_ordinal()
