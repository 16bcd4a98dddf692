"""
Virtual network management.

Only networks carrying the ownership tag from :mod:`kvm_cluster.metadata` are
visible to this module; networks defined by other tools are never resolved,
listed or deleted.
"""

import ipaddress
import xml.etree.ElementTree as ET
from typing import List, Optional, Tuple, Union

from .exceptions import AlreadyExistsError, ConfigurationError, NetworkError, ResourceNotFoundError
from .libvirt_wrapper import LibvirtWrapper
from .logging import logger
from .metadata import NetworkTags, decode_network_tags, network_tag_element
from .models import Network, NetworkType, NetworkRecord

# Linux IFNAMSIZ minus the terminating NUL
MAX_BRIDGE_NAME = 15

NAT_PORT_START = 1024
NAT_PORT_END = 65535

AddressLike = Union[str, ipaddress.IPv4Address, None]


def dhcp_range(subnet: ipaddress.IPv4Network) -> Tuple[ipaddress.IPv4Address, ipaddress.IPv4Address]:
    """First and last DHCP lease address: the third through the second-to-last address."""
    if subnet.num_addresses < 4:
        raise ConfigurationError(f"Subnet {subnet} is too small for a DHCP range")
    return subnet[2], subnet[-2]


def validate_network(
    name: str,
    subnet: str,
    gateway: AddressLike = None,
    dns_server: AddressLike = None,
    dhcp: bool = True,
    network_type: Union[str, NetworkType] = NetworkType.BRIDGE,
) -> Network:
    """
    Build a validated :class:`Network`.

    The gateway defaults to the first host address and the DNS server to the
    gateway.

    Raises:
        ConfigurationError: On a malformed subnet, addresses outside the
            subnet, an over-long bridge name or an unknown network type
    """
    if not name:
        raise ConfigurationError("Network name must not be empty")
    if len(name) > MAX_BRIDGE_NAME:
        raise ConfigurationError(
            f"Network name '{name}' is longer than {MAX_BRIDGE_NAME} characters"
        )

    try:
        net = ipaddress.IPv4Network(str(subnet), strict=True)
    except ValueError as e:
        raise ConfigurationError(f"Invalid subnet '{subnet}': {e}")

    try:
        kind = NetworkType(network_type.value if isinstance(network_type, NetworkType) else str(network_type).lower())
    except ValueError:
        raise ConfigurationError(f"Unknown network type '{network_type}'")

    try:
        gw = ipaddress.IPv4Address(str(gateway)) if gateway else net[1]
        dns = ipaddress.IPv4Address(str(dns_server)) if dns_server else gw
    except ValueError as e:
        raise ConfigurationError(f"Invalid address: {e}")

    if gw not in net:
        raise ConfigurationError(f"Gateway {gw} is not inside {net}")
    if dns not in net:
        raise ConfigurationError(f"DNS server {dns} is not inside {net}")

    return Network(name=name, subnet=net, gateway=gw, dns_server=dns, dhcp=dhcp, type=kind)


def render_network_xml(network: Network) -> str:
    root = ET.Element("network")
    ET.SubElement(root, "name").text = network.name
    metadata = ET.SubElement(root, "metadata")
    metadata.append(
        network_tag_element(
            NetworkTags(
                subnet=str(network.subnet),
                gateway=str(network.gateway),
                dns_server=str(network.dns_server),
                dhcp=network.dhcp,
            )
        )
    )

    if network.type is NetworkType.OVS:
        ET.SubElement(root, "forward", mode="bridge")
        ET.SubElement(root, "bridge", name=network.bridge)
        ET.SubElement(root, "virtualport", type="openvswitch")
        return ET.tostring(root, encoding="unicode")

    forward = ET.SubElement(root, "forward", mode="nat")
    nat = ET.SubElement(forward, "nat")
    ET.SubElement(nat, "port", start=str(NAT_PORT_START), end=str(NAT_PORT_END))
    ET.SubElement(root, "bridge", name=network.bridge, stp="on", delay="0")
    if network.dns_server != network.gateway:
        dns = ET.SubElement(root, "dns")
        ET.SubElement(dns, "forwarder", addr=str(network.dns_server))

    ip = ET.SubElement(
        root, "ip", address=str(network.gateway), netmask=str(network.subnet.netmask)
    )
    if network.dhcp:
        start, end = dhcp_range(network.subnet)
        dhcp = ET.SubElement(ip, "dhcp")
        ET.SubElement(dhcp, "range", start=str(start), end=str(end))
    return ET.tostring(root, encoding="unicode")


def network_from_record(record: NetworkRecord) -> Optional[Network]:
    """Rebuild a :class:`Network` from a managed network definition."""
    tags = decode_network_tags(record.xml)
    if tags is None:
        return None
    root = ET.fromstring(record.xml)
    kind = NetworkType.BRIDGE
    if root.find("virtualport[@type='openvswitch']") is not None:
        kind = NetworkType.OVS
    try:
        return Network(
            name=record.name,
            subnet=ipaddress.IPv4Network(tags.subnet),
            gateway=ipaddress.IPv4Address(tags.gateway),
            dns_server=ipaddress.IPv4Address(tags.dns_server),
            dhcp=tags.dhcp,
            type=kind,
            active=record.active,
        )
    except ValueError as e:
        logger.warning(f"Ignoring network {record.name} with bad tag: {e}", network=record.name)
        return None


class NetworkManager:
    """Creates and resolves managed virtual networks."""

    def __init__(self, backend: LibvirtWrapper) -> None:
        self.backend = backend

    async def list(self) -> List[Network]:
        networks = []
        for record in await self.backend.list_networks():
            network = network_from_record(record)
            if network is not None:
                networks.append(network)
        return sorted(networks, key=lambda n: n.name)

    async def resolve(self, name: str) -> Optional[Network]:
        for network in await self.list():
            if network.name == name:
                return network
        return None

    async def create(self, network: Network) -> Network:
        """
        Define, start and autostart ``network``.

        Raises:
            AlreadyExistsError: If any network, managed or not, has that name
        """
        existing = [r.name for r in await self.backend.list_networks()]
        if network.name in existing:
            raise AlreadyExistsError("Network", network.name)
        await self.backend.define_network(network.name, render_network_xml(network))
        logger.info(
            f"Created network {network.name}",
            network=network.name,
            subnet=str(network.subnet),
        )
        created = await self.resolve(network.name)
        if created is None:
            raise NetworkError("network not found after creation", network.name, "create")
        return created

    async def ensure_default(self, network: Network) -> Network:
        """Resolve ``network`` by name, creating it when absent."""
        existing = await self.resolve(network.name)
        if existing is not None:
            return existing
        try:
            return await self.create(network)
        except AlreadyExistsError:
            # Created by a concurrent caller after the lookup above
            existing = await self.resolve(network.name)
            if existing is None:
                raise
            logger.debug(f"Network {network.name} appeared concurrently", network=network.name)
            return existing

    async def delete(self, name: str) -> None:
        if await self.resolve(name) is None:
            raise ResourceNotFoundError("Network", name)
        await self.backend.delete_network(name)
        logger.info(f"Deleted network {name}", network=name)
