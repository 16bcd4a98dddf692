"""
Backend metadata tag schema.

Cluster membership is not stored anywhere except on the libvirt objects
themselves. Instances carry one versioned ``instance`` element in the domain
``<metadata>`` block, plus a separately written ``address`` element once an IP
has been discovered. Managed networks carry a ``network`` ownership element.

Decoding is strict about the fields it knows and ignores everything else, so
elements written by a newer release (higher ``version``, extra children) still
round-trip the known fields.
"""

import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Optional

from .models import Role

SCHEMA_VERSION = 1

INSTANCE_NS = "https://kvm-cluster.dev/xmlns/instance"
ADDRESS_NS = "https://kvm-cluster.dev/xmlns/address"
NETWORK_NS = "https://kvm-cluster.dev/xmlns/network"

INSTANCE_PREFIX = "kvmcluster"
ADDRESS_PREFIX = "kvmcluster-address"
NETWORK_PREFIX = "kvmcluster-network"

ET.register_namespace(INSTANCE_PREFIX, INSTANCE_NS)
ET.register_namespace(ADDRESS_PREFIX, ADDRESS_NS)
ET.register_namespace(NETWORK_PREFIX, NETWORK_NS)


@dataclass(frozen=True)
class InstanceTags:
    """Cluster attribution of a domain."""

    cluster: str
    role: Role
    suffix: str
    ordinal: Optional[int] = None  # pod/service CIDR slot
    version: int = SCHEMA_VERSION


def _metadata_children(document: str):
    root = ET.fromstring(document)
    metadata = root.find("metadata")
    if metadata is None:
        return []
    return list(metadata)


def instance_tags_element(tags: InstanceTags) -> ET.Element:
    """Build the ``instance`` element for embedding into domain XML."""
    elem = ET.Element(f"{{{INSTANCE_NS}}}instance", version=str(tags.version))
    ET.SubElement(elem, f"{{{INSTANCE_NS}}}cluster").text = tags.cluster
    ET.SubElement(elem, f"{{{INSTANCE_NS}}}role").text = tags.role.value
    ET.SubElement(elem, f"{{{INSTANCE_NS}}}suffix").text = tags.suffix
    if tags.ordinal is not None:
        ET.SubElement(elem, f"{{{INSTANCE_NS}}}ordinal").text = str(tags.ordinal)
    return elem


def encode_instance_tags(tags: InstanceTags) -> str:
    return ET.tostring(instance_tags_element(tags), encoding="unicode")


def _parse_ordinal(value: Optional[str]) -> Optional[int]:
    try:
        ordinal = int(value)
    except (TypeError, ValueError):
        return None
    return ordinal if ordinal >= 0 else None


def decode_instance_tags(domain_xml: str) -> Optional[InstanceTags]:
    """
    Recover instance tags from a full domain XML description.

    Returns None when the domain was not created by this tool. Unknown child
    elements and attributes are ignored.
    """
    for child in _metadata_children(domain_xml):
        if child.tag != f"{{{INSTANCE_NS}}}instance":
            continue
        try:
            version = int(child.get("version", SCHEMA_VERSION))
        except ValueError:
            version = SCHEMA_VERSION

        fields = {}
        for item in child:
            if item.tag.startswith(f"{{{INSTANCE_NS}}}"):
                fields[item.tag.split("}", 1)[1]] = (item.text or "").strip()

        cluster = fields.get("cluster")
        if not cluster:
            return None
        try:
            role = Role(fields.get("role", ""))
        except ValueError:
            return None
        return InstanceTags(
            cluster=cluster,
            role=role,
            suffix=fields.get("suffix", ""),
            ordinal=_parse_ordinal(fields.get("ordinal")),
            version=version,
        )
    return None


def encode_address(address: str) -> str:
    """
    Address element body for ``virDomain.setMetadata``.

    libvirt binds the element to ``ADDRESS_NS`` itself, so the fragment is
    written without a namespace.
    """
    elem = ET.Element("address", version=str(SCHEMA_VERSION))
    elem.text = address
    return ET.tostring(elem, encoding="unicode")


def decode_address(domain_xml: str) -> Optional[str]:
    for child in _metadata_children(domain_xml):
        if child.tag == f"{{{ADDRESS_NS}}}address" and child.text:
            return child.text.strip()
    return None


@dataclass(frozen=True)
class NetworkTags:
    """Ownership tag of a managed network, with its addressing plan."""

    subnet: str
    gateway: str
    dns_server: str
    dhcp: bool = True
    version: int = SCHEMA_VERSION


def network_tag_element(tags: NetworkTags) -> ET.Element:
    elem = ET.Element(f"{{{NETWORK_NS}}}network", version=str(tags.version))
    ET.SubElement(elem, f"{{{NETWORK_NS}}}subnet").text = tags.subnet
    ET.SubElement(elem, f"{{{NETWORK_NS}}}gateway").text = tags.gateway
    ET.SubElement(elem, f"{{{NETWORK_NS}}}dns").text = tags.dns_server
    ET.SubElement(elem, f"{{{NETWORK_NS}}}dhcp").text = "yes" if tags.dhcp else "no"
    return elem


def decode_network_tags(network_xml: str) -> Optional[NetworkTags]:
    """Ownership tag of a network, or None for networks this tool did not create."""
    for child in _metadata_children(network_xml):
        if child.tag != f"{{{NETWORK_NS}}}network":
            continue
        fields = {
            item.tag.split("}", 1)[1]: (item.text or "").strip()
            for item in child
            if item.tag.startswith(f"{{{NETWORK_NS}}}")
        }
        return NetworkTags(
            subnet=fields.get("subnet", ""),
            gateway=fields.get("gateway", ""),
            dns_server=fields.get("dns", ""),
            dhcp=fields.get("dhcp", "yes") != "no",
        )
    return None
