"""
Domain definition: host platform detection, machine profiles and domain XML.
"""

import shutil
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .exceptions import ConfigurationError, UnsupportedHostPlatformError
from .metadata import InstanceTags, instance_tags_element
from .models import HostPlatform, Image, Instance, Network

OS_RELEASE = "/etc/os-release"


@dataclass(frozen=True)
class MachineProfile:
    """Chipset and emulator settings for one hypervisor host platform."""

    machine: str
    arch: str = "x86_64"
    emulators: Tuple[str, ...] = ("/usr/bin/qemu-system-x86_64",)


MACHINE_PROFILES: Dict[Tuple[str, str], MachineProfile] = {
    ("centos", "8"): MachineProfile("pc-q35-rhel8.2.0", emulators=("/usr/libexec/qemu-kvm",)),
    ("rhel", "8"): MachineProfile("pc-q35-rhel8.2.0", emulators=("/usr/libexec/qemu-kvm",)),
    ("rocky", "8"): MachineProfile("pc-q35-rhel8.2.0", emulators=("/usr/libexec/qemu-kvm",)),
    ("ubuntu", "20.04"): MachineProfile("pc-q35-focal"),
    ("ubuntu", "22.04"): MachineProfile("pc-q35-jammy"),
    ("ubuntu", "24.04"): MachineProfile("pc-q35-noble"),
}


def read_host_platform(path: str = OS_RELEASE) -> HostPlatform:
    """Read ``ID`` and ``VERSION_ID`` from an os-release file."""
    values: Dict[str, str] = {}
    try:
        with open(path, "r") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, value = line.split("=", 1)
                values[key] = value.strip().strip('"').strip("'")
    except OSError as e:
        raise ConfigurationError(f"Cannot read host platform from {path}: {e}")
    return HostPlatform(
        distribution=values.get("ID", "").lower(), version=values.get("VERSION_ID", "")
    )


def resolve_machine_profile(platform: HostPlatform) -> MachineProfile:
    """
    Pick the machine profile for ``platform``.

    An exact version match wins, then the major version (``8.4`` -> ``8``).

    Raises:
        UnsupportedHostPlatformError: If no profile matches
    """
    profile = MACHINE_PROFILES.get((platform.distribution, platform.version))
    if profile is None:
        major = platform.version.split(".", 1)[0]
        profile = MACHINE_PROFILES.get((platform.distribution, major))
    if profile is None:
        raise UnsupportedHostPlatformError(platform.distribution, platform.version)
    return profile


def find_emulator(profile: MachineProfile) -> str:
    for candidate in profile.emulators:
        found = shutil.which(candidate)
        if found:
            return found
    raise ConfigurationError(
        f"No qemu emulator found (looked for {', '.join(profile.emulators)})"
    )


def render_domain_xml(
    instance: Instance,
    disk: Image,
    seed: Image,
    network: Network,
    profile: MachineProfile,
    emulator: Optional[str] = None,
) -> str:
    """Render the libvirt domain definition of ``instance``."""
    root = ET.Element("domain", type="kvm")
    ET.SubElement(root, "name").text = instance.name
    metadata = ET.SubElement(root, "metadata")
    metadata.append(
        instance_tags_element(
            InstanceTags(
                cluster=instance.cluster_name,
                role=instance.role,
                suffix=instance.suffix,
                ordinal=instance.ordinal,
            )
        )
    )
    ET.SubElement(root, "memory", unit="b").text = str(instance.resources.memory)
    ET.SubElement(root, "currentMemory", unit="b").text = str(instance.resources.memory)
    ET.SubElement(root, "vcpu", placement="static").text = str(instance.resources.cpu)

    os_elem = ET.SubElement(root, "os")
    ET.SubElement(os_elem, "type", arch=profile.arch, machine=profile.machine).text = "hvm"
    ET.SubElement(os_elem, "boot", dev="hd")

    features = ET.SubElement(root, "features")
    ET.SubElement(features, "acpi")
    ET.SubElement(features, "apic")
    ET.SubElement(root, "cpu", mode="host-model")
    ET.SubElement(root, "on_poweroff").text = "destroy"
    ET.SubElement(root, "on_reboot").text = "restart"
    ET.SubElement(root, "on_crash").text = "destroy"

    devices = ET.SubElement(root, "devices")
    ET.SubElement(devices, "emulator").text = emulator or profile.emulators[0]

    cdrom = ET.SubElement(devices, "disk", type="file", device="cdrom")
    ET.SubElement(cdrom, "driver", name="qemu", type="raw")
    ET.SubElement(cdrom, "source", file=seed.path or "")
    ET.SubElement(cdrom, "target", dev="sda", bus="sata")
    ET.SubElement(cdrom, "readonly")

    root_disk = ET.SubElement(devices, "disk", type="file", device="disk")
    ET.SubElement(root_disk, "driver", name="qemu", type="qcow2")
    ET.SubElement(root_disk, "source", file=disk.path or "")
    if disk.backing is not None:
        backing = ET.SubElement(root_disk, "backingStore", type="file")
        ET.SubElement(backing, "format", type="qcow2")
        ET.SubElement(backing, "source", file=disk.backing.path or "")
        ET.SubElement(backing, "backingStore")
    ET.SubElement(root_disk, "target", dev="vda", bus="virtio")

    iface = ET.SubElement(devices, "interface", type="network")
    ET.SubElement(iface, "source", network=network.name)
    ET.SubElement(iface, "model", type="virtio")

    serial = ET.SubElement(devices, "serial", type="pty")
    ET.SubElement(serial, "target", port="0")
    console = ET.SubElement(devices, "console", type="pty")
    ET.SubElement(console, "target", type="serial", port="0")

    return ET.tostring(root, encoding="unicode")
