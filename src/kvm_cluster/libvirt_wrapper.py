"""
Libvirt API wrapper for cluster operations.

This module provides a high-level asynchronous interface to the libvirt
storage, network and domain APIs. Every public call opens its own connection
inside a worker thread, so concurrent instance lifecycles never share a
``virConnect`` handle.
"""

from __future__ import annotations

import asyncio
import os
import xml.etree.ElementTree as ET
from typing import Any, Callable, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    import libvirt
else:
    try:
        import libvirt  # type: ignore[import-untyped,import-not-found]
    except ImportError:
        libvirt = None  # type: ignore[assignment]

from .models import (
    DomainRecord,
    NetworkRecord,
    Snapshot,
    StoragePoolRecord,
    VolumeRecord,
)
from .exceptions import LibvirtError, ResourceNotFoundError
from .logging import logger


# libvirt error code name -> resource type reported in ResourceNotFoundError
_NOT_FOUND_CODES = {
    "VIR_ERR_NO_STORAGE_POOL": "Storage pool",
    "VIR_ERR_NO_STORAGE_VOL": "Storage volume",
    "VIR_ERR_NO_NETWORK": "Network",
    "VIR_ERR_NO_DOMAIN": "Domain",
    "VIR_ERR_NO_DOMAIN_SNAPSHOT": "Snapshot",
}

UPLOAD_CHUNK = 256 * 1024


def _pool_xml(name: str, path: str) -> str:
    pool = ET.Element("pool", type="dir")
    ET.SubElement(pool, "name").text = name
    target = ET.SubElement(pool, "target")
    ET.SubElement(target, "path").text = path
    return ET.tostring(pool, encoding="unicode")


def _volume_xml(name: str, capacity: int, fmt: str) -> str:
    vol = ET.Element("volume")
    ET.SubElement(vol, "name").text = name
    ET.SubElement(vol, "capacity", unit="bytes").text = str(capacity)
    target = ET.SubElement(vol, "target")
    ET.SubElement(target, "format", type=fmt)
    return ET.tostring(vol, encoding="unicode")


def _pool_path(pool: Any) -> str:
    root = ET.fromstring(pool.XMLDesc(0))
    return root.findtext("target/path", default="")


class LibvirtWrapper:
    """Wrapper for libvirt operations."""

    def __init__(self, uri: str = "qemu:///system") -> None:
        self.uri = uri

    def _open(self) -> Any:
        if libvirt is None:
            raise LibvirtError("libvirt-python is not installed", "connection")
        try:
            conn = libvirt.open(self.uri)
        except libvirt.libvirtError as e:
            logger.error(f"Failed to connect to libvirt at {self.uri}: {e}", uri=self.uri)
            raise LibvirtError(str(e), "connection")
        if conn is None:
            raise LibvirtError(f"Failed to connect to libvirt at {self.uri}", "connection")
        return conn

    def _translate(self, error: Any, operation: str, target: str) -> Exception:
        code = error.get_error_code()
        for code_name, resource_type in _NOT_FOUND_CODES.items():
            if code == getattr(libvirt, code_name, None):
                return ResourceNotFoundError(resource_type, target)
        return LibvirtError(str(error), operation)

    def _run(self, operation: str, target: str, func: Callable[[Any], Any]) -> Any:
        conn = self._open()
        try:
            return func(conn)
        except libvirt.libvirtError as e:
            raise self._translate(e, operation, target)
        finally:
            conn.close()

    async def _call(self, operation: str, target: str, func: Callable[[Any], Any]) -> Any:
        """Run ``func(conn)`` on a fresh connection in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._run, operation, target, func)

    # Storage pools and volumes

    async def list_storage_pools(self) -> List[StoragePoolRecord]:
        def _list(conn: Any) -> List[StoragePoolRecord]:
            return [
                StoragePoolRecord(
                    name=pool.name(), path=_pool_path(pool), active=bool(pool.isActive())
                )
                for pool in conn.listAllStoragePools(0)
            ]

        return await self._call("list_storage_pools", "*", _list)

    async def ensure_storage_pool(self, name: str, path: str) -> StoragePoolRecord:
        """Define, build, start and autostart a directory pool unless it exists."""

        def _ensure(conn: Any) -> StoragePoolRecord:
            try:
                pool = conn.storagePoolLookupByName(name)
            except libvirt.libvirtError as e:
                if e.get_error_code() != libvirt.VIR_ERR_NO_STORAGE_POOL:
                    raise
                os.makedirs(path, exist_ok=True)
                pool = conn.storagePoolDefineXML(_pool_xml(name, path), 0)
                pool.build(0)
                pool.setAutostart(1)
                logger.info(f"Defined storage pool {name}", pool=name, path=path)
            if not pool.isActive():
                pool.create(0)
            return StoragePoolRecord(name=name, path=_pool_path(pool), active=True)

        return await self._call("ensure_storage_pool", name, _ensure)

    async def remove_storage_pool(self, name: str) -> str:
        """Destroy and undefine a pool, returning its target directory."""

        def _remove(conn: Any) -> str:
            pool = conn.storagePoolLookupByName(name)
            path = _pool_path(pool)
            if pool.isActive():
                pool.destroy()
            pool.undefine()
            return path

        return await self._call("remove_storage_pool", name, _remove)

    async def list_volumes(self, pool_name: str) -> List[VolumeRecord]:
        def _list(conn: Any) -> List[VolumeRecord]:
            pool = conn.storagePoolLookupByName(pool_name)
            if not pool.isActive():
                pool.create(0)
            pool.refresh(0)
            return [
                VolumeRecord(name=vol.name(), path=vol.path(), pool=pool_name)
                for vol in pool.listAllVolumes(0)
            ]

        return await self._call("list_volumes", pool_name, _list)

    async def upload_volume(
        self, pool_name: str, volume_name: str, source: str, fmt: str = "qcow2"
    ) -> VolumeRecord:
        """Create ``volume_name`` in ``pool_name`` and stream ``source`` into it."""

        def _upload(conn: Any) -> VolumeRecord:
            size = os.path.getsize(source)
            pool = conn.storagePoolLookupByName(pool_name)
            vol = pool.createXML(_volume_xml(volume_name, size, fmt), 0)
            stream = conn.newStream(0)
            try:
                vol.upload(stream, 0, size, 0)
                with open(source, "rb") as fh:
                    stream.sendAll(lambda _stream, nbytes, f: f.read(min(nbytes, UPLOAD_CHUNK)), fh)
                stream.finish()
            except (libvirt.libvirtError, OSError):
                stream.abort()
                raise
            return VolumeRecord(name=volume_name, path=vol.path(), pool=pool_name)

        return await self._call("upload_volume", f"{pool_name}/{volume_name}", _upload)

    async def delete_volume(self, pool_name: str, volume_name: str) -> None:
        def _delete(conn: Any) -> None:
            pool = conn.storagePoolLookupByName(pool_name)
            pool.storageVolLookupByName(volume_name).delete(0)

        await self._call("delete_volume", f"{pool_name}/{volume_name}", _delete)

    # Networks

    async def list_networks(self) -> List[NetworkRecord]:
        def _list(conn: Any) -> List[NetworkRecord]:
            return [
                NetworkRecord(name=net.name(), xml=net.XMLDesc(0), active=bool(net.isActive()))
                for net in conn.listAllNetworks(0)
            ]

        return await self._call("list_networks", "*", _list)

    async def define_network(self, name: str, xml: str) -> None:
        def _define(conn: Any) -> None:
            net = conn.networkDefineXML(xml)
            net.setAutostart(1)
            net.create()

        await self._call("define_network", name, _define)

    async def delete_network(self, name: str) -> None:
        def _delete(conn: Any) -> None:
            net = conn.networkLookupByName(name)
            if net.isActive():
                net.destroy()
            net.undefine()

        await self._call("delete_network", name, _delete)

    # Domains

    async def list_domains(self) -> List[DomainRecord]:
        def _list(conn: Any) -> List[DomainRecord]:
            return [
                DomainRecord(name=dom.name(), xml=dom.XMLDesc(0), active=bool(dom.isActive()))
                for dom in conn.listAllDomains(0)
            ]

        return await self._call("list_domains", "*", _list)

    async def get_domain(self, name: str) -> DomainRecord:
        def _get(conn: Any) -> DomainRecord:
            dom = conn.lookupByName(name)
            return DomainRecord(name=dom.name(), xml=dom.XMLDesc(0), active=bool(dom.isActive()))

        return await self._call("get_domain", name, _get)

    async def define_domain(self, name: str, xml: str) -> None:
        def _define(conn: Any) -> None:
            conn.defineXML(xml)

        await self._call("define_domain", name, _define)
        logger.info(f"Defined domain {name}", instance=name)

    async def start_domain(self, name: str) -> None:
        def _start(conn: Any) -> None:
            dom = conn.lookupByName(name)
            dom.setAutostart(1)
            if not dom.isActive():
                dom.create()

        await self._call("start_domain", name, _start)

    async def interface_addresses(self, name: str) -> List[str]:
        """IPv4 addresses of ``name`` from the network's DHCP leases."""

        def _addresses(conn: Any) -> List[str]:
            dom = conn.lookupByName(name)
            interfaces = dom.interfaceAddresses(
                libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE, 0
            )
            found = []
            for iface in (interfaces or {}).values():
                for addr in iface.get("addrs") or []:
                    if addr.get("type") == libvirt.VIR_IP_ADDR_TYPE_IPV4 and addr.get("addr"):
                        found.append(addr["addr"])
            return found

        return await self._call("interface_addresses", name, _addresses)

    async def set_domain_metadata(self, name: str, xml: str, key: str, uri: str) -> None:
        def _set(conn: Any) -> None:
            dom = conn.lookupByName(name)
            flags = libvirt.VIR_DOMAIN_AFFECT_CONFIG
            if dom.isActive():
                flags |= libvirt.VIR_DOMAIN_AFFECT_LIVE
            dom.setMetadata(libvirt.VIR_DOMAIN_METADATA_ELEMENT, xml, key, uri, flags)

        await self._call("set_domain_metadata", name, _set)

    async def destroy_domain(self, name: str) -> None:
        """Stop if active, drop all snapshot metadata, then undefine."""

        def _destroy(conn: Any) -> None:
            dom = conn.lookupByName(name)
            if dom.isActive():
                dom.destroy()
            for snap in dom.listAllSnapshots(0):
                snap.delete(0)
            dom.undefine()

        await self._call("destroy_domain", name, _destroy)
        logger.info(f"Destroyed domain {name}", instance=name)

    # Snapshots

    async def create_snapshot(self, name: str, snapshot_name: str) -> None:
        def _create(conn: Any) -> None:
            dom = conn.lookupByName(name)
            snap = ET.Element("domainsnapshot")
            ET.SubElement(snap, "name").text = snapshot_name
            dom.snapshotCreateXML(ET.tostring(snap, encoding="unicode"), 0)

        await self._call("create_snapshot", name, _create)

    async def list_snapshots(self, name: str) -> List[Snapshot]:
        def _list(conn: Any) -> List[Snapshot]:
            dom = conn.lookupByName(name)
            return [
                Snapshot(instance=name, name=snap.getName(), is_current=bool(snap.isCurrent(0)))
                for snap in dom.listAllSnapshots(0)
            ]

        return await self._call("list_snapshots", name, _list)

    async def revert_snapshot(self, name: str, snapshot_name: Optional[str] = None) -> str:
        """Revert to ``snapshot_name`` or, when omitted, the current snapshot."""

        def _revert(conn: Any) -> str:
            dom = conn.lookupByName(name)
            if snapshot_name:
                snap = dom.snapshotLookupByName(snapshot_name, 0)
            else:
                snap = dom.snapshotCurrent(0)
            dom.revertToSnapshot(snap, 0)
            return snap.getName()

        return await self._call("revert_snapshot", name, _revert)
