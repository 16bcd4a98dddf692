"""
Per-instance provisioning state machine.

An instance moves through PENDING, DISK_DERIVED, SEED_READY, DOMAIN_DEFINED,
BOOTED, IP_ASSIGNED and SSH_READY. The first error marks the record FAILED
and is re-raised; nothing created up to that point is rolled back.
"""

import asyncio
import tempfile
from typing import Optional

from .domain import MachineProfile, find_emulator, read_host_platform, render_domain_xml, resolve_machine_profile
from .exceptions import ImageCreationError, KVMClusterError, ResourceNotFoundError, TimeoutError
from .images import DISK_IMAGE, SEED_IMAGE, ImageStore
from .libvirt_wrapper import LibvirtWrapper
from .logging import logger
from .metadata import ADDRESS_NS, ADDRESS_PREFIX, encode_address
from .models import HostPlatform, Image, ImageKind, Instance, InstanceState, Network
from .seed import SeedBuilder
from .transport import SSHReadinessChecker


class InstanceLifecycle:
    """Drives one instance from nothing to reachable over SSH."""

    def __init__(
        self,
        backend: LibvirtWrapper,
        images: ImageStore,
        seeds: SeedBuilder,
        readiness: SSHReadinessChecker,
        ip_wait_timeout: float = 300,
        ip_poll_interval: float = 2.0,
        platform: Optional[HostPlatform] = None,
    ) -> None:
        self.backend = backend
        self.images = images
        self.seeds = seeds
        self.readiness = readiness
        self.ip_wait_timeout = ip_wait_timeout
        self.ip_poll_interval = ip_poll_interval
        self._platform = platform
        self._profile: Optional[MachineProfile] = None
        self._emulator: Optional[str] = None

    def machine_profile(self) -> MachineProfile:
        if self._profile is None:
            platform = self._platform or read_host_platform()
            self._profile = resolve_machine_profile(platform)
            self._emulator = find_emulator(self._profile)
        return self._profile

    async def create(self, instance: Instance, base_image: Image, network: Network) -> Instance:
        log = logger.bind(instance=instance.name, cluster=instance.cluster_name)
        try:
            disk = await self.images.derive_instance_disk(
                instance.name, base_image, instance.resources.disk
            )
            self._advance(instance, InstanceState.DISK_DERIVED, log)

            with tempfile.TemporaryDirectory(prefix="kvm-cluster-seed-") as workdir:
                iso = await self.seeds.build(instance, network, workdir)
                seed = await self.images.register_instance_image(instance.name, SEED_IMAGE, iso)
            self._advance(instance, InstanceState.SEED_READY, log)

            profile = self.machine_profile()
            xml = render_domain_xml(instance, disk, seed, network, profile, self._emulator)
            await self.backend.define_domain(instance.name, xml)
            self._advance(instance, InstanceState.DOMAIN_DEFINED, log)

            await self.backend.start_domain(instance.name)
            self._advance(instance, InstanceState.BOOTED, log)

            address = await self.wait_for_address(instance.name)
            instance.ip_addresses = [address]
            await self.backend.set_domain_metadata(
                instance.name, encode_address(address), ADDRESS_PREFIX, ADDRESS_NS
            )
            self._advance(instance, InstanceState.IP_ASSIGNED, log, address=address)

            await self.readiness.wait(address)
            self._advance(instance, InstanceState.SSH_READY, log)
        except OSError as e:
            # Seed staging and local image files
            self._fail(instance, e, log)
            raise ImageCreationError(str(e), instance.name) from e
        except (KVMClusterError, asyncio.CancelledError) as e:
            self._fail(instance, e, log)
            raise
        return instance

    def _fail(self, instance: Instance, error: BaseException, log) -> None:
        instance.state = InstanceState.FAILED
        instance.error = str(error) or type(error).__name__
        log.error(f"Instance {instance.name} failed: {instance.error}")

    def _advance(self, instance: Instance, state: InstanceState, log, **fields) -> None:
        instance.state = state
        log.info(f"Instance {instance.name} is {state.value}", state=state.value, **fields)

    async def wait_for_address(self, name: str) -> str:
        """
        Poll DHCP leases of ``name`` until one IPv4 address shows up.

        Raises:
            TimeoutError: If no address appears before ``ip_wait_timeout``
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ip_wait_timeout
        while True:
            addresses = await self.backend.interface_addresses(name)
            if addresses:
                return addresses[0]
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TimeoutError(
                    f"no IP address for {name}", "wait_for_address", self.ip_wait_timeout
                )
            await asyncio.sleep(min(self.ip_poll_interval, remaining))

    async def destroy(self, name: str) -> None:
        """Remove the domain, its snapshots and both instance images."""
        try:
            await self.backend.destroy_domain(name)
        except ResourceNotFoundError:
            logger.debug(f"Domain {name} already gone", instance=name)
        for image_name in (DISK_IMAGE, SEED_IMAGE):
            await self.images.delete(Image(name=image_name, kind=ImageKind.INSTANCE, owner=name))
