"""
Disk image management.

Distribution images are shared, read-only backing files that live in one
storage pool per distribution. Every instance gets its own pool holding a
copy-on-write ``disk`` overlay and the ``cloudinit`` seed.
"""

import asyncio
import os
import shutil
import subprocess
import tempfile
from typing import List, Optional

import requests

from .exceptions import ImageCreationError, ResourceNotFoundError
from .libvirt_wrapper import LibvirtWrapper
from .logging import logger
from .models import Image, ImageKind, LocationKind, VolumeRecord

DISK_IMAGE = "disk"
SEED_IMAGE = "cloudinit"

DOWNLOAD_CHUNK = 1024 * 1024


def _download(url: str, destination: str, timeout: float) -> None:
    with requests.get(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        with open(destination, "wb") as fh:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK):
                if chunk:
                    fh.write(chunk)


def _run_tool(args: List[str], image_name: str) -> None:
    try:
        result = subprocess.run(args, capture_output=True, text=True, check=False)
    except FileNotFoundError:
        raise ImageCreationError(f"{args[0]} is not installed", image_name)
    if result.returncode != 0:
        raise ImageCreationError(
            f"{args[0]} exited with {result.returncode}: {result.stderr.strip()}", image_name
        )


class ImageStore:
    """Resolves, materializes and deletes images in libvirt storage pools."""

    def __init__(
        self,
        backend: LibvirtWrapper,
        image_dir: str = "/var/lib/libvirt/images",
        namespace: str = "kvmcluster",
        download_timeout: float = 60.0,
    ) -> None:
        self.backend = backend
        self.image_dir = image_dir
        self.namespace = namespace
        self.download_timeout = download_timeout

    def pool_name(self, kind: ImageKind, owner: str) -> str:
        return f"{self.namespace}:{kind.value}:{owner}"

    def pool_dir(self, kind: ImageKind, owner: str) -> str:
        return os.path.join(self.image_dir, kind.value, owner)

    def _parse_pool_name(self, pool_name: str) -> Optional[tuple]:
        parts = pool_name.split(":", 2)
        if len(parts) != 3 or parts[0] != self.namespace:
            return None
        try:
            return ImageKind(parts[1]), parts[2]
        except ValueError:
            return None

    def _to_image(self, volume: VolumeRecord, kind: ImageKind, owner: str) -> Image:
        return Image(
            name=volume.name,
            kind=kind,
            owner=owner,
            location=volume.path,
            location_kind=LocationKind.FILE,
            pool=volume.pool,
            path=volume.path,
        )

    async def _find_volume(self, pool_name: str, volume_name: str) -> Optional[VolumeRecord]:
        try:
            volumes = await self.backend.list_volumes(pool_name)
        except ResourceNotFoundError:
            return None
        for volume in volumes:
            if volume.name == volume_name:
                return volume
        return None

    async def resolve_base(
        self, name: str, distribution: Optional[str] = None
    ) -> Optional[Image]:
        """
        Find a distribution image by volume name without creating anything.

        Returns None when no distribution pool holds a volume called ``name``.
        """
        for pool in await self.backend.list_storage_pools():
            parsed = self._parse_pool_name(pool.name)
            if parsed is None or parsed[0] is not ImageKind.DISTRIBUTION:
                continue
            owner = parsed[1]
            if distribution and owner != distribution:
                continue
            volume = await self._find_volume(pool.name, name)
            if volume is not None:
                return self._to_image(volume, ImageKind.DISTRIBUTION, owner)
        return None

    async def ensure_base(self, spec: Image) -> Image:
        """
        Return the distribution image for ``spec``, materializing it on a miss.

        Raises:
            ImageCreationError: If the image is still missing after creation
        """
        existing = await self.resolve_base(spec.name, spec.owner)
        if existing is not None:
            logger.debug(f"Reusing base image {spec.name}", image=spec.name)
            return existing

        if not spec.location:
            raise ImageCreationError("no location to materialize from", spec.name)

        pool_name = self.pool_name(ImageKind.DISTRIBUTION, spec.owner)
        await self.backend.ensure_storage_pool(
            pool_name, self.pool_dir(ImageKind.DISTRIBUTION, spec.owner)
        )

        loop = asyncio.get_running_loop()
        with tempfile.TemporaryDirectory(prefix="kvm-cluster-") as tmp:
            local = os.path.join(tmp, spec.name)
            if spec.location_kind is LocationKind.URL:
                logger.info(
                    f"Downloading base image {spec.name} from {spec.location}",
                    image=spec.name,
                    url=spec.location,
                )
                try:
                    await loop.run_in_executor(
                        None, _download, spec.location, local, self.download_timeout
                    )
                except requests.RequestException as e:
                    raise ImageCreationError(f"download failed: {e}", spec.name)
            else:
                source = os.path.expanduser(spec.location)
                if not os.path.isfile(source):
                    raise ImageCreationError(f"file {source} does not exist", spec.name)
                await loop.run_in_executor(None, shutil.copyfile, source, local)

            await self.backend.upload_volume(pool_name, spec.name, local)

        image = await self.resolve_base(spec.name, spec.owner)
        if image is None:
            raise ImageCreationError("image not found after upload", spec.name)
        logger.info(f"Created base image {spec.name}", image=spec.name, pool=pool_name)
        return image

    async def derive_instance_disk(
        self, instance_name: str, backing: Image, size: str
    ) -> Image:
        """
        Create the copy-on-write root disk for ``instance_name``.

        Calling this again for the same instance returns the existing disk.
        """
        pool_name = self.pool_name(ImageKind.INSTANCE, instance_name)
        existing = await self._find_volume(pool_name, DISK_IMAGE)
        if existing is not None:
            image = self._to_image(existing, ImageKind.INSTANCE, instance_name)
            image.backing = backing
            return image

        await self.backend.ensure_storage_pool(
            pool_name, self.pool_dir(ImageKind.INSTANCE, instance_name)
        )

        loop = asyncio.get_running_loop()
        with tempfile.TemporaryDirectory(prefix="kvm-cluster-") as tmp:
            overlay = os.path.join(tmp, DISK_IMAGE)
            args = [
                "qemu-img", "create", "-f", "qcow2", "-F", "qcow2",
                "-b", backing.path, overlay, size,
            ]
            await loop.run_in_executor(None, _run_tool, args, instance_name)
            volume = await self.backend.upload_volume(pool_name, DISK_IMAGE, overlay)

        logger.debug(f"Derived disk for {instance_name}", instance=instance_name)
        image = self._to_image(volume, ImageKind.INSTANCE, instance_name)
        image.backing = backing
        return image

    async def register_instance_image(
        self, instance_name: str, image_name: str, path: str, fmt: str = "raw"
    ) -> Image:
        """Upload a local artifact into the instance pool unless it is already there."""
        pool_name = self.pool_name(ImageKind.INSTANCE, instance_name)
        existing = await self._find_volume(pool_name, image_name)
        if existing is not None:
            return self._to_image(existing, ImageKind.INSTANCE, instance_name)

        await self.backend.ensure_storage_pool(
            pool_name, self.pool_dir(ImageKind.INSTANCE, instance_name)
        )
        volume = await self.backend.upload_volume(pool_name, image_name, path, fmt=fmt)
        return self._to_image(volume, ImageKind.INSTANCE, instance_name)

    async def delete(self, image: Image) -> None:
        """
        Remove the image volume, and its pool once the pool is empty.

        Missing pools or volumes are ignored; any other backend error propagates.
        """
        pool_name = image.pool or self.pool_name(image.kind, image.owner)
        try:
            await self.backend.delete_volume(pool_name, image.name)
        except ResourceNotFoundError:
            logger.debug(f"Image {image.name} already gone", image=image.name, pool=pool_name)

        try:
            remaining = await self.backend.list_volumes(pool_name)
        except ResourceNotFoundError:
            return
        if remaining:
            return

        path = await self.backend.remove_storage_pool(pool_name)
        if path and os.path.isdir(path):
            await asyncio.get_running_loop().run_in_executor(None, shutil.rmtree, path)
        logger.debug(f"Removed storage pool {pool_name}", pool=pool_name)

    async def list(self, kind: Optional[ImageKind] = None) -> List[Image]:
        images = []
        for pool in await self.backend.list_storage_pools():
            parsed = self._parse_pool_name(pool.name)
            if parsed is None or (kind is not None and parsed[0] is not kind):
                continue
            try:
                volumes = await self.backend.list_volumes(pool.name)
            except ResourceNotFoundError:
                continue
            images.extend(self._to_image(v, parsed[0], parsed[1]) for v in volumes)
        return sorted(images, key=lambda i: (i.kind.value, i.owner, i.name))
