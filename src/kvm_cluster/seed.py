"""
cloud-init NoCloud seed generation.
"""

import asyncio
import os
import subprocess
from typing import Any, Dict, List

import yaml

from .exceptions import ImageCreationError
from .models import Instance, Network

SEED_LABEL = "cidata"
ISO_TOOLS = ("genisoimage", "mkisofs")


def render_user_data(instance: Instance, network: Network, user: str) -> str:
    keys = [instance.public_key] if instance.public_key else []
    document: Dict[str, Any] = {
        "hostname": instance.name,
        "fqdn": instance.name,
        "preserve_hostname": False,
        "disable_root": False,
        "users": [
            {
                "name": user,
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "shell": "/bin/bash",
                "ssh_authorized_keys": keys,
            },
            {"name": "root", "ssh_authorized_keys": keys},
        ],
        "write_files": [
            {
                "path": "/etc/systemd/resolved.conf",
                "content": f"[Resolve]\nDNS={network.dns_server}\n",
            }
        ],
        "runcmd": [["systemctl", "restart", "systemd-resolved"]],
    }
    return "#cloud-config\n" + yaml.safe_dump(document, default_flow_style=False, sort_keys=False)


def render_meta_data(instance: Instance) -> str:
    return yaml.safe_dump(
        {"instance-id": instance.name, "local-hostname": instance.name},
        default_flow_style=False,
        sort_keys=False,
    )


def _make_iso(output: str, files: List[str], instance_name: str) -> None:
    for tool in ISO_TOOLS:
        args = [tool, "-output", output, "-volid", SEED_LABEL, "-joliet", "-rock", *files]
        try:
            result = subprocess.run(args, capture_output=True, text=True, check=False)
        except FileNotFoundError:
            continue
        if result.returncode != 0:
            raise ImageCreationError(
                f"{tool} exited with {result.returncode}: {result.stderr.strip()}",
                instance_name,
            )
        return
    raise ImageCreationError(
        f"none of {', '.join(ISO_TOOLS)} is installed", instance_name
    )


class SeedBuilder:
    """Writes user-data/meta-data and packs them into a ``cidata`` ISO."""

    def __init__(self, user: str = "kvmcluster") -> None:
        self.user = user

    async def build(self, instance: Instance, network: Network, workdir: str) -> str:
        """Build the seed ISO for ``instance`` inside ``workdir`` and return its path."""
        user_data = os.path.join(workdir, "user-data")
        meta_data = os.path.join(workdir, "meta-data")
        with open(user_data, "w") as f:
            f.write(render_user_data(instance, network, self.user))
        with open(meta_data, "w") as f:
            f.write(render_meta_data(instance))

        output = os.path.join(workdir, "cloudinit.iso")
        await asyncio.get_running_loop().run_in_executor(
            None, _make_iso, output, [user_data, meta_data], instance.name
        )
        return output
