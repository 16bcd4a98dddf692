"""
Security utilities for KVM cluster operations.

This module provides input validation and shell quoting for names and paths
that end up in libvirt XML, pool names and remote shell commands.
"""

import re
import shlex
from pathlib import Path
from typing import Dict, Iterable, List, Any

from .exceptions import ValidationError


SIZE_UNITS = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}


class SecurityValidator:
    """Security validation utilities."""

    # Valid patterns for various inputs
    CLUSTER_NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")
    RESOURCE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")
    HOSTNAME_PATTERN = re.compile(r"^[a-zA-Z0-9.-]+$")
    SIZE_PATTERN = re.compile(r"^(\d+)([KMG]?)$")

    @staticmethod
    def validate_cluster_name(name: str) -> str:
        """
        Validate a cluster name.

        Cluster names become a DNS label inside every instance hostname, so
        they are restricted to lowercase letters, digits and inner hyphens.

        Raises:
            ValidationError: If the name is invalid
        """
        if not name or not isinstance(name, str):
            raise ValidationError("Cluster name must be a non-empty string", "cluster_name")

        if len(name) > 63:
            raise ValidationError("Cluster name must be 63 characters or less", "cluster_name")

        if not SecurityValidator.CLUSTER_NAME_PATTERN.match(name):
            raise ValidationError(
                "Cluster name can only contain lowercase letters, numbers and hyphens",
                "cluster_name",
            )

        return name

    @staticmethod
    def validate_resource_name(name: str, kind: str = "resource") -> str:
        """Validate an image, network or snapshot name."""
        if not name or not isinstance(name, str):
            raise ValidationError(f"{kind} name must be a non-empty string", kind)

        if len(name) > 64:
            raise ValidationError(f"{kind} name must be 64 characters or less", kind)

        if not SecurityValidator.RESOURCE_NAME_PATTERN.match(name):
            raise ValidationError(
                f"{kind} name can only contain letters, numbers, dots, underscores, and hyphens",
                kind,
            )

        return name

    @staticmethod
    def validate_hostname(hostname: str) -> str:
        """
        Validate and sanitize hostname.

        Raises:
            ValidationError: If hostname is invalid
        """
        if not hostname or not isinstance(hostname, str):
            raise ValidationError("Hostname must be a non-empty string", "hostname")

        if len(hostname) > 253:
            raise ValidationError("Hostname must be 253 characters or less", "hostname")

        if not SecurityValidator.HOSTNAME_PATTERN.match(hostname):
            raise ValidationError(
                "Hostname can only contain letters, numbers, dots, and hyphens", "hostname"
            )

        return hostname

    @staticmethod
    def validate_size(size: str) -> str:
        """Validate a qemu-img style size string such as ``10G``."""
        if not isinstance(size, str) or not SecurityValidator.SIZE_PATTERN.match(size.upper()):
            raise ValidationError(f"Invalid size format: {size}", "size")
        return size.upper()

    @staticmethod
    def parse_size(size: str) -> int:
        """Convert a size string (``512M``, ``12G``) to bytes."""
        match = SecurityValidator.SIZE_PATTERN.match(SecurityValidator.validate_size(size))
        number, unit = match.groups()
        value = int(number) * SIZE_UNITS[unit]
        if value <= 0:
            raise ValidationError(f"Size must be positive: {size}", "size")
        return value

    @staticmethod
    def validate_ssh_key_path(key_path: str) -> str:
        """
        Validate SSH private key path.

        Raises:
            ValidationError: If key path is invalid
        """
        if not key_path:
            raise ValidationError("SSH key path cannot be empty", "ssh_key")

        key_file = Path(key_path).expanduser()

        if not key_file.exists():
            raise ValidationError(f"SSH key file not found: {key_path}", "ssh_key")

        if not key_file.is_file():
            raise ValidationError(f"SSH key path is not a file: {key_path}", "ssh_key")

        # Key files should be readable only by the owner
        if key_file.stat().st_mode & 0o077:
            raise ValidationError(
                f"SSH key file has insecure permissions: {key_path}. "
                "Key files should be readable only by the owner (chmod 600).",
                "ssh_key",
            )

        return str(key_file)

    @staticmethod
    def read_public_key(path: str) -> str:
        """Read public key material from ``path``."""
        key_file = Path(path).expanduser()
        try:
            content = key_file.read_text().strip()
        except OSError as e:
            raise ValidationError(f"Cannot read public key {path}: {e}", "public_key")
        if not content:
            raise ValidationError(f"Public key file is empty: {path}", "public_key")
        return content


class CommandBuilder:
    """Secure command building utilities."""

    @staticmethod
    def build_safe_command(template: str, **kwargs: Any) -> str:
        """
        Build a safe shell command with properly quoted parameters.

        Args:
            template: Command template with {param} placeholders
            **kwargs: Parameters to substitute in template

        Returns:
            str: Safe command with quoted parameters
        """
        quoted_kwargs = {}
        for key, value in kwargs.items():
            if value is not None:
                quoted_kwargs[key] = shlex.quote(str(value))
            else:
                quoted_kwargs[key] = ""

        return template.format(**quoted_kwargs)

    @staticmethod
    def build_hosts_entries(hosts: Dict[str, str]) -> List[str]:
        """
        Build commands that append ``<ip> <hostname>`` lines to /etc/hosts.

        Args:
            hosts: Mapping of hostname to IP address
        """
        commands = []
        for hostname, address in sorted(hosts.items()):
            SecurityValidator.validate_hostname(hostname)
            commands.append(
                CommandBuilder.build_safe_command(
                    "echo {line} >> /etc/hosts", line=f"{address} {hostname}"
                )
            )
        return commands

    @staticmethod
    def join(commands: Iterable[str]) -> str:
        """Join a command batch the way it is sent over one session."""
        return "; ".join(commands)
