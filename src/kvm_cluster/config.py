"""
Configuration management for KVM cluster operations.

This module handles loading and validating configuration from files and environment variables.
"""

import ipaddress
import os
import yaml
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict

from .exceptions import ConfigurationError
from .logging import logger


DEFAULT_IMAGE_URL = (
    "https://cloud-images.ubuntu.com/releases/focal/release-20210315/"
    "ubuntu-20.04-server-cloudimg-amd64.img"
)


class AppConfig(BaseModel):
    """Application configuration with Pydantic validation.

    Configuration can be loaded from:
    1. Explicit config file path
    2. Default config file locations
    3. Environment variables (highest priority)

    Environment variables:
    - KVM_CLUSTER_LIBVIRT_URI: libvirt connection URI
    - KVM_CLUSTER_NAMESPACE: Prefix for storage pool names
    - KVM_CLUSTER_IMAGE_DIR: Root directory for storage pools
    - KVM_CLUSTER_NETWORK: Default network name
    - KVM_CLUSTER_SUBNET: Default network subnet
    - KVM_CLUSTER_SUFFIX: Default DNS suffix
    - KVM_CLUSTER_PUBLIC_KEY_PATH: Public key installed on instances
    - KVM_CLUSTER_SSH_KEY_PATH: Private key used for readiness checks and bootstrap
    - KVM_CLUSTER_SSH_PORT: SSH port on instances
    - KVM_CLUSTER_KNOWN_HOSTS_FILE: Path to known_hosts file
    - KVM_CLUSTER_IP_WAIT_TIMEOUT: Seconds to wait for a DHCP lease
    - KVM_CLUSTER_KUBECONFIG: Kubeconfig that cluster credentials are merged into
    - KVM_CLUSTER_CREDENTIALS_DIR: Directory for per-cluster admin kubeconfigs
    - KVM_CLUSTER_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    model_config = ConfigDict(extra="forbid")  # Reject unknown fields

    libvirt_uri: str = "qemu:///system"
    namespace: str = Field(default="kvmcluster", pattern=r"^[a-zA-Z0-9_-]+$")
    image_dir: str = "/var/lib/libvirt/images"

    # Default base image
    default_image_name: str = "ubuntu2004"
    default_image_distribution: str = "ubuntu"
    default_image_url: str = DEFAULT_IMAGE_URL

    # Default network
    default_network_name: str = "kvmcluster"
    default_subnet: str = "192.168.66.0/24"
    default_gateway: Optional[str] = None
    default_dns_server: Optional[str] = None
    default_dhcp: bool = True
    default_network_type: str = "bridge"

    default_suffix: str = "local"
    public_key_path: str = "~/.ssh/id_rsa.pub"

    ssh_key_path: Optional[str] = None
    ssh_username: str = "root"
    ssh_port: int = Field(default=22, gt=0, le=65535, description="SSH port on instances")
    known_hosts_file: str = "~/.ssh/known_hosts"

    ip_wait_timeout: float = Field(
        default=300, gt=0, description="Seconds to wait for an instance IP"
    )
    ip_poll_interval: float = Field(default=2.0, gt=0)
    ssh_ready_attempts: int = Field(default=60, gt=0)
    ssh_ready_interval: float = Field(default=2.0, ge=0)
    command_timeout: int = Field(
        default=1800, gt=0, description="Timeout for one remote command batch"
    )

    kubeconfig_path: str = "~/.kube/config"
    credentials_dir: str = "~/.config/kvm-cluster/clusters"
    unprivileged_user: str = "kvmcluster"

    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        v = v.upper()
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v

    @field_validator("default_network_type")
    @classmethod
    def validate_network_type(cls, v: str) -> str:
        v = v.lower()
        if v not in ("bridge", "ovs"):
            raise ValueError("default_network_type must be 'bridge' or 'ovs'")
        return v

    @field_validator("default_subnet")
    @classmethod
    def validate_subnet(cls, v: str) -> str:
        ipaddress.IPv4Network(v, strict=True)
        return v

    @model_validator(mode="after")
    def validate_addresses_in_subnet(self) -> "AppConfig":
        subnet = ipaddress.IPv4Network(self.default_subnet)
        for label, value in (
            ("default_gateway", self.default_gateway),
            ("default_dns_server", self.default_dns_server),
        ):
            if value is not None and ipaddress.IPv4Address(value) not in subnet:
                raise ValueError(f"{label} {value} is not inside {subnet}")
        return self


class ConfigLoader:
    """Loads and validates configuration."""

    DEFAULT_PATHS = [
        "~/.config/kvm-cluster/config.yaml",
        "/etc/kvm-cluster/config.yaml",
        "config.yaml",
    ]

    ENV_MAPPINGS: Dict[str, Any] = {
        "KVM_CLUSTER_LIBVIRT_URI": "libvirt_uri",
        "KVM_CLUSTER_NAMESPACE": "namespace",
        "KVM_CLUSTER_IMAGE_DIR": "image_dir",
        "KVM_CLUSTER_NETWORK": "default_network_name",
        "KVM_CLUSTER_SUBNET": "default_subnet",
        "KVM_CLUSTER_SUFFIX": "default_suffix",
        "KVM_CLUSTER_PUBLIC_KEY_PATH": "public_key_path",
        "KVM_CLUSTER_SSH_KEY_PATH": "ssh_key_path",
        "KVM_CLUSTER_SSH_PORT": ("ssh_port", int),
        "KVM_CLUSTER_KNOWN_HOSTS_FILE": "known_hosts_file",
        "KVM_CLUSTER_IP_WAIT_TIMEOUT": ("ip_wait_timeout", float),
        "KVM_CLUSTER_KUBECONFIG": "kubeconfig_path",
        "KVM_CLUSTER_CREDENTIALS_DIR": "credentials_dir",
        "KVM_CLUSTER_LOG_LEVEL": "log_level",
    }

    def __init__(self) -> None:
        self.logger = logger

    def find_config_file(self) -> Optional[str]:
        for path in self.DEFAULT_PATHS:
            path = os.path.expanduser(path)
            if os.path.exists(path):
                return path
        return None

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """
        Load configuration from file and environment variables.

        Priority (highest to lowest):
        1. Environment variables
        2. Config file (explicit path or default locations)
        3. Default values

        Args:
            config_path: Path to configuration file. If None, looks in default locations.

        Returns:
            AppConfig: Loaded configuration
        """
        if config_path:
            config_data = self._load_data_from_file(config_path)
        else:
            config_data = {}
            path = self.find_config_file()
            if path:
                self.logger.info(f"Loading configuration from {path}", path=path)
                config_data = self._load_data_from_file(path)
            else:
                self.logger.debug(
                    "No configuration file found, using defaults and environment variables"
                )

        config_data = self._apply_env_overrides(config_data)

        try:
            return AppConfig(**config_data)
        except ValueError as e:
            self.logger.error(f"Invalid configuration: {e}")
            raise ConfigurationError(f"Invalid configuration: {e}")

    def write_default(self, path: str, overwrite: bool = False) -> AppConfig:
        """Write a config file populated with the default values."""
        path = os.path.expanduser(path)
        if os.path.exists(path) and not overwrite:
            raise ConfigurationError(f"Configuration file {path} already exists")
        config = AppConfig()
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(config.model_dump(), f, default_flow_style=False, sort_keys=False)
        self.logger.info(f"Wrote default configuration to {path}", path=path)
        return config

    def _apply_env_overrides(self, config_data: dict) -> dict:
        """Apply environment variable overrides to config data."""
        for env_var, mapping in self.ENV_MAPPINGS.items():
            env_value = os.getenv(env_var)
            if env_value is None:
                continue
            if isinstance(mapping, tuple):
                config_key, converter = mapping
                try:
                    config_data[config_key] = converter(env_value)
                except (ValueError, TypeError) as e:
                    self.logger.warning(
                        f"Invalid value for {env_var}: {env_value}, ignoring. Error: {e}"
                    )
                    continue
            else:
                config_data[mapping] = env_value
            self.logger.debug(f"Applied environment override: {env_var}={env_value}")

        return config_data

    def _load_data_from_file(self, path: str) -> dict:
        """Load configuration data from a specific file."""
        try:
            with open(os.path.expanduser(path), "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            self.logger.error(f"Failed to parse configuration file {path}: {e}", path=path)
            raise ConfigurationError(f"Failed to parse configuration file: {e}")
        except OSError as e:
            self.logger.error(f"Failed to load configuration from {path}: {e}", path=path)
            raise ConfigurationError(f"Failed to load configuration: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid configuration format in {path}")
        return data


# Global config loader
config_loader = ConfigLoader()
