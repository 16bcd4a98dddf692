"""KVM Cluster - provision clusters of KVM virtual machines on one libvirt host."""

__version__ = "0.1.0"
__description__ = "KVM cluster provisioning utility"

# Import main classes for easy access
from .client import KVMClusterClient
from .models import (
    Cluster,
    ClusterSpec,
    Image,
    ImageKind,
    Instance,
    InstanceState,
    Network,
    NetworkType,
    Resources,
    Role,
    Snapshot,
)
from .exceptions import (
    KVMClusterError,
    ConfigurationError,
    ConnectionError,
    ResourceNotFoundError,
    ImageCreationError,
    ValidationError,
    BootstrapError,
)
from .security import SecurityValidator, CommandBuilder

__all__ = [
    "__version__",
    "__description__",
    "KVMClusterClient",
    "Cluster",
    "ClusterSpec",
    "Image",
    "ImageKind",
    "Instance",
    "InstanceState",
    "Network",
    "NetworkType",
    "Resources",
    "Role",
    "Snapshot",
    "KVMClusterError",
    "ConfigurationError",
    "ConnectionError",
    "ResourceNotFoundError",
    "ImageCreationError",
    "ValidationError",
    "BootstrapError",
    "SecurityValidator",
    "CommandBuilder",
]
