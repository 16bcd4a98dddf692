"""
Custom exceptions for KVM cluster operations.

This module defines all custom exceptions used throughout the cluster provisioning system.
"""


class KVMClusterError(Exception):
    """Base exception for KVM cluster operations."""

    def __init__(self, message: str, error_code: int = 1000) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class ConfigurationError(KVMClusterError):
    """Configuration-related errors."""

    def __init__(self, message: str, error_code: int = 1001) -> None:
        super().__init__(message, error_code=error_code)


class ConnectionError(KVMClusterError):
    """Transient connectivity errors (host not reachable yet, SSH not listening)."""

    def __init__(self, message: str, host: str) -> None:
        super().__init__(f"Connection error to {host}: {message}", error_code=1002)
        self.host = host


class ResourceNotFoundError(KVMClusterError):
    """A pool, volume, network or domain does not exist."""

    def __init__(self, resource_type: str, name: str) -> None:
        super().__init__(f"{resource_type} '{name}' not found", error_code=1003)
        self.resource_type = resource_type
        self.name = name


class AlreadyExistsError(KVMClusterError):
    """A resource already exists."""

    def __init__(self, resource_type: str, name: str) -> None:
        super().__init__(f"{resource_type} '{name}' already exists", error_code=1004)
        self.resource_type = resource_type
        self.name = name


class ImageCreationError(KVMClusterError):
    """An image could not be materialized."""

    def __init__(self, message: str, image_name: str) -> None:
        super().__init__(
            f"Failed to create image '{image_name}': {message}", error_code=1005
        )
        self.image_name = image_name


class ValidationError(ConfigurationError):
    """Validation errors."""

    def __init__(self, message: str, validation_type: str = "general") -> None:
        super().__init__(
            f"Validation error ({validation_type}): {message}", error_code=1007
        )
        self.validation_type = validation_type


class LibvirtError(KVMClusterError):
    """Libvirt API errors."""

    def __init__(self, message: str, operation: str = "unknown") -> None:
        super().__init__(
            f"Libvirt error during {operation}: {message}", error_code=1008
        )
        self.operation = operation


class SSHError(KVMClusterError):
    """SSH-related errors."""

    def __init__(self, message: str, host: str, operation: str = "connection") -> None:
        super().__init__(
            f"SSH error on {host} during {operation}: {message}", error_code=1009
        )
        self.host = host
        self.operation = operation


class AuthenticationError(KVMClusterError):
    """Authentication errors. Never retried."""

    def __init__(self, message: str, host: str, auth_method: str = "key") -> None:
        super().__init__(
            f"Authentication failed for {host} using {auth_method}: {message}",
            error_code=1010,
        )
        self.host = host
        self.auth_method = auth_method


class RemoteCommandError(KVMClusterError):
    """A remote command batch exited non-zero."""

    def __init__(self, message: str, host: str, exit_code: int = -1) -> None:
        super().__init__(
            f"Remote command failed on {host} (exit {exit_code}): {message}",
            error_code=1011,
        )
        self.host = host
        self.exit_code = exit_code


class TimeoutError(KVMClusterError):
    """Timeout errors."""

    def __init__(self, message: str, operation: str, timeout: float) -> None:
        super().__init__(
            f"Timeout during {operation} after {timeout}s: {message}", error_code=1012
        )
        self.operation = operation
        self.timeout = timeout


class OperationCancelledError(KVMClusterError):
    """Operation cancelled errors."""

    def __init__(self, operation: str, target: str) -> None:
        super().__init__(f"{operation} of {target} was cancelled", error_code=1013)
        self.operation = operation
        self.target = target


class NetworkError(KVMClusterError):
    """Network-related errors."""

    def __init__(
        self, message: str, network_name: str, operation: str = "configuration"
    ) -> None:
        super().__init__(
            f"Network error in {network_name} during {operation}: {message}",
            error_code=1015,
        )
        self.network_name = network_name
        self.operation = operation


class UnsupportedHostPlatformError(ConfigurationError):
    """The hypervisor host OS has no machine profile."""

    def __init__(self, distribution: str, version: str) -> None:
        super().__init__(
            f"Unsupported host platform {distribution} {version}", error_code=1016
        )
        self.distribution = distribution
        self.version = version


class BootstrapError(KVMClusterError):
    """The remote bootstrap could not progress to its next phase."""

    def __init__(self, message: str, cluster: str, phase: str) -> None:
        super().__init__(
            f"Bootstrap of cluster '{cluster}' failed in {phase}: {message}",
            error_code=1017,
        )
        self.cluster = cluster
        self.phase = phase


class KubesprayError(KVMClusterError):
    """git or ansible-playbook failed while driving kubespray."""

    def __init__(self, message: str, step: str = "playbook") -> None:
        super().__init__(f"kubespray {step} failed: {message}", error_code=1018)
        self.step = step
