"""Custom exceptions for Server Provisioner."""

from typing import Optional, Sequence


class ProvisionerError(Exception):
    """Base exception for all provisioner errors."""

    pass


class ConfigurationError(ProvisionerError):
    """Raised when configuration is invalid or a required value is missing."""

    pass


class SystemRequirementError(ProvisionerError):
    """Raised when system requirements are not met."""

    pass


class ValidationError(ProvisionerError):
    """Raised when validation fails."""

    pass


class CommandExecutionError(ProvisionerError):
    """Raised when command execution fails."""

    pass


class ServiceControlError(ProvisionerError):
    """Raised when service control operation fails."""

    pass


class RepositoryError(ProvisionerError):
    """Raised when cloning or copying the project repository fails."""

    pass


class CertificateError(ProvisionerError):
    """Raised when certificate issuance or installation fails."""

    pass


class DnsMismatchError(ProvisionerError):
    """Raised when a domain does not resolve to this server."""

    def __init__(
        self,
        message: str,
        resolved: Sequence[str] = (),
        server_ipv4: Optional[str] = None,
        server_ipv6: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.resolved = list(resolved)
        self.server_ipv4 = server_ipv4
        self.server_ipv6 = server_ipv6


class PromptTimeoutError(ProvisionerError):
    """Raised when an interactive prompt is not answered in time."""

    pass


class OperationCancelled(ProvisionerError):
    """Raised when the operator declines a confirmation."""

    pass


class ConfigRewriteError(ProvisionerError):
    """Raised when a project config file cannot be rewritten safely."""

    pass
