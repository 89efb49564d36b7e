"""Server Provisioner - Ubuntu host bootstrap, per-project setup and HTTPS certificates."""

__version__ = "1.0.0"
__author__ = "DevOps Team"
__license__ = "MIT"

from server_provisioner.exceptions import (
    ProvisionerError,
    ConfigurationError,
    SystemRequirementError,
    ValidationError,
)
from server_provisioner.certificate import CertificateInstaller, CertificateRenewer
from server_provisioner.host import HostBootstrapper
from server_provisioner.project import ProjectProvisioner
from server_provisioner.system_info import SystemInfo

__all__ = [
    "HostBootstrapper",
    "ProjectProvisioner",
    "CertificateInstaller",
    "CertificateRenewer",
    "SystemInfo",
    "ProvisionerError",
    "ConfigurationError",
    "SystemRequirementError",
    "ValidationError",
]
