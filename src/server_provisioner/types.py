"""Type definitions for Server Provisioner."""

from enum import Enum
from typing import NamedTuple, Optional, Tuple


class RepoMode(str, Enum):
    """Ways of populating a project directory."""

    HTTPS = "https"
    SSH = "ssh"
    COPY = "copy"
    SKIP = "skip"


class StepTier(str, Enum):
    """How a failing step affects the rest of the run."""

    FATAL = "fatal"
    ADVISORY = "advisory"


class CommandResult(NamedTuple):
    """Result of command execution."""

    success: bool
    stdout: str
    stderr: str
    return_code: int = 0


class RollbackPoint(NamedTuple):
    """Backup information for rollback."""

    original_path: str
    backup_path: str
    timestamp: str


class DnsRecords(NamedTuple):
    """A and AAAA records a domain resolves to."""

    ipv4: Tuple[str, ...] = ()
    ipv6: Tuple[str, ...] = ()

    @property
    def empty(self) -> bool:
        return not self.ipv4 and not self.ipv6


class ServerAddresses(NamedTuple):
    """Public addresses of this host as seen from the internet."""

    ipv4: Optional[str] = None
    ipv6: Optional[str] = None


class DnsMatch(NamedTuple):
    """Outcome of comparing DNS records with the host's addresses."""

    ipv4_match: bool
    ipv6_match: bool

    @property
    def ok(self) -> bool:
        return self.ipv4_match or self.ipv6_match
