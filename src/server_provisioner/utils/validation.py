"""Input validation utilities."""

import ipaddress
import pwd
import re
from pathlib import Path
from typing import Optional

from server_provisioner.exceptions import ValidationError

DEFAULT_FALLBACK_USERNAME = "app-user"
MAX_DEFAULT_NAME_LENGTH = 12

_DOMAIN_LABEL = r"[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
DOMAIN_RE = re.compile(rf"^(?:{_DOMAIN_LABEL}\.)+[a-zA-Z]{{2,63}}$")
EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

PUBLIC_KEY_TYPES = (
    "ssh-rsa",
    "ssh-ed25519",
    "ssh-dss",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "sk-ssh-ed25519@openssh.com",
    "sk-ecdsa-sha2-nistp256@openssh.com",
)


def sanitize_project_name(name: str) -> str:
    """Lowercase a project name and turn spaces into hyphens."""
    return name.strip().lower().replace(" ", "-")


def sanitize_username(name: str) -> str:
    """Lowercase a username and drop everything but letters, digits and hyphens."""
    return "".join(c for c in name.lower() if (c.isascii() and c.isalnum()) or c == "-")


def default_username(project_name: str) -> str:
    """Derive the OS username used when the operator does not pick one.

    Short project names get ``<name>-user``; longer ones would exceed the
    usual 32 character limit comfortably, so a fixed fallback is used.
    """
    if len(project_name) <= MAX_DEFAULT_NAME_LENGTH:
        return f"{project_name}-user"
    return DEFAULT_FALLBACK_USERNAME


def is_valid_domain(domain: Optional[str]) -> bool:
    return bool(domain) and len(domain) <= 253 and DOMAIN_RE.match(domain) is not None


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and EMAIL_RE.match(email) is not None


def normalize_ip(value: str) -> Optional[str]:
    """Return the canonical text form of an IP address, or None if invalid."""
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


class Validator:
    """Validate inputs and system state."""

    @staticmethod
    def validate_domain(domain: Optional[str]) -> str:
        """Validate domain name syntax.

        Args:
            domain: Domain to validate

        Returns:
            The domain, lowercased

        Raises:
            ValidationError: If the domain is malformed
        """
        if not is_valid_domain(domain):
            raise ValidationError(f"Invalid domain format: {domain!r}")
        return domain.lower()

    @staticmethod
    def validate_email(email: Optional[str]) -> str:
        """Validate email address syntax.

        Raises:
            ValidationError: If the address is malformed
        """
        if not is_valid_email(email):
            raise ValidationError(f"Invalid email format: {email!r}")
        return email

    @staticmethod
    def validate_public_key(key: str) -> str:
        """Validate an OpenSSH public key line.

        Only the shape is checked: a recognised key type followed by a
        base64 blob and an optional comment.

        Returns:
            The key, stripped of surrounding whitespace

        Raises:
            ValidationError: If the key is malformed
        """
        key = key.strip()
        parts = key.split()
        if len(parts) < 2 or parts[0] not in PUBLIC_KEY_TYPES:
            raise ValidationError(
                "Invalid public key: must start with one of " + ", ".join(PUBLIC_KEY_TYPES[:4])
            )
        if not re.fullmatch(r"[A-Za-z0-9+/]+={0,3}", parts[1]):
            raise ValidationError("Invalid public key: key data is not base64")
        return key

    @staticmethod
    def validate_user_exists(username: str) -> bool:
        """Check if user exists on system.

        Args:
            username: Username to check

        Returns:
            True if user exists, False otherwise
        """
        try:
            pwd.getpwnam(username)
            return True
        except KeyError:
            return False

    @staticmethod
    def validate_username(username: str) -> None:
        """Validate a POSIX username.

        Raises:
            ValidationError: If the username cannot be created with useradd
        """
        if not username:
            raise ValidationError("Username is empty")
        if len(username) > 32:
            raise ValidationError(f"Username too long: {username}")
        if not re.fullmatch(r"[a-z_][a-z0-9_-]*", username):
            raise ValidationError(f"Invalid username format: {username}")

    @staticmethod
    def home_directory(username: str, fallback_base: Path = Path("/home")) -> Path:
        """Return the home directory of a user."""
        try:
            return Path(pwd.getpwnam(username).pw_dir)
        except KeyError:
            return fallback_base / username
