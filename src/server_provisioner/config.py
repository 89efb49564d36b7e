"""Configuration management for Server Provisioner."""

import os
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from server_provisioner.exceptions import ConfigurationError
from server_provisioner.types import RepoMode
from server_provisioner.utils.validation import sanitize_project_name, sanitize_username

DEFAULT_ESSENTIALS = [
    "curl",
    "wget",
    "git",
    "vim",
    "nano",
    "htop",
    "ufw",
    "fail2ban",
    "unattended-upgrades",
    "apt-transport-https",
    "ca-certificates",
    "gnupg",
    "lsb-release",
    "software-properties-common",
    "net-tools",
    "jq",
    "build-essential",
    "dnsutils",
]

DEFAULT_MONITORING = ["netdata", "iotop", "iftop", "ncdu"]


def _split_csv(v: object) -> List[str]:
    if isinstance(v, str):
        return [p.strip() for p in v.split(",") if p.strip()]
    if isinstance(v, (list, tuple)):
        return [str(p).strip() for p in v if str(p).strip()]
    return []


class HostConfig(BaseSettings):
    """Host bootstrap settings."""

    hostname: Optional[str] = Field(default=None)
    timezone: Optional[str] = Field(default=None)
    swap_size: str = Field(default="2G", pattern=r"^\d+[KMG]$")
    swappiness: int = Field(default=10, ge=0, le=100)
    vfs_cache_pressure: int = Field(default=50, ge=0)
    root_public_key: Optional[str] = Field(default=None)
    install_monitoring: Optional[bool] = Field(default=None)
    install_node: bool = Field(default=True)
    node_major: int = Field(default=20, ge=12)
    essential_packages: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_ESSENTIALS)
    )
    monitoring_packages: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_MONITORING)
    )

    ssh_permit_root_login: Literal["yes", "no", "prohibit-password"] = Field(
        default="prohibit-password"
    )
    ssh_max_auth_tries: int = Field(default=3, ge=1, le=10)
    ssh_max_sessions: int = Field(default=5, ge=1, le=100)
    ssh_client_alive_interval: int = Field(default=300, ge=0)
    ssh_client_alive_count_max: int = Field(default=2, ge=0)

    fail2ban_bantime: str = Field(default="1h")
    fail2ban_findtime: str = Field(default="10m")
    fail2ban_maxretry: int = Field(default=5, ge=1)

    sshd_config: Path = Field(default=Path("/etc/ssh/sshd_config"))
    sshd_drop_in_dir: Path = Field(default=Path("/etc/ssh/sshd_config.d"))
    root_ssh_dir: Path = Field(default=Path("/root/.ssh"))
    fail2ban_jail: Path = Field(default=Path("/etc/fail2ban/jail.local"))
    apt_conf_dir: Path = Field(default=Path("/etc/apt/apt.conf.d"))
    docker_daemon_json: Path = Field(default=Path("/etc/docker/daemon.json"))
    logrotate_dir: Path = Field(default=Path("/etc/logrotate.d"))
    sysctl_conf: Path = Field(default=Path("/etc/sysctl.conf"))
    fstab: Path = Field(default=Path("/etc/fstab"))
    swapfile: Path = Field(default=Path("/swapfile"))
    motd: Path = Field(default=Path("/etc/motd"))
    hosts_file: Path = Field(default=Path("/etc/hosts"))

    model_config = SettingsConfigDict(
        env_prefix="HOST_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("essential_packages", "monitoring_packages", mode="before")
    @classmethod
    def parse_packages(cls, v: object) -> List[str]:
        """Parse package lists from comma-separated string or list."""
        return _split_csv(v)

    @field_validator("hostname", "timezone", "root_public_key", mode="before")
    @classmethod
    def blank_to_none(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip() if isinstance(v, str) else v


class ProjectConfig(BaseSettings):
    """Per-project provisioning settings."""

    name: Optional[str] = Field(default=None)
    username: Optional[str] = Field(default=None)
    repo_mode: Optional[RepoMode] = Field(default=None)
    repo_url: Optional[str] = Field(default=None)
    source_dir: Path = Field(default_factory=Path.cwd)
    setup_ssh_key: Optional[bool] = Field(default=None)
    git_host: str = Field(default="github.com")
    base_dir: Path = Field(default=Path("/opt"))
    sudoers_dir: Path = Field(default=Path("/etc/sudoers.d"))
    home_base: Path = Field(default=Path("/home"))
    env_template: str = Field(default=".env.production.example")
    env_file: str = Field(default=".env.production")

    model_config = SettingsConfigDict(
        env_prefix="PROJECT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("name", mode="before")
    @classmethod
    def clean_name(cls, v: object) -> Optional[str]:
        if v is None:
            return None
        name = sanitize_project_name(str(v))
        return name or None

    @field_validator("username", mode="before")
    @classmethod
    def clean_username(cls, v: object) -> Optional[str]:
        if v is None:
            return None
        username = sanitize_username(str(v))
        return username or None

    @property
    def app_dir(self) -> Optional[Path]:
        """Install path of the project, once the name is known."""
        if not self.name:
            return None
        return self.base_dir / self.name


class CertificateConfig(BaseSettings):
    """TLS certificate installation settings."""

    domain: Optional[str] = Field(default=None)
    project_dir: Optional[Path] = Field(default=None)
    project_user: Optional[str] = Field(default=None)
    email: Optional[str] = Field(default=None)
    include_www: Optional[bool] = Field(default=None)

    nameserver: str = Field(default="8.8.8.8")
    ipv4_echo_url: str = Field(default="https://api.ipify.org")
    ipv6_echo_url: str = Field(default="https://api6.ipify.org")
    http_timeout: float = Field(default=5.0, gt=0)

    proxy_service: str = Field(default="nginx")
    compose_files: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["docker-compose.prod.yml", "docker-compose.yml"]
    )
    nginx_conf: str = Field(default="nginx/nginx.conf")
    env_file: str = Field(default=".env.production")
    site_url_key: str = Field(default="NEXT_PUBLIC_SITE_URL")

    letsencrypt_live_dir: Path = Field(default=Path("/etc/letsencrypt/live"))
    renewal_script_dir: Path = Field(default=Path("/opt"))
    renewal_log: Path = Field(default=Path("/var/log/ssl-renewal.log"))
    cron_schedule: str = Field(default="0 3 * * *")

    model_config = SettingsConfigDict(
        env_prefix="SSL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("compose_files", mode="before")
    @classmethod
    def parse_compose_files(cls, v: object) -> List[str]:
        return _split_csv(v)

    @field_validator("domain", "email", "project_user", mode="before")
    @classmethod
    def strip_value(cls, v: object) -> object:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("domain")
    @classmethod
    def lower_domain(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else v


class BackupConfig(BaseSettings):
    """Backup configuration."""

    directory: Path = Field(default=Path("/root/provisioner_backups"))

    model_config = SettingsConfigDict(
        env_prefix="BACKUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def __init__(self, **data: Any) -> None:
        """Initialize backup configuration."""
        explicit = "directory" in data or "BACKUP_DIRECTORY" in os.environ
        super().__init__(**data)
        # Use user home if not root
        if not explicit and os.geteuid() != 0:
            self.directory = Path.home() / "provisioner_backups"


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = Field(default="INFO")
    file: Optional[Path] = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("level")
    @classmethod
    def upper_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return v


class PromptConfig(BaseSettings):
    """Interactive prompt behaviour."""

    interactive: bool = Field(default=True)
    assume_yes: bool = Field(default=False)
    timeout: Optional[float] = Field(default=None, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="PROMPT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class ProvisionerConfig(BaseSettings):
    """Main configuration container."""

    host: HostConfig = Field(default_factory=HostConfig)
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    certificate: CertificateConfig = Field(default_factory=CertificateConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    prompt: PromptConfig = Field(default_factory=PromptConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def from_env(cls) -> "ProvisionerConfig":
        """Create configuration from environment variables."""
        return cls(
            host=HostConfig(),
            project=ProjectConfig(),
            certificate=CertificateConfig(),
            backup=BackupConfig(),
            logging=LoggingConfig(),
            prompt=PromptConfig(),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "ProvisionerConfig":
        """Create configuration from a YAML file layered over the environment.

        Values present in the file take precedence over environment variables.

        Raises:
            ConfigurationError: If the file cannot be read or parsed
        """
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot load config file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")

        sections: Dict[str, Any] = {
            "host": HostConfig,
            "project": ProjectConfig,
            "certificate": CertificateConfig,
            "backup": BackupConfig,
            "logging": LoggingConfig,
            "prompt": PromptConfig,
        }
        unknown = set(data) - set(sections)
        if unknown:
            raise ConfigurationError(
                f"Unknown config sections: {', '.join(sorted(unknown))}"
            )

        try:
            return cls(
                **{
                    name: section_cls(**(data.get(name) or {}))
                    for name, section_cls in sections.items()
                }
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid config file {path}: {e}") from e
