"""Pytest configuration and fixtures."""

from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

from server_provisioner.config import (
    BackupConfig,
    CertificateConfig,
    HostConfig,
    ProjectConfig,
    PromptConfig,
    ProvisionerConfig,
)
from server_provisioner.exceptions import CommandExecutionError
from server_provisioner.types import CommandResult
from server_provisioner.utils.file import FileManager
from server_provisioner.utils.prompt import Prompter
from server_provisioner.utils.validation import Validator


NGINX_TEMPLATE = """events {
    worker_connections 1024;
}

http {
    upstream app {
        server app:3000;
    }

    server {
        listen 80;
        server_name yourdomain.com www.yourdomain.com;

        location /.well-known/acme-challenge/ {
            root /var/www/certbot;
        }

        # Redirect all HTTP traffic to HTTPS
        # return 301 https://$host$request_uri;

        # For now, proxy to app (remove after SSL is configured)
        location / {
            proxy_pass http://app;
            proxy_set_header Host $host;
        }
    }

    # HTTPS server (uncomment after SSL is configured)
    # server {
    #     listen 443 ssl http2;
    #     server_name yourdomain.com www.yourdomain.com;
    #
    #     ssl_certificate /etc/nginx/ssl/cert.pem;
    #     ssl_certificate_key /etc/nginx/ssl/key.pem;
    #
    #     location / {
    #         proxy_pass http://app;
    #     }
    # }
}
"""


class FakeExecutor:
    """Records commands instead of running them.

    ``results`` maps a command substring to the result returned for any
    command containing it, the longest matching substring winning;
    everything else succeeds with empty output.
    """

    def __init__(self, available: Iterable[str] = ()) -> None:
        self.dry_run = False
        self.commands: List[str] = []
        self.inputs: Dict[str, Optional[str]] = {}
        self.results: Dict[str, CommandResult] = {}
        self.available = set(available)

    def execute(self, cmd, needs_root=False, check=True, timeout=30, input=None, env=None):
        self.commands.append(cmd)
        self.inputs[cmd] = input
        result = CommandResult(True, "", "", 0)
        matches = [fragment for fragment in self.results if fragment in cmd]
        if matches:
            result = self.results[max(matches, key=len)]
        if check and not result.success:
            raise CommandExecutionError(f"Command failed: {cmd}")
        return result

    def probe(self, cmd, timeout=10):
        return self.execute(cmd, check=False)

    def execute_as(self, user, cmd, check=True, timeout=30):
        return self.execute(f"sudo -u {user} -H {cmd}", check=check, timeout=timeout)

    def check_command_available(self, command):
        return command in self.available

    def ran(self, fragment: str) -> bool:
        return any(fragment in cmd for cmd in self.commands)


class FakeSystem:
    """Host facts for a root shell on Ubuntu."""

    def __init__(self, swap: bool = False) -> None:
        self.distro = "ubuntu"
        self.is_root = True
        self.has_apt = True
        self.has_systemd = True
        self.swap = swap

    def swap_active(self) -> bool:
        return self.swap

    def primary_ip(self) -> str:
        return "203.0.113.10"

    def hostname(self) -> str:
        return "testhost"

    def server_facts(self) -> Dict[str, str]:
        return {"OS": "Ubuntu 24.04 LTS"}

    def check_requirements(self) -> List[str]:
        return [] if self.is_root else ["This tool must be run as root (use sudo)"]

    def to_dict(self) -> Dict[str, str]:
        return {"distro": self.distro}


class FakeValidator(Validator):
    """Validator with a fixed set of existing users and homes under tmp."""

    def __init__(self, home_base: Path, users: Iterable[str] = ()) -> None:
        self.home_base = home_base
        self.users = set(users)

    def validate_user_exists(self, username: str) -> bool:
        return username in self.users

    def home_directory(self, username: str, fallback_base: Path = Path("/home")) -> Path:
        return self.home_base / username


def scripted_prompter(answers: Iterable[str], **kwargs) -> Prompter:
    """Prompter that answers from a list; running out is a test failure."""
    queue = list(answers)

    def _input(question: str) -> str:
        if not queue:
            raise AssertionError(f"Unexpected prompt: {question}")
        return queue.pop(0)

    return Prompter(interactive=True, input_func=_input, **kwargs)


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def system() -> FakeSystem:
    return FakeSystem()


@pytest.fixture
def temp_backup_dir(tmp_path: Path) -> Path:
    """Create temporary backup directory."""
    backup_dir = tmp_path / "backups"
    backup_dir.mkdir()
    return backup_dir


@pytest.fixture
def file_manager(temp_backup_dir: Path) -> FileManager:
    return FileManager(temp_backup_dir)


@pytest.fixture
def test_config(tmp_path: Path, temp_backup_dir: Path) -> ProvisionerConfig:
    """Configuration with every filesystem path under tmp_path."""
    etc = tmp_path / "etc"
    host = HostConfig(
        hostname="",
        timezone="",
        root_public_key="",
        install_monitoring=False,
        sshd_config=etc / "ssh" / "sshd_config",
        sshd_drop_in_dir=etc / "ssh" / "sshd_config.d",
        root_ssh_dir=tmp_path / "root" / ".ssh",
        fail2ban_jail=etc / "fail2ban" / "jail.local",
        apt_conf_dir=etc / "apt" / "apt.conf.d",
        docker_daemon_json=etc / "docker" / "daemon.json",
        logrotate_dir=etc / "logrotate.d",
        sysctl_conf=etc / "sysctl.conf",
        fstab=etc / "fstab",
        swapfile=tmp_path / "swapfile",
        motd=etc / "motd",
        hosts_file=etc / "hosts",
    )
    project = ProjectConfig(
        base_dir=tmp_path / "opt",
        sudoers_dir=etc / "sudoers.d",
        home_base=tmp_path / "home",
        source_dir=tmp_path / "src",
    )
    certificate = CertificateConfig(
        letsencrypt_live_dir=etc / "letsencrypt" / "live",
        renewal_script_dir=tmp_path / "opt",
        renewal_log=tmp_path / "ssl-renewal.log",
    )
    return ProvisionerConfig(
        host=host,
        project=project,
        certificate=certificate,
        backup=BackupConfig(directory=temp_backup_dir),
        prompt=PromptConfig(interactive=False),
    )
