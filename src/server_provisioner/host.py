"""Host bootstrap: packages, swap, Docker, firewall, fail2ban and SSH hardening."""

import json
import re
import shlex
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from server_provisioner.config import HostConfig, ProvisionerConfig
from server_provisioner.exceptions import (
    ServiceControlError,
    SystemRequirementError,
    ValidationError,
)
from server_provisioner.reconcile import Reconciler, ReconcileReport, Step
from server_provisioner.system_info import SystemInfo, read_ssh_port
from server_provisioner.types import StepTier
from server_provisioner.utils.command import CommandExecutor
from server_provisioner.utils.file import FileManager
from server_provisioner.utils.prompt import Prompter
from server_provisioner.utils.validation import Validator

logger = structlog.get_logger(__name__)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}
APT_TIMEOUT = 1800

UNATTENDED_UPGRADES = """Unattended-Upgrade::Allowed-Origins {
    "${distro_id}:${distro_codename}-security";
    "${distro_id}ESMApps:${distro_codename}-apps-security";
    "${distro_id}ESM:${distro_codename}-infra-security";
};
Unattended-Upgrade::AutoFixInterruptedDpkg "true";
Unattended-Upgrade::MinimalSteps "true";
Unattended-Upgrade::Remove-Unused-Kernel-Packages "true";
Unattended-Upgrade::Remove-Unused-Dependencies "true";
Unattended-Upgrade::Automatic-Reboot "false";
"""

AUTO_UPGRADES = """APT::Periodic::Update-Package-Lists "1";
APT::Periodic::Download-Upgradeable-Packages "1";
APT::Periodic::AutocleanInterval "7";
APT::Periodic::Unattended-Upgrade "1";
"""

DOCKER_LOGROTATE = """# Docker container logs
/var/lib/docker/containers/*/*.log {
    daily
    missingok
    rotate 7
    compress
    delaycompress
    notifempty
    copytruncate
}
"""

NETWORK_SYSCTLS = [
    "net.core.somaxconn = 1024",
    "net.ipv4.tcp_max_syn_backlog = 2048",
    "net.ipv4.ip_local_port_range = 10000 65000",
    "net.ipv4.tcp_fin_timeout = 30",
]

MOTD = """
╔═══════════════════════════════════════════════════════════╗
║                                                           ║
║            Production Server - Ready for Deploy           ║
║                                                           ║
╚═══════════════════════════════════════════════════════════╝

Quick Commands:
  - Check Docker:      docker ps
  - System stats:      htop
  - Disk usage:        df -h
  - Firewall status:   sudo ufw status
  - Netdata:           http://SERVER_IP:19999

Next Steps:
  1. Run project-setup to configure your project
  2. Each project will have its own user and directory

"""

DOCKER_PACKAGES = [
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "docker-buildx-plugin",
    "docker-compose-plugin",
]

HARDENING_FRAGMENT = "99-hardening.conf"


class HostBootstrapper:
    """Bring a fresh Ubuntu host to the hardened baseline."""

    def __init__(
        self,
        config: ProvisionerConfig,
        dry_run: bool = False,
        executor: Optional[CommandExecutor] = None,
        system: Optional[SystemInfo] = None,
        file_manager: Optional[FileManager] = None,
        prompter: Optional[Prompter] = None,
    ) -> None:
        """Initialize host bootstrapper.

        Args:
            config: Configuration object
            dry_run: If True, only report the plan and log commands
            executor: Command runner, created from ``dry_run`` when omitted
            system: Host facts, detected when omitted
            file_manager: File writer with backups, created when omitted
            prompter: Source of answers for unset settings
        """
        self.config = config
        self.host: HostConfig = config.host
        self.dry_run = dry_run

        self.system = system or SystemInfo()
        self.executor = executor or CommandExecutor(dry_run=dry_run)
        self.file_manager = file_manager or FileManager(
            config.backup.directory, dry_run=dry_run
        )
        self.prompter = prompter or Prompter(
            interactive=config.prompt.interactive,
            assume_yes=config.prompt.assume_yes,
            timeout=config.prompt.timeout,
        )
        self.validator = Validator()

    def preflight_checks(self) -> None:
        """Verify that the host can be bootstrapped.

        Raises:
            SystemRequirementError: If the host does not meet requirements
        """
        issues = self.system.check_requirements()
        if issues:
            for issue in issues:
                logger.error("preflight_issue", issue=issue)
            raise SystemRequirementError("; ".join(issues))
        logger.info("Preflight checks passed", **self.system.to_dict())

    def collect_settings(self) -> None:
        """Prompt for optional settings that were not configured."""
        if self.host.hostname is None and self.prompter.interactive:
            print(f"Current hostname: {self.system.hostname()}")
            self.host.hostname = (
                self.prompter.ask("Enter new hostname (or press Enter to skip)", required=False)
                or None
            )

        if self.host.timezone is None and self.prompter.interactive:
            self.host.timezone = (
                self.prompter.ask(
                    "Enter timezone (e.g., America/New_York) or press Enter to skip",
                    required=False,
                )
                or None
            )

        if self.host.root_public_key is None and self.prompter.interactive:
            self.host.root_public_key = (
                self.prompter.ask(
                    "Paste a public key for root (or press Enter to skip)", required=False
                )
                or None
            )

        if self.host.root_public_key:
            try:
                self.host.root_public_key = self.validator.validate_public_key(
                    self.host.root_public_key
                )
            except ValidationError as e:
                logger.warning("public_key_rejected", error=str(e))
                self.host.root_public_key = None

        if self.host.install_monitoring is None:
            self.host.install_monitoring = self.prompter.confirm(
                "Install monitoring tools (netdata, iotop, iftop, ncdu)?", default=True
            )

    def steps(self) -> List[Step]:
        """Describe every host step in execution order."""
        advisory = StepTier.ADVISORY
        return [
            Step("Set hostname", self._set_hostname, self._hostname_satisfied, advisory),
            Step("Set timezone", self._set_timezone, self._timezone_satisfied, advisory),
            Step("Update system packages", self._update_system, None, advisory),
            Step(
                "Install essential packages",
                self._install_essentials,
                lambda: self._packages_installed(self.host.essential_packages),
                advisory,
            ),
            Step(
                "Configure automatic security updates",
                self._configure_auto_updates,
                self._auto_updates_satisfied,
                advisory,
            ),
            Step("Create swap file", self._create_swap, self.system.swap_active, advisory),
            Step(
                "Install root SSH key",
                self._install_root_key,
                self._root_key_satisfied,
                advisory,
            ),
            Step(
                "Install Docker",
                self._install_docker,
                lambda: self.executor.check_command_available("docker"),
                advisory,
            ),
            Step(
                "Install Node.js",
                self._install_node,
                lambda: not self.host.install_node
                or self.executor.check_command_available("node"),
                advisory,
            ),
            Step(
                "Install system nginx",
                self._install_nginx,
                lambda: self.executor.check_command_available("nginx"),
                advisory,
            ),
            Step("Configure firewall", self._configure_firewall, None, advisory),
            Step(
                "Configure fail2ban",
                self._configure_fail2ban,
                lambda: self._content_matches(self.host.fail2ban_jail, self.fail2ban_jail()),
                advisory,
            ),
            Step(
                "Harden SSH",
                self._harden_ssh,
                lambda: self._content_matches(self._fragment_path(), self.ssh_fragment()),
                advisory,
            ),
            Step(
                "Configure system limits",
                self._configure_limits,
                lambda: self._lines_present(self.host.sysctl_conf, NETWORK_SYSCTLS),
                advisory,
            ),
            Step(
                "Configure log rotation",
                self._configure_logrotate,
                lambda: self._content_matches(
                    self.host.logrotate_dir / "docker-containers", DOCKER_LOGROTATE
                ),
                advisory,
            ),
            Step(
                "Create welcome message",
                self._create_motd,
                lambda: self._content_matches(self.host.motd, MOTD),
                advisory,
            ),
            Step(
                "Install monitoring tools",
                self._install_monitoring,
                lambda: not self.host.install_monitoring
                or self.executor.check_command_available("netdata"),
                advisory,
            ),
            Step("Clean up packages", self._cleanup, None, advisory),
        ]

    def run(self) -> ReconcileReport:
        """Execute the host bootstrap.

        Raises:
            SystemRequirementError: If preflight checks fail
            OperationCancelled: If the operator declines to continue
        """
        self.preflight_checks()

        print("Server Information:")
        for key, value in self.system.server_facts().items():
            print(f"  {key}: {value}")
        print()

        self.prompter.confirm_or_cancel(
            "Continue with server setup?", default=not self.prompter.interactive
        )

        self.collect_settings()

        reconciler = Reconciler(self.steps())
        plan = reconciler.plan()

        print("\nPlan:")
        for item in plan:
            marker = "✓ already done" if item.satisfied else "→ will apply"
            print(f"  {marker:<15} {item.step.name}")
        print()

        if self.dry_run:
            logger.info("Dry run: no changes applied")

        report = reconciler.apply(plan)
        for warning in report.warnings:
            logger.warning("step_needs_manual_attention", detail=warning)
        logger.info(
            "Host bootstrap finished",
            applied=len(report.applied),
            skipped=len(report.skipped),
            warnings=len(report.warnings),
        )
        return report

    # state checks

    def _content_matches(self, path: Path, expected: str) -> bool:
        return path.exists() and path.read_text() == expected

    def _lines_present(self, path: Path, lines: List[str]) -> bool:
        if not path.exists():
            return False
        existing = {line.strip() for line in path.read_text().splitlines()}
        return all(line in existing for line in lines)

    def _packages_installed(self, packages: List[str]) -> bool:
        if not packages:
            return True
        quoted = " ".join(shlex.quote(p) for p in packages)
        return self.executor.probe(f"dpkg -s {quoted}").success

    def _hostname_satisfied(self) -> bool:
        return not self.host.hostname or self.host.hostname == self.system.hostname()

    def _timezone_satisfied(self) -> bool:
        if not self.host.timezone:
            return True
        result = self.executor.probe("timedatectl show -p Timezone --value")
        return result.success and result.stdout.strip() == self.host.timezone

    def _auto_updates_satisfied(self) -> bool:
        return self._content_matches(
            self.host.apt_conf_dir / "50unattended-upgrades", UNATTENDED_UPGRADES
        ) and self._content_matches(self.host.apt_conf_dir / "20auto-upgrades", AUTO_UPGRADES)

    def _root_key_satisfied(self) -> bool:
        key = self.host.root_public_key
        if not key:
            return True
        auth_keys = self.host.root_ssh_dir / "authorized_keys"
        if not auth_keys.exists():
            return False
        blob = key.split()[1]
        return any(
            len(line.split()) >= 2 and line.split()[1] == blob
            for line in auth_keys.read_text().splitlines()
        )

    # templates

    def fail2ban_jail(self) -> str:
        return f"""[DEFAULT]
bantime  = {self.host.fail2ban_bantime}
findtime  = {self.host.fail2ban_findtime}
maxretry = {self.host.fail2ban_maxretry}
destemail = root@localhost
sendername = Fail2Ban

[sshd]
enabled = true
port = ssh
logpath = %(sshd_log)s
backend = systemd

[nginx-http-auth]
enabled = true
port = http,https
logpath = /var/log/nginx/error.log

[nginx-limit-req]
enabled = true
port = http,https
logpath = /var/log/nginx/error.log
maxretry = 10
"""

    def ssh_fragment(self) -> str:
        settings: Dict[str, str] = {
            "PermitRootLogin": self.host.ssh_permit_root_login,
            "PasswordAuthentication": "no",
            "PubkeyAuthentication": "yes",
            "KbdInteractiveAuthentication": "no",
            "UsePAM": "yes",
            "X11Forwarding": "no",
            "PrintMotd": "no",
            "AcceptEnv": "LANG LC_*",
            "ClientAliveInterval": str(self.host.ssh_client_alive_interval),
            "ClientAliveCountMax": str(self.host.ssh_client_alive_count_max),
            "MaxAuthTries": str(self.host.ssh_max_auth_tries),
            "MaxSessions": str(self.host.ssh_max_sessions),
        }
        lines = ["# Hardened SSH Configuration", "# Managed by server-setup"]
        lines.extend(f"{key} {value}" for key, value in settings.items())
        return "\n".join(lines) + "\n"

    def _fragment_path(self) -> Path:
        return self.host.sshd_drop_in_dir / HARDENING_FRAGMENT

    # steps

    def _apt(self, args: str) -> None:
        self.executor.execute(
            f"apt-get {args}", needs_root=True, timeout=APT_TIMEOUT, env=APT_ENV
        )

    def _control_service(self, service: str, action: str) -> None:
        """Control a systemd service.

        Raises:
            ServiceControlError: If service control fails
        """
        result = self.executor.execute(
            f"systemctl {action} {shlex.quote(service)}", needs_root=True, check=False
        )
        if not result.success:
            raise ServiceControlError(f"Service {service} {action} failed: {result.stderr.strip()}")

    def _set_hostname(self) -> None:
        name = self.host.hostname
        self.executor.execute(f"hostnamectl set-hostname {shlex.quote(name)}", needs_root=True)

        hosts = self.host.hosts_file
        if hosts.exists():
            content = self.file_manager.read_file(hosts)
            updated, count = re.subn(r"^127\.0\.1\.1\s.*$", f"127.0.1.1 {name}", content, flags=re.M)
            if not count:
                updated = content.rstrip("\n") + f"\n127.0.1.1 {name}\n"
            self.file_manager.backup_file(hosts)
            self.file_manager.write_file(hosts, updated)
        logger.info("Hostname set", hostname=name)

    def _set_timezone(self) -> None:
        self.executor.execute(
            f"timedatectl set-timezone {shlex.quote(self.host.timezone)}", needs_root=True
        )
        logger.info("Timezone set", timezone=self.host.timezone)

    def _update_system(self) -> None:
        self._apt("update")
        self._apt("upgrade -y")
        self._apt("dist-upgrade -y")
        logger.info("System packages updated")

    def _install_essentials(self) -> None:
        self._apt("install -y " + " ".join(shlex.quote(p) for p in self.host.essential_packages))
        logger.info("Essential packages installed")

    def _configure_auto_updates(self) -> None:
        self.file_manager.write_file(
            self.host.apt_conf_dir / "50unattended-upgrades", UNATTENDED_UPGRADES
        )
        self.file_manager.write_file(self.host.apt_conf_dir / "20auto-upgrades", AUTO_UPGRADES)
        logger.info("Automatic security updates configured")

    def _create_swap(self) -> None:
        swapfile = str(self.host.swapfile)
        logger.info("Creating swap file", size=self.host.swap_size, path=swapfile)

        self.executor.execute(
            f"fallocate -l {self.host.swap_size} {shlex.quote(swapfile)}", needs_root=True
        )
        self.executor.execute(f"chmod 600 {shlex.quote(swapfile)}", needs_root=True)
        self.executor.execute(f"mkswap {shlex.quote(swapfile)}", needs_root=True)
        self.executor.execute(f"swapon {shlex.quote(swapfile)}", needs_root=True)

        self.file_manager.ensure_lines(self.host.fstab, [f"{swapfile} none swap sw 0 0"])

        self.executor.execute(f"sysctl vm.swappiness={self.host.swappiness}", needs_root=True)
        self.executor.execute(
            f"sysctl vm.vfs_cache_pressure={self.host.vfs_cache_pressure}", needs_root=True
        )
        self.file_manager.ensure_lines(
            self.host.sysctl_conf,
            [
                f"vm.swappiness={self.host.swappiness}",
                f"vm.vfs_cache_pressure={self.host.vfs_cache_pressure}",
            ],
        )
        logger.info("Swap file created and configured")

    def _install_root_key(self) -> None:
        ssh_dir = self.host.root_ssh_dir
        auth_keys = ssh_dir / "authorized_keys"
        if not self.dry_run:
            ssh_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        self.file_manager.ensure_lines(auth_keys, [self.host.root_public_key])
        if not self.dry_run:
            auth_keys.chmod(0o600)
        logger.info("Public key added for root", path=str(auth_keys))

    def _install_docker(self) -> None:
        self.executor.execute(
            "apt-get remove -y docker docker-engine docker.io containerd runc",
            needs_root=True,
            check=False,
            env=APT_ENV,
        )
        self.executor.execute("install -m 0755 -d /etc/apt/keyrings", needs_root=True)
        self.executor.execute(
            "curl -fsSL https://download.docker.com/linux/ubuntu/gpg "
            "| gpg --dearmor --yes -o /etc/apt/keyrings/docker.gpg",
            needs_root=True,
            timeout=120,
        )
        self.executor.execute(
            'echo "deb [arch=$(dpkg --print-architecture) signed-by=/etc/apt/keyrings/docker.gpg] '
            'https://download.docker.com/linux/ubuntu $(lsb_release -cs) stable" '
            "> /etc/apt/sources.list.d/docker.list",
            needs_root=True,
        )
        self._apt("update")
        self._apt("install -y " + " ".join(DOCKER_PACKAGES))

        self._control_service("docker", "start")
        self._control_service("docker", "enable")

        daemon = {"log-driver": "json-file", "log-opts": {"max-size": "10m", "max-file": "3"}}
        self.file_manager.write_file(
            self.host.docker_daemon_json, json.dumps(daemon, indent=2) + "\n"
        )
        self._control_service("docker", "restart")
        logger.info("Docker installed and configured")

    def _install_node(self) -> None:
        self.executor.execute(
            f"curl -fsSL https://deb.nodesource.com/setup_{self.host.node_major}.x | bash -",
            needs_root=True,
            timeout=APT_TIMEOUT,
        )
        self._apt("install -y nodejs")
        logger.info("Node.js installed", major=self.host.node_major)

    def _install_nginx(self) -> None:
        self._apt("install -y nginx")
        # projects run nginx in Docker; the system one must not hold port 80
        self._control_service("nginx", "stop")
        self._control_service("nginx", "disable")
        logger.info("Nginx installed (will use Docker nginx)")

    def _configure_firewall(self) -> None:
        ssh_port = read_ssh_port(self.host.sshd_config, self.host.sshd_drop_in_dir)
        commands = [
            "ufw --force reset",
            "ufw default deny incoming",
            "ufw default allow outgoing",
            f"ufw allow {ssh_port}/tcp comment 'SSH'",
            "ufw allow 80/tcp comment 'HTTP'",
            "ufw allow 443/tcp comment 'HTTPS'",
            "ufw --force enable",
        ]
        for cmd in commands:
            self.executor.execute(cmd, needs_root=True)
        logger.info("Firewall configured and enabled", ssh_port=ssh_port)

    def _configure_fail2ban(self) -> None:
        jail = self.host.fail2ban_jail
        self.file_manager.backup_file(jail)
        self.file_manager.write_file(jail, self.fail2ban_jail())
        self._control_service("fail2ban", "restart")
        self._control_service("fail2ban", "enable")
        logger.info("Fail2ban configured and enabled")

    def _harden_ssh(self) -> None:
        """Install the hardening drop-in and restart sshd.

        Raises:
            ValidationError: If sshd rejects the resulting configuration;
                the drop-in is removed again before raising
        """
        fragment = self._fragment_path()
        self.file_manager.backup_file(self.host.sshd_config)
        self.file_manager.backup_file(fragment)

        if self.host.sshd_config.exists():
            main_config = self.host.sshd_config.read_text()
            if "sshd_config.d" not in main_config:
                logger.warning(
                    "sshd_config does not include drop-in directory",
                    path=str(self.host.sshd_config),
                )

        self.file_manager.write_file(fragment, self.ssh_fragment(), mode=0o644)

        result = self.executor.execute("sshd -t", needs_root=True, check=False)
        if not result.success:
            self.file_manager.remove_file(fragment)
            raise ValidationError(
                f"Invalid SSH config, hardening fragment removed: {result.stderr.strip()}"
            )

        try:
            self._control_service("ssh", "restart")
        except ServiceControlError:
            self._control_service("sshd", "restart")

        logger.warning("SSH hardened: password login disabled, make sure your SSH keys work")

    def _configure_limits(self) -> None:
        self.file_manager.backup_file(self.host.sysctl_conf)
        self.file_manager.ensure_lines(self.host.sysctl_conf, NETWORK_SYSCTLS)
        self.executor.execute("sysctl -p", needs_root=True, check=False)
        logger.info("System limits configured")

    def _configure_logrotate(self) -> None:
        self.file_manager.write_file(
            self.host.logrotate_dir / "docker-containers", DOCKER_LOGROTATE
        )
        logger.info("Log rotation configured for Docker containers")

    def _create_motd(self) -> None:
        self.file_manager.write_file(self.host.motd, MOTD)
        logger.info("Custom welcome message created")

    def _install_monitoring(self) -> None:
        self._apt("install -y " + " ".join(shlex.quote(p) for p in self.host.monitoring_packages))
        if "netdata" in self.host.monitoring_packages:
            self._control_service("netdata", "enable")
            self._control_service("netdata", "start")
            logger.info("Netdata dashboard", url=f"http://{self.system.primary_ip()}:19999")
        logger.info("Monitoring tools installed")

    def _cleanup(self) -> None:
        self._apt("autoremove -y")
        self._apt("autoclean")

    def print_summary(self, report: ReconcileReport) -> None:
        """Print what was done and what comes next."""
        server_ip = self.system.primary_ip()
        print("\n" + "━" * 60)
        print("           SERVER SETUP COMPLETE!")
        print("━" * 60 + "\n")
        for name in report.applied:
            print(f"  ✓ {name}")
        for name in report.skipped:
            print(f"  • {name} (already in place)")
        for warning in report.warnings:
            print(f"  ⚠ {warning}")
        if self.file_manager.rollback_points:
            print(f"\nBackups saved in {self.file_manager.backup_dir}:")
            for point in self.file_manager.rollback_points:
                print(f"  {point.original_path} -> {point.backup_path}")
        print(
            f"""
Next steps:
  1. Set up your project:
     sudo project-setup
  2. For HTTPS, once DNS points here:
     sudo ssl-setup <domain> /opt/<project> <project-user> <email>

Server IP: {server_ip}"""
        )
        if self.host.install_monitoring:
            print(f"Netdata Monitoring: http://{server_ip}:19999")
        print()
