"""Let's Encrypt certificate issuance, installation and renewal for a project."""

import shlex
import shutil
import sys
from pathlib import Path
from typing import Callable, List, Optional

import structlog

from server_provisioner.config import CertificateConfig, ProvisionerConfig
from server_provisioner.dns_check import check_dns, fetch_server_addresses, resolve_records
from server_provisioner.envfile import set_env_value
from server_provisioner.exceptions import (
    CertificateError,
    ConfigRewriteError,
    ConfigurationError,
    DnsMismatchError,
    SystemRequirementError,
    ValidationError,
)
from server_provisioner.nginx import enable_https
from server_provisioner.system_info import SystemInfo
from server_provisioner.types import DnsRecords, ServerAddresses
from server_provisioner.utils.command import CommandExecutor
from server_provisioner.utils.file import FileManager
from server_provisioner.utils.prompt import Prompter
from server_provisioner.utils.validation import Validator

logger = structlog.get_logger(__name__)

CERTBOT_TIMEOUT = 300

FAILURE_HINTS = [
    "Port 80 is blocked by firewall",
    "Another service is using port 80",
    "Rate limit reached (5 failures per hour)",
    "Domain not yet propagated to DNS servers",
]


def merge_crontab(existing: str, script: Path, entry: str) -> str:
    """Return crontab text with exactly one entry for ``script``."""
    kept = [line for line in existing.splitlines() if str(script) not in line]
    kept.append(entry)
    return "\n".join(kept) + "\n"


class ComposeProxy:
    """Stop and start a project's reverse proxy through docker compose."""

    def __init__(
        self,
        executor: CommandExecutor,
        project_dir: Path,
        compose_files: List[str],
        service: str = "nginx",
    ) -> None:
        self.executor = executor
        self.project_dir = project_dir
        self.service = service
        self.compose_file = next(
            (project_dir / name for name in compose_files if (project_dir / name).exists()),
            None,
        )

    def _compose(self, args: str) -> bool:
        if self.compose_file is None:
            logger.warning("No compose file found", project_dir=str(self.project_dir))
            return False

        cd = f"cd {shlex.quote(str(self.project_dir))} && "
        compose_file = shlex.quote(self.compose_file.name)
        for binary in ("docker compose", "docker-compose"):
            result = self.executor.execute(
                f"{cd}{binary} -f {compose_file} {args}",
                needs_root=True,
                check=False,
                timeout=300,
            )
            if result.success:
                return True
        return False

    def stop(self) -> bool:
        """Stop the proxy to free port 80. Failures are only logged."""
        stopped = self._compose(f"stop {shlex.quote(self.service)}")
        if stopped:
            logger.info("Proxy stopped", service=self.service)
        else:
            logger.warning("Could not stop proxy", service=self.service)
        return stopped

    def start(self) -> bool:
        """Bring the project's services back up. Failures are only logged."""
        started = self._compose("up -d")
        if started:
            logger.info("Services started", project_dir=str(self.project_dir))
        else:
            logger.warning(
                "Could not start services, start them manually",
                project_dir=str(self.project_dir),
            )
        return started


def install_certificate_files(
    executor: CommandExecutor,
    live_dir: Path,
    project_dir: Path,
    project_user: str,
    dry_run: bool = False,
) -> Path:
    """Copy issued certificate and key into ``<project>/ssl``.

    The certificate is world-readable (644), the key private (600), both
    owned by the project user.

    Returns:
        The ssl directory

    Raises:
        CertificateError: If the issued files are missing or cannot be copied
    """
    ssl_dir = project_dir / "ssl"
    fullchain = live_dir / "fullchain.pem"
    privkey = live_dir / "privkey.pem"

    if dry_run:
        logger.info("dry_run_copy_certificates", source=str(live_dir), destination=str(ssl_dir))
        return ssl_dir

    try:
        ssl_dir.mkdir(parents=True, exist_ok=True)
        cert_path = ssl_dir / "cert.pem"
        key_path = ssl_dir / "key.pem"
        shutil.copyfile(fullchain, cert_path)
        key_path.touch(mode=0o600, exist_ok=True)
        key_path.chmod(0o600)
        shutil.copyfile(privkey, key_path)
        cert_path.chmod(0o644)
        key_path.chmod(0o600)
    except OSError as e:
        raise CertificateError(f"Failed to copy certificates: {e}") from e

    user = shlex.quote(project_user)
    executor.execute(f"chown -R {user}:{user} {shlex.quote(str(ssl_dir))}", needs_root=True)
    logger.info("Certificates copied", ssl_dir=str(ssl_dir))
    return ssl_dir


class CertificateInstaller:
    """Obtain a certificate for a project's domain and switch it to HTTPS."""

    def __init__(
        self,
        config: ProvisionerConfig,
        dry_run: bool = False,
        executor: Optional[CommandExecutor] = None,
        system: Optional[SystemInfo] = None,
        file_manager: Optional[FileManager] = None,
        prompter: Optional[Prompter] = None,
        validator: Optional[Validator] = None,
        resolver: Callable[..., DnsRecords] = resolve_records,
        address_fetcher: Callable[..., ServerAddresses] = fetch_server_addresses,
    ) -> None:
        self.config = config
        self.cert: CertificateConfig = config.certificate
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
        self.validator = validator or Validator()
        self.resolver = resolver
        self.address_fetcher = address_fetcher
        self.server = ServerAddresses()

    @property
    def domains(self) -> List[str]:
        names = [self.cert.domain]
        if self.cert.include_www:
            names.append(f"www.{self.cert.domain}")
        return names

    @property
    def renewal_script(self) -> Path:
        return self.cert.renewal_script_dir / f"renew-ssl-{self.cert.domain}.sh"

    def run(self) -> None:
        """Issue and install the certificate.

        Raises:
            SystemRequirementError: If not running as root
            ValidationError: If domain, email or project user are invalid
            DnsMismatchError: If the domain does not point at this host
            OperationCancelled: If the operator declines to continue
            CertificateError: If issuance or installation fails
        """
        if not self.system.is_root:
            raise SystemRequirementError("This tool must be run as root (use sudo)")

        self.collect_inputs()
        self.server = self.address_fetcher(
            self.cert.ipv4_echo_url, self.cert.ipv6_echo_url, self.cert.http_timeout
        )
        self._print_configuration()
        self.verify_dns()

        print(
            """
This will:
  1. Install Certbot (if needed)
  2. Stop nginx temporarily
  3. Obtain SSL certificate from Let's Encrypt
  4. Update nginx configuration
  5. Update the environment file
  6. Set up auto-renewal
"""
        )
        self.prompter.confirm_or_cancel("Continue?")

        self.install_certbot()
        proxy = ComposeProxy(
            self.executor, self.cert.project_dir, self.cert.compose_files, self.cert.proxy_service
        )
        proxy.stop()
        try:
            self.obtain_certificate()
            install_certificate_files(
                self.executor,
                self.cert.letsencrypt_live_dir / self.cert.domain,
                self.cert.project_dir,
                self.cert.project_user,
                dry_run=self.dry_run,
            )
            self.update_nginx_config()
            self.update_env_file()
            self.setup_auto_renewal()
        finally:
            proxy.start()

        self.print_summary()

    def collect_inputs(self) -> None:
        """Fill unset values from prompts and validate all of them.

        Raises:
            ValidationError: On malformed domain or email, or unknown user
            ConfigurationError: If the project directory does not exist
        """
        cert = self.cert
        if not cert.domain:
            cert.domain = self.prompter.ask("Enter your domain name (e.g., example.com)").lower()
        cert.domain = self.validator.validate_domain(cert.domain)

        if cert.project_dir is None:
            cert.project_dir = Path(self.prompter.ask("Enter project directory path (e.g., /opt/myapp)"))
        if not cert.project_dir.is_dir():
            raise ConfigurationError(f"Project directory does not exist: {cert.project_dir}")

        if not cert.project_user:
            cert.project_user = self.prompter.ask("Enter project user (e.g., appuser)")
        if not self.validator.validate_user_exists(cert.project_user):
            raise ValidationError(f"User does not exist: {cert.project_user}")

        if not cert.email:
            cert.email = self.prompter.ask("Enter your email for certificate notifications")
        cert.email = self.validator.validate_email(cert.email)

        if cert.include_www is None:
            cert.include_www = self.prompter.confirm(f"Include www.{cert.domain}?")

    def _print_configuration(self) -> None:
        print("\nConfiguration:")
        print(f"  Domain: {self.cert.domain}")
        if self.cert.include_www:
            print(f"  Also: www.{self.cert.domain}")
        print(f"  Project: {self.cert.project_dir}")
        print(f"  User: {self.cert.project_user}")
        print(f"  Email: {self.cert.email}")
        print(f"  Server IPv4: {self.server.ipv4 or 'Not available'}")
        print(f"  Server IPv6: {self.server.ipv6 or 'Not available'}\n")

    def verify_dns(self) -> None:
        """Check that the domain resolves to this host.

        Raises:
            DnsMismatchError: With remediation steps printed beforehand
        """
        records = self.resolver(self.cert.domain, self.cert.nameserver)
        print("Domain DNS records:")
        print(f"  IPv4 (A):    {', '.join(records.ipv4) or 'Not set'}")
        print(f"  IPv6 (AAAA): {', '.join(records.ipv6) or 'Not set'}\n")

        try:
            check_dns(self.cert.domain, records, self.server)
        except DnsMismatchError:
            print("To fix this issue:")
            print("  1. Go to your domain registrar's DNS settings")
            print("  2. Add/Update A record (IPv4):")
            if self.server.ipv4:
                print(f"     Type: A, Name: @, Value: {self.server.ipv4}")
            print("  3. Optionally add AAAA record (IPv6):")
            if self.server.ipv6:
                print(f"     Type: AAAA, Name: @, Value: {self.server.ipv6}")
            print("  4. Wait 5-10 minutes for DNS propagation")
            print("  5. Run this tool again\n")
            raise

    def install_certbot(self) -> None:
        if self.executor.check_command_available("certbot"):
            logger.info("Certbot is already installed")
            return
        self.executor.execute("apt-get update -qq", needs_root=True, timeout=600)
        self.executor.execute(
            "apt-get install -y certbot",
            needs_root=True,
            timeout=600,
            env={"DEBIAN_FRONTEND": "noninteractive"},
        )
        logger.info("Certbot installed")

    def obtain_certificate(self) -> None:
        """Request a certificate with the HTTP-01 standalone challenge.

        Raises:
            CertificateError: If certbot fails
        """
        cmd = (
            "certbot certonly --standalone --non-interactive --agree-tos "
            f"-m {shlex.quote(self.cert.email)}"
        )
        for name in self.domains:
            cmd += f" -d {shlex.quote(name)}"

        logger.info("Obtaining SSL certificate", domains=self.domains)
        result = self.executor.execute(cmd, needs_root=True, check=False, timeout=CERTBOT_TIMEOUT)
        if not result.success:
            print("\nCommon reasons for failure:")
            for hint in FAILURE_HINTS:
                print(f"  • {hint}")
            print("\nCheck certbot logs:\n  sudo tail -50 /var/log/letsencrypt/letsencrypt.log\n")
            raise CertificateError(
                f"Failed to obtain SSL certificate: {result.stderr.strip() or result.stdout.strip()}"
            )
        logger.info("SSL certificate obtained")

    def update_nginx_config(self) -> bool:
        """Switch the project's nginx config to HTTPS; failures are advisory."""
        conf = self.cert.project_dir / self.cert.nginx_conf
        try:
            enable_https(conf, self.cert.domain, bool(self.cert.include_www), self.file_manager)
        except (ConfigRewriteError, OSError) as e:
            logger.warning("Failed to update nginx config, update it manually", error=str(e))
            return False
        return True

    def update_env_file(self) -> bool:
        """Point the public site URL at HTTPS; failures are advisory."""
        env_path = self.cert.project_dir / self.cert.env_file
        try:
            set_env_value(
                env_path, self.cert.site_url_key, f"https://{self.cert.domain}", self.file_manager
            )
        except (ConfigRewriteError, OSError) as e:
            logger.warning(
                "Failed to update env file, update it manually", path=str(env_path), error=str(e)
            )
            return False
        return True

    def renewal_command(self) -> str:
        renew = shutil.which("ssl-renew") or str(Path(sys.executable).parent / "ssl-renew")
        return " ".join(
            shlex.quote(part)
            for part in [
                renew,
                "--domain",
                self.cert.domain,
                "--project-dir",
                str(self.cert.project_dir),
                "--project-user",
                self.cert.project_user,
                "--non-interactive",
            ]
        )

    def setup_auto_renewal(self) -> None:
        """Install the renewal script and register it in root's crontab."""
        script = self.renewal_script
        self.file_manager.write_file(
            script,
            f"""#!/bin/sh
# Renew the certificate for {self.cert.domain} and reinstall it into {self.cert.project_dir}
set -e
{self.renewal_command()}
echo "[$(date)] SSL certificate renewed successfully"
""",
            mode=0o755,
        )

        existing = self.executor.execute("crontab -l", needs_root=True, check=False)
        current = existing.stdout if existing.success else ""
        entry = f"{self.cert.cron_schedule} {script} >> {self.cert.renewal_log} 2>&1"
        self.executor.execute(
            "crontab -", needs_root=True, input=merge_crontab(current, script, entry)
        )
        logger.info("Auto-renewal configured", script=str(script), schedule=self.cert.cron_schedule)

    def print_summary(self) -> None:
        print("\n" + "━" * 60)
        print("              SSL/HTTPS SETUP COMPLETE!")
        print("━" * 60 + "\n")
        print("Your site is now accessible at:")
        for name in self.domains:
            print(f"  • https://{name}")
        print(
            f"""
Certificate renewal runs daily ({self.cert.cron_schedule}); certbot renews before the 60-day mark.
HTTP traffic will automatically redirect to HTTPS.

To verify SSL is working:
  curl -I https://{self.cert.domain}
To check certificate status:
  sudo certbot certificates
"""
        )


class CertificateRenewer:
    """Renew an installed certificate and copy it into the project again."""

    def __init__(
        self,
        config: ProvisionerConfig,
        dry_run: bool = False,
        executor: Optional[CommandExecutor] = None,
        validator: Optional[Validator] = None,
    ) -> None:
        self.cert: CertificateConfig = config.certificate
        self.dry_run = dry_run
        self.executor = executor or CommandExecutor(dry_run=dry_run)
        self.validator = validator or Validator()

    def run(self) -> None:
        """Renew the certificate; the proxy is restarted whatever happens.

        Raises:
            ConfigurationError: If domain, project directory or user are missing
            CertificateError: If renewal or installation fails
        """
        cert = self.cert
        if not (cert.domain and cert.project_dir and cert.project_user):
            raise ConfigurationError("domain, project directory and project user are required")
        cert.domain = self.validator.validate_domain(cert.domain)
        if not cert.project_dir.is_dir():
            raise ConfigurationError(f"Project directory does not exist: {cert.project_dir}")

        proxy = ComposeProxy(self.executor, cert.project_dir, cert.compose_files, cert.proxy_service)
        proxy.stop()
        try:
            result = self.executor.execute(
                f"certbot renew --standalone --quiet --cert-name {shlex.quote(cert.domain)}",
                needs_root=True,
                check=False,
                timeout=CERTBOT_TIMEOUT,
            )
            if not result.success:
                raise CertificateError(f"Certificate renewal failed: {result.stderr.strip()}")
            install_certificate_files(
                self.executor,
                cert.letsencrypt_live_dir / cert.domain,
                cert.project_dir,
                cert.project_user,
                dry_run=self.dry_run,
            )
        finally:
            proxy.start()
        logger.info("SSL certificate renewed", domain=cert.domain)
