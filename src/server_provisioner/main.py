"""CLI entry points for Server Provisioner."""

import argparse
import sys
from pathlib import Path
from typing import Callable, List, NoReturn, Optional

from server_provisioner import __version__
from server_provisioner.certificate import CertificateInstaller, CertificateRenewer
from server_provisioner.config import ProvisionerConfig
from server_provisioner.exceptions import OperationCancelled, ProvisionerError
from server_provisioner.host import HostBootstrapper
from server_provisioner.project import ProjectProvisioner
from server_provisioner.types import RepoMode
from server_provisioner.utils.log import configure_logging
from server_provisioner.utils.validation import sanitize_project_name, sanitize_username

YES_NO = {"yes": True, "y": True, "no": False, "n": False}


def _base_parser(prog: str, description: str, epilog: str = "") -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=prog,
        description=description,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=epilog,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, help="Path to configuration file (YAML)")
    parser.add_argument(
        "--dry-run", action="store_true", help="Simulate changes without applying them"
    )
    parser.add_argument("--backup-dir", type=Path, help="Custom backup directory")
    parser.add_argument(
        "--non-interactive",
        action="store_true",
        help="Never prompt; fail when a required value is missing",
    )
    parser.add_argument(
        "-y", "--yes", action="store_true", help="Answer yes to every confirmation"
    )
    parser.add_argument(
        "--timeout", type=float, help="Seconds to wait for each prompt before giving up"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Suppress non-error output")
    return parser


def load_config(args: argparse.Namespace) -> ProvisionerConfig:
    """Load configuration from the environment or a YAML file, then apply CLI overrides.

    Args:
        args: Parsed command-line arguments

    Returns:
        Configuration object
    """
    if args.config:
        config = ProvisionerConfig.from_yaml(args.config)
    else:
        config = ProvisionerConfig.from_env()

    if args.backup_dir:
        config.backup.directory = args.backup_dir
    if args.non_interactive:
        config.prompt.interactive = False
    if args.yes:
        config.prompt.assume_yes = True
    if args.timeout:
        config.prompt.timeout = args.timeout

    if args.verbose:
        config.logging.level = "DEBUG"
    elif args.quiet:
        config.logging.level = "WARNING"
    return config


def _run(args: argparse.Namespace, action: Callable[[ProvisionerConfig], None]) -> NoReturn:
    """Run ``action`` and translate its outcome into an exit code.

    Raises:
        SystemExit: Always exits with appropriate code
    """
    if not sys.platform.startswith("linux"):
        print("Error: This tool only supports Linux systems", file=sys.stderr)
        sys.exit(1)

    try:
        config = load_config(args)
        configure_logging(config.logging.level, config.logging.file)
        if args.dry_run and not args.quiet:
            print("🔍 DRY RUN MODE - No changes will be applied\n")
        action(config)
        sys.exit(0)

    except KeyboardInterrupt:
        print("\n\n⚠️  Interrupted by user", file=sys.stderr)
        sys.exit(130)

    except OperationCancelled as e:
        print(f"\n{e}")
        sys.exit(0)

    except ProvisionerError as e:
        print(f"\n❌ Error: {e}", file=sys.stderr)
        sys.exit(1)

    except Exception as e:
        print(f"\n❌ Unexpected error: {e}", file=sys.stderr)
        if args.verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)


def server_main(argv: Optional[List[str]] = None) -> NoReturn:
    """Bootstrap a fresh Ubuntu host."""
    parser = _base_parser(
        "server-setup",
        "Bring a fresh Ubuntu server to a hardened, Docker-ready baseline",
        epilog="""
Examples:
  sudo server-setup
  sudo server-setup --hostname web-1 --timezone Europe/Berlin --yes
  sudo server-setup --dry-run

Environment variables use the HOST_ prefix, e.g. HOST_SWAP_SIZE=4G.
        """,
    )
    parser.add_argument("--hostname", help="Hostname to set")
    parser.add_argument("--timezone", help="Timezone to set, e.g. America/New_York")
    parser.add_argument("--root-key", help="Public key to add to root's authorized_keys")
    parser.add_argument("--swap-size", help="Swap file size, e.g. 2G")
    monitoring = parser.add_mutually_exclusive_group()
    monitoring.add_argument(
        "--monitoring", dest="monitoring", action="store_true", default=None,
        help="Install monitoring tools",
    )
    monitoring.add_argument(
        "--no-monitoring", dest="monitoring", action="store_false",
        help="Skip monitoring tools",
    )
    parser.add_argument("--skip-node", action="store_true", help="Do not install Node.js")
    args = parser.parse_args(argv)

    def action(config: ProvisionerConfig) -> None:
        host = config.host
        if args.hostname:
            host.hostname = args.hostname
        if args.timezone:
            host.timezone = args.timezone
        if args.root_key:
            host.root_public_key = args.root_key
        if args.swap_size:
            host.swap_size = args.swap_size
        if args.monitoring is not None:
            host.install_monitoring = args.monitoring
        if args.skip_node:
            host.install_node = False

        bootstrapper = HostBootstrapper(config, dry_run=args.dry_run)
        report = bootstrapper.run()
        if not args.quiet:
            bootstrapper.print_summary(report)

    _run(args, action)


def project_main(argv: Optional[List[str]] = None) -> NoReturn:
    """Provision an isolated project user and directory."""
    parser = _base_parser(
        "project-setup",
        "Create a per-project user, sudoers allowlist, SSH key and checkout",
        epilog="""
Examples:
  sudo project-setup
  sudo project-setup --name my-app --repo-mode https --repo-url https://github.com/me/app.git

Environment variables use the PROJECT_ prefix, e.g. PROJECT_BASE_DIR=/srv.
        """,
    )
    parser.add_argument("--name", help="Project name")
    parser.add_argument("--user", help="Project username (default: <name>-user)")
    parser.add_argument(
        "--repo-mode", choices=[m.value for m in RepoMode], help="How to populate the project"
    )
    parser.add_argument("--repo-url", help="Repository URL to clone")
    parser.add_argument("--source-dir", type=Path, help="Directory to copy in copy mode")
    ssh_key = parser.add_mutually_exclusive_group()
    ssh_key.add_argument(
        "--ssh-key", dest="ssh_key", action="store_true", default=None,
        help="Generate a deploy SSH key",
    )
    ssh_key.add_argument(
        "--no-ssh-key", dest="ssh_key", action="store_false", help="Skip SSH key setup"
    )
    args = parser.parse_args(argv)

    def action(config: ProvisionerConfig) -> None:
        project = config.project
        if args.name:
            project.name = sanitize_project_name(args.name) or None
        if args.user:
            project.username = sanitize_username(args.user) or None
        if args.repo_mode:
            project.repo_mode = RepoMode(args.repo_mode)
        if args.repo_url:
            project.repo_url = args.repo_url
        if args.source_dir:
            project.source_dir = args.source_dir
        if args.ssh_key is not None:
            project.setup_ssh_key = args.ssh_key

        ProjectProvisioner(config, dry_run=args.dry_run).run()

    _run(args, action)


def ssl_main(argv: Optional[List[str]] = None) -> NoReturn:
    """Obtain a Let's Encrypt certificate and switch a project to HTTPS."""
    parser = _base_parser(
        "ssl-setup",
        "Obtain a Let's Encrypt certificate for a project and enable HTTPS",
        epilog="""
Examples:
  sudo ssl-setup example.com /opt/my-app my-app-user admin@example.com yes
  sudo ssl-setup            # prompts for every value

Environment variables use the SSL_ prefix, e.g. SSL_EMAIL=admin@example.com.
        """,
    )
    parser.add_argument("domain", nargs="?", help="Domain name, e.g. example.com")
    parser.add_argument("project_dir", nargs="?", type=Path, help="Project directory")
    parser.add_argument("project_user", nargs="?", help="Project user")
    parser.add_argument("email", nargs="?", help="Email for certificate notifications")
    parser.add_argument(
        "include_www", nargs="?", help="Also certify www.<domain> (yes/no; anything else asks)"
    )
    args = parser.parse_args(argv)

    def action(config: ProvisionerConfig) -> None:
        _apply_certificate_args(config, args)
        if args.include_www is not None:
            config.certificate.include_www = YES_NO.get(args.include_www.strip().lower())
        CertificateInstaller(config, dry_run=args.dry_run).run()

    _run(args, action)


def renew_main(argv: Optional[List[str]] = None) -> NoReturn:
    """Renew an installed certificate and copy it into the project."""
    parser = _base_parser(
        "ssl-renew",
        "Renew a project's certificate and reinstall it (run from cron)",
    )
    parser.add_argument("--domain", help="Domain name")
    parser.add_argument("--project-dir", type=Path, help="Project directory")
    parser.add_argument("--project-user", help="Project user")
    args = parser.parse_args(argv)

    def action(config: ProvisionerConfig) -> None:
        _apply_certificate_args(config, args)
        CertificateRenewer(config, dry_run=args.dry_run).run()

    _run(args, action)


def _apply_certificate_args(config: ProvisionerConfig, args: argparse.Namespace) -> None:
    cert = config.certificate
    if args.domain:
        cert.domain = args.domain.strip().lower()
    if args.project_dir:
        cert.project_dir = args.project_dir
    if args.project_user:
        cert.project_user = args.project_user.strip()
    if getattr(args, "email", None):
        cert.email = args.email.strip()


if __name__ == "__main__":
    server_main()
