"""Per-project provisioning: user, sudoers allowlist, SSH key, directory, repository."""

import shlex
import shutil
from pathlib import Path
from typing import Optional

import structlog

from server_provisioner.config import ProjectConfig, ProvisionerConfig
from server_provisioner.exceptions import (
    ConfigurationError,
    OperationCancelled,
    RepositoryError,
    SystemRequirementError,
)
from server_provisioner.system_info import SystemInfo
from server_provisioner.types import RepoMode
from server_provisioner.utils.command import CommandExecutor
from server_provisioner.utils.file import FileManager
from server_provisioner.utils.prompt import Prompter
from server_provisioner.utils.validation import (
    Validator,
    default_username,
    sanitize_project_name,
    sanitize_username,
)

logger = structlog.get_logger(__name__)

REPO_CHOICES = {
    RepoMode.HTTPS.value: "Clone a public repository over HTTPS",
    RepoMode.SSH.value: "Clone a private repository over SSH",
    RepoMode.COPY.value: "Copy from current directory (if running from project)",
    RepoMode.SKIP.value: "Skip for now (manual setup later)",
}

CLONE_TIMEOUT = 900


def sudoers_rules(username: str, app_dir: Path) -> str:
    """Render the passwordless sudo allowlist for a project user."""
    return f"""# Allow {username} to run deployment commands without password
{username} ALL=(ALL) NOPASSWD: /usr/bin/chown -R 1001\\:1001 {app_dir}/public/uploads*
{username} ALL=(ALL) NOPASSWD: /usr/bin/chmod -R 755 {app_dir}/public/uploads*
{username} ALL=(ALL) NOPASSWD: /usr/bin/docker *
{username} ALL=(ALL) NOPASSWD: /usr/bin/docker-compose *
"""


class ProjectProvisioner:
    """Create an isolated user, directory and checkout for one project."""

    def __init__(
        self,
        config: ProvisionerConfig,
        dry_run: bool = False,
        executor: Optional[CommandExecutor] = None,
        system: Optional[SystemInfo] = None,
        file_manager: Optional[FileManager] = None,
        prompter: Optional[Prompter] = None,
        validator: Optional[Validator] = None,
    ) -> None:
        self.config = config
        self.project: ProjectConfig = config.project
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

    @property
    def username(self) -> str:
        return self.project.username or ""

    @property
    def app_dir(self) -> Path:
        if self.project.app_dir is None:
            raise ConfigurationError("Project name is required")
        return self.project.app_dir

    @property
    def home(self) -> Path:
        return self.validator.home_directory(self.username, self.project.home_base)

    def run(self) -> None:
        """Provision the project.

        Raises:
            SystemRequirementError: If not running as root
            OperationCancelled: If the operator declines to reuse existing state
            RepositoryError: If the repository cannot be cloned or copied
        """
        if not self.system.is_root:
            raise SystemRequirementError("This tool must be run as root (use sudo)")

        self.collect_project_info()
        self.prompter.confirm_or_cancel(
            "Continue with setup?", default=not self.prompter.interactive
        )
        self.create_user()
        self.configure_sudoers()
        self.setup_ssh_directory()

        if self._wants_ssh_key():
            self.setup_ssh_key()
        else:
            logger.info("Skipping SSH key setup")

        self.setup_app_directory()
        mode = self.acquire_repository()
        if mode is not RepoMode.SKIP:
            self.seed_env_file()
        self.print_summary()

    def collect_project_info(self) -> None:
        """Resolve project name and username from config or prompts.

        Raises:
            ConfigurationError: If no project name is given
        """
        if not self.project.name:
            name = self.prompter.ask("Enter project name (e.g., my-app, api-service)")
            self.project.name = sanitize_project_name(name) or None
        if not self.project.name:
            raise ConfigurationError("Project name is required")

        if not self.project.username:
            fallback = default_username(self.project.name)
            answer = self.prompter.ask(
                "Enter username for this project", default=fallback, required=False
            )
            self.project.username = sanitize_username(answer) or fallback
        self.validator.validate_username(self.project.username)

        logger.info(
            "Project configuration",
            project=self.project.name,
            user=self.username,
            path=str(self.app_dir),
        )

    def create_user(self) -> None:
        """Create the project user, or confirm reuse of an existing one.

        Raises:
            OperationCancelled: If the user exists and reuse is declined
        """
        if self.validator.validate_user_exists(self.username):
            logger.warning("User already exists", user=self.username)
            if not self.prompter.confirm(
                f"Do you want to continue with existing user {self.username}?"
            ):
                raise OperationCancelled("Setup cancelled")
        else:
            self.executor.execute(
                f"useradd -m -s /bin/bash {shlex.quote(self.username)}", needs_root=True
            )
            logger.info("User created", user=self.username)

        if self.executor.check_command_available("docker"):
            self.executor.execute(
                f"usermod -aG docker {shlex.quote(self.username)}", needs_root=True
            )
            logger.info("User added to docker group", user=self.username)

    def configure_sudoers(self) -> bool:
        """Install the deployment sudoers allowlist.

        An allowlist that fails ``visudo`` validation is deleted and the run
        continues without passwordless sudo.

        Returns:
            True if the allowlist is in place
        """
        sudoers_file = self.project.sudoers_dir / f"{self.username}-deploy"
        self.file_manager.write_file(
            sudoers_file, sudoers_rules(self.username, self.app_dir), mode=0o440
        )

        result = self.executor.execute(
            f"visudo -c -f {shlex.quote(str(sudoers_file))}", needs_root=True, check=False
        )
        if result.success:
            logger.info("Passwordless sudo configured for deployment", file=str(sudoers_file))
            return True

        self.file_manager.remove_file(sudoers_file)
        logger.warning(
            "Sudoers file validation failed, continuing without passwordless sudo",
            error=result.stderr.strip(),
        )
        return False

    def setup_ssh_directory(self) -> None:
        ssh_dir = self.home / ".ssh"
        auth_keys = ssh_dir / "authorized_keys"
        if not self.dry_run:
            ssh_dir.mkdir(parents=True, exist_ok=True)
            ssh_dir.chmod(0o700)
            auth_keys.touch(exist_ok=True)
            auth_keys.chmod(0o600)
        self._chown(ssh_dir)
        logger.info("SSH directory created", path=str(ssh_dir))

    def _wants_ssh_key(self) -> bool:
        if self.project.setup_ssh_key is not None:
            return self.project.setup_ssh_key
        if self.project.repo_mode is RepoMode.SSH:
            return True
        print(
            "\nSSH keys are needed for private repositories or to push changes.\n"
            "They are not needed for public repositories you only pull from."
        )
        return self.prompter.confirm("Set up SSH keys for GitHub/GitLab access?")

    def setup_ssh_key(self) -> None:
        """Generate a deploy key, show it, and probe the git host.

        The connectivity probe is advisory; its result never stops the run.
        """
        key_path = self.home / ".ssh" / "id_ed25519"
        if key_path.exists():
            logger.warning("SSH key already exists", user=self.username)
            if not self.prompter.confirm("Do you want to display it again?"):
                return
        else:
            comment = f"{self.username}@{self.system.hostname()}"
            self.executor.execute_as(
                self.username,
                f"ssh-keygen -t ed25519 -C {shlex.quote(comment)} "
                f"-f {shlex.quote(str(key_path))} -N ''",
            )
            logger.info("SSH key generated", path=str(key_path))

        pub_path = key_path.with_name(key_path.name + ".pub")
        public_key = pub_path.read_text().strip() if pub_path.exists() else f"<{pub_path}>"

        host = self.project.git_host
        print("\n" + "━" * 60)
        print("           GIT HOST SSH KEY SETUP")
        print("━" * 60 + "\n")
        print(f"Add this SSH key to your {host} account:\n")
        print(public_key + "\n")
        print("Steps:")
        print("  1. Copy the key above (including 'ssh-ed25519' and the comment)")
        print(f"  2. Open the SSH keys page of your {host} account")
        print("  3. Add a new SSH key")
        print(f"  4. Title: '{self.project.name} Production Server'")
        print("  5. Paste the key and save\n")
        self.prompter.pause("Press ENTER when you have added the key...")

        if self.probe_git_host():
            logger.info("Git host SSH connection successful", host=host)
        else:
            logger.warning(
                "Git host connection test inconclusive (this is usually okay)",
                hint=f"test later with: ssh -T git@{host}",
            )

    def probe_git_host(self) -> bool:
        result = self.executor.execute_as(
            self.username,
            f"ssh -T git@{self.project.git_host} "
            "-o StrictHostKeyChecking=accept-new -o BatchMode=yes",
            check=False,
            timeout=30,
        )
        return "successfully authenticated" in (result.stdout + result.stderr)

    def setup_app_directory(self) -> None:
        """Create the project directory owned by the project user.

        Raises:
            OperationCancelled: If it exists and the operator declines to continue
        """
        if self.app_dir.exists():
            logger.warning("Directory already exists", path=str(self.app_dir))
            if not self.prompter.confirm("Do you want to continue and potentially overwrite?"):
                raise OperationCancelled("Setup cancelled")
        elif not self.dry_run:
            self.app_dir.mkdir(parents=True)
            logger.info("Directory created", path=str(self.app_dir))

        self._chown(self.app_dir)
        if not self.dry_run:
            self.app_dir.chmod(0o755)

    def acquire_repository(self) -> RepoMode:
        """Clone or copy the project into its directory.

        Returns:
            The mode used

        Raises:
            ConfigurationError: If a clone URL is missing
            RepositoryError: If the clone or copy fails
        """
        mode = self.project.repo_mode
        if mode is None:
            mode = RepoMode(self.prompter.choose("How do you want to set up the project?", REPO_CHOICES))

        if mode is RepoMode.SKIP:
            logger.warning(
                "Skipping repository setup",
                hint=f"clone or copy your project into {self.app_dir}",
            )
        elif mode is RepoMode.COPY:
            self._copy_source()
        else:
            self._clone(mode)
        return mode

    def _clone(self, mode: RepoMode) -> None:
        example = (
            "https://github.com/username/repo.git"
            if mode is RepoMode.HTTPS
            else "git@github.com:username/repo.git"
        )
        url = self.project.repo_url or self.prompter.ask(f"Enter repository URL (e.g. {example})")
        if not url:
            raise ConfigurationError("Repository URL is required")
        if mode is RepoMode.HTTPS and not url.startswith("https://"):
            logger.warning("Public clones expect an HTTPS URL", url=url)

        logger.info("Cloning repository", url=url, mode=mode.value)
        result = self.executor.execute_as(
            self.username,
            f"git clone {shlex.quote(url)} {shlex.quote(str(self.app_dir))}",
            check=False,
            timeout=CLONE_TIMEOUT,
        )
        if not result.success:
            hint = "check that the repository URL is correct and accessible"
            if mode is RepoMode.SSH:
                hint += " and that the SSH key was added to the git host"
            raise RepositoryError(f"Failed to clone repository: {result.stderr.strip()} ({hint})")
        logger.info("Repository cloned successfully")

    def _copy_source(self) -> None:
        source = self.project.source_dir.resolve()
        destination = self.app_dir.resolve()
        if source == destination:
            raise RepositoryError(f"Source and destination are the same: {source}")
        if source in destination.parents:
            raise RepositoryError(f"Destination {destination} is inside the source {source}")

        logger.info("Copying files", source=str(source), destination=str(self.app_dir))
        if not self.dry_run:
            try:
                shutil.copytree(source, self.app_dir, symlinks=True, dirs_exist_ok=True)
            except (OSError, shutil.Error) as e:
                raise RepositoryError(f"Failed to copy files: {e}") from e
        self._chown(self.app_dir)
        logger.info("Files copied successfully")

    def seed_env_file(self) -> bool:
        """Create the active env file from the template shipped in the repo."""
        template = self.app_dir / self.project.env_template
        target = self.app_dir / self.project.env_file
        if not template.exists():
            return False
        if target.exists():
            logger.info("Environment file already present", path=str(target))
            return False

        self.executor.execute_as(
            self.username, f"cp {shlex.quote(str(template))} {shlex.quote(str(target))}"
        )
        logger.warning("Environment file created, edit it with real values", path=str(target))
        return True

    def _chown(self, path: Path) -> None:
        user = shlex.quote(self.username)
        self.executor.execute(f"chown -R {user}:{user} {shlex.quote(str(path))}", needs_root=True)

    def print_summary(self) -> None:
        user, app_dir = self.username, self.app_dir
        print("\n" + "━" * 60)
        print("           PROJECT SETUP COMPLETED SUCCESSFULLY!")
        print("━" * 60 + "\n")
        print(f"  Project:   {self.project.name}")
        print(f"  Username:  {user}")
        print(f"  Directory: {app_dir}\n")
        print(
            f"""Next steps:
  1. Configure environment variables:
     sudo -u {user} nano {app_dir}/{self.project.env_file}
  2. Switch to the project user:
     sudo -u {user} -i
     cd {app_dir}
  3. Start the application:
     docker compose -f docker-compose.prod.yml up -d

Server IP: {self.system.primary_ip()}
"""
        )
