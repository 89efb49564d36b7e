"""Command execution utilities."""

import os
import shlex
import shutil
import subprocess
from typing import Mapping, Optional

import structlog

from server_provisioner.exceptions import CommandExecutionError
from server_provisioner.types import CommandResult

logger = structlog.get_logger(__name__)


class CommandExecutor:
    """Execute system commands with proper error handling."""

    def __init__(self, use_sudo: bool = False, dry_run: bool = False) -> None:
        """Initialize command executor.

        Args:
            use_sudo: Whether to prepend sudo to commands requiring root
            dry_run: If True, only log commands without executing
        """
        self.use_sudo = use_sudo
        self.dry_run = dry_run

    def execute(
        self,
        cmd: str,
        needs_root: bool = False,
        check: bool = True,
        timeout: Optional[int] = 30,
        input: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        """Execute command with optional sudo.

        Args:
            cmd: Command to execute
            needs_root: Whether command requires root privileges
            check: Whether to raise exception on failure
            timeout: Command timeout in seconds, None to wait forever
            input: Text fed to the command's stdin
            env: Extra environment variables for the command

        Returns:
            CommandResult with execution details

        Raises:
            CommandExecutionError: If command fails and check=True
        """
        if needs_root and self.use_sudo:
            cmd = f"sudo {cmd}"

        if self.dry_run:
            logger.info("dry_run_command", cmd=cmd)
            return CommandResult(True, f"[DRY RUN] {cmd}", "", 0)

        logger.debug("run_command", cmd=cmd)
        full_env = None
        if env:
            full_env = {**os.environ, **env}

        try:
            result = subprocess.run(
                cmd,
                shell=True,
                capture_output=True,
                text=True,
                timeout=timeout,
                input=input,
                env=full_env,
                check=False,
            )

            cmd_result = CommandResult(
                success=result.returncode == 0,
                stdout=result.stdout,
                stderr=result.stderr,
                return_code=result.returncode,
            )

            if check and not cmd_result.success:
                raise CommandExecutionError(
                    f"Command failed: {cmd}\nError: {result.stderr.strip()}"
                )

            return cmd_result

        except subprocess.TimeoutExpired as e:
            error_msg = f"Command timed out after {timeout}s: {cmd}"
            if check:
                raise CommandExecutionError(error_msg) from e
            return CommandResult(False, "", error_msg, -1)

        except OSError as e:
            error_msg = f"Command execution failed: {cmd}\nError: {str(e)}"
            if check:
                raise CommandExecutionError(error_msg) from e
            return CommandResult(False, "", error_msg, -1)

    def probe(self, cmd: str, timeout: int = 10) -> CommandResult:
        """Run a read-only command, even in dry-run mode."""
        dry_run, self.dry_run = self.dry_run, False
        try:
            return self.execute(cmd, check=False, timeout=timeout)
        finally:
            self.dry_run = dry_run

    def execute_as(
        self, user: str, cmd: str, check: bool = True, timeout: Optional[int] = 30
    ) -> CommandResult:
        """Execute command as another user through sudo."""
        return self.execute(
            f"sudo -u {shlex.quote(user)} -H {cmd}", check=check, timeout=timeout
        )

    def check_command_available(self, command: str) -> bool:
        """Check if command is available on system."""
        return shutil.which(command) is not None
