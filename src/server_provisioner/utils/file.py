"""File management utilities."""

import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

import structlog

from server_provisioner.types import RollbackPoint

logger = structlog.get_logger(__name__)


class FileManager:
    """Manage file operations with backups."""

    def __init__(self, backup_dir: Path, dry_run: bool = False) -> None:
        """Initialize file manager.

        Args:
            backup_dir: Directory for storing backups
            dry_run: If True, log writes instead of performing them
        """
        self.backup_dir = backup_dir
        self.dry_run = dry_run
        self.rollback_points: List[RollbackPoint] = []
        if not dry_run:
            self._ensure_backup_dir()

    def _ensure_backup_dir(self) -> None:
        """Create backup directory if it doesn't exist."""
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    def backup_file(self, filepath: Path, alongside: bool = False) -> Optional[Path]:
        """Create a backup of file.

        Args:
            filepath: Path to file to backup
            alongside: Also keep a ``<name>.backup`` copy next to the file

        Returns:
            Path to the timestamped backup or None if source doesn't exist
        """
        if not filepath.exists():
            return None

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_path = self.backup_dir / f"{filepath.name}.{timestamp}"

        if self.dry_run:
            logger.info("dry_run_backup", path=str(filepath))
            return backup_path

        shutil.copy2(filepath, backup_path)
        if alongside:
            shutil.copy2(filepath, self.sibling_backup(filepath))

        self.rollback_points.append(
            RollbackPoint(
                original_path=str(filepath),
                backup_path=str(backup_path),
                timestamp=timestamp,
            )
        )
        logger.debug("file_backed_up", path=str(filepath), backup=str(backup_path))

        return backup_path

    @staticmethod
    def sibling_backup(filepath: Path) -> Path:
        return filepath.with_name(filepath.name + ".backup")

    def read_file(self, filepath: Path) -> str:
        """Read file content.

        Args:
            filepath: Path to file

        Returns:
            File content as string
        """
        with open(filepath) as f:
            return f.read()

    def write_file(self, filepath: Path, content: str, mode: Optional[int] = None) -> None:
        """Write content to file.

        Args:
            filepath: Path to file
            content: Content to write
            mode: Permission bits applied after writing
        """
        if self.dry_run:
            logger.info("dry_run_write", path=str(filepath))
            return

        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, "w") as f:
            f.write(content)
        if mode is not None:
            os.chmod(filepath, mode)

    def append_file(self, filepath: Path, content: str) -> None:
        """Append content to file.

        Args:
            filepath: Path to file
            content: Content to append
        """
        if self.dry_run:
            logger.info("dry_run_append", path=str(filepath))
            return

        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, "a") as f:
            f.write(content)

    def ensure_lines(self, filepath: Path, lines: Iterable[str]) -> List[str]:
        """Append the lines that the file does not already contain.

        Returns:
            The lines that were added
        """
        existing = set()
        if filepath.exists():
            existing = {line.strip() for line in self.read_file(filepath).splitlines()}

        missing = [line for line in lines if line.strip() not in existing]
        if missing:
            prefix = ""
            if filepath.exists():
                current = self.read_file(filepath)
                if current and not current.endswith("\n"):
                    prefix = "\n"
            self.append_file(filepath, prefix + "\n".join(missing) + "\n")
        return missing

    def remove_file(self, filepath: Path) -> None:
        """Delete a file if present."""
        if self.dry_run:
            logger.info("dry_run_remove", path=str(filepath))
            return
        filepath.unlink(missing_ok=True)
