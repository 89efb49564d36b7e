"""Edits to a project's dotenv file."""

import os
from pathlib import Path

import structlog
from dotenv import dotenv_values, set_key

from server_provisioner.exceptions import ConfigRewriteError
from server_provisioner.utils.file import FileManager

logger = structlog.get_logger(__name__)


def set_env_value(env_path: Path, key: str, value: str, file_manager: FileManager) -> bool:
    """Set ``key=value`` in a dotenv file, adding the key when absent.

    Returns:
        True if the file changed

    Raises:
        ConfigRewriteError: If the file is missing or cannot be written
    """
    if not env_path.exists():
        raise ConfigRewriteError(f"{env_path.name} not found at {env_path}")

    current = dotenv_values(env_path)
    if current.get(key) == value:
        logger.info("env_value_unchanged", path=str(env_path), key=key)
        return False

    file_manager.backup_file(env_path)
    if file_manager.dry_run:
        return True

    # set_key replaces the file; owner and mode are restored afterwards
    original = env_path.stat()
    success, _, _ = set_key(str(env_path), key, value, quote_mode="never")
    if not success:
        raise ConfigRewriteError(f"Could not set {key} in {env_path}")
    os.chown(env_path, original.st_uid, original.st_gid)
    os.chmod(env_path, original.st_mode & 0o7777)

    logger.info("env_value_set", path=str(env_path), key=key, added=key not in current)
    return True
