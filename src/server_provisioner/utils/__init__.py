"""Utility modules for Server Provisioner."""

from server_provisioner.utils.command import CommandExecutor
from server_provisioner.utils.file import FileManager
from server_provisioner.utils.prompt import Prompter
from server_provisioner.utils.validation import Validator

__all__ = ["CommandExecutor", "FileManager", "Prompter", "Validator"]
