"""Interactive prompts used when a setting was not supplied up front."""

import select
import sys
from typing import Callable, Dict, Optional

import structlog

from server_provisioner.exceptions import (
    ConfigurationError,
    OperationCancelled,
    PromptTimeoutError,
)

logger = structlog.get_logger(__name__)


class Prompter:
    """Ask the operator for values, confirmations and choices.

    In non-interactive mode nothing is read from stdin: ``ask`` returns its
    default or fails, and ``confirm`` resolves to ``assume_yes`` or the
    prompt's default.
    """

    def __init__(
        self,
        interactive: bool = True,
        assume_yes: bool = False,
        timeout: Optional[float] = None,
        input_func: Callable[[str], str] = input,
    ) -> None:
        self.interactive = interactive
        self.assume_yes = assume_yes
        self.timeout = timeout
        self._input = input_func

    def _read(self, question: str) -> str:
        if self.timeout is None:
            return self._input(question)

        print(question, end="", flush=True)
        ready, _, _ = select.select([sys.stdin], [], [], self.timeout)
        if not ready:
            print()
            raise PromptTimeoutError(f"No answer within {self.timeout:g}s: {question.strip()}")
        return sys.stdin.readline().rstrip("\n")

    def ask(self, question: str, default: Optional[str] = None, required: bool = True) -> str:
        """Ask for a text value.

        Raises:
            ConfigurationError: If a required value is missing
        """
        if not self.interactive:
            if default is None and required:
                raise ConfigurationError(f"Missing required value: {question.strip(': ')}")
            return default or ""

        suffix = f" [{default}]" if default else ""
        answer = self._read(f"{question}{suffix}: ").strip()
        if not answer:
            if default is not None:
                return default
            if required:
                raise ConfigurationError(f"{question.strip(': ')} is required")
        return answer

    def confirm(self, question: str, default: bool = False) -> bool:
        """Ask a yes/no question."""
        if self.assume_yes:
            return True
        if not self.interactive:
            return default

        hint = "Y/n" if default else "y/N"
        answer = self._read(f"{question} ({hint}) ").strip().lower()
        if not answer:
            return default
        return answer in ("y", "yes")

    def confirm_or_cancel(self, question: str, default: bool = False) -> None:
        """Ask a yes/no question and cancel the run on "no".

        Raises:
            OperationCancelled: If the operator declines
        """
        if not self.confirm(question, default=default):
            raise OperationCancelled("Setup cancelled")

    def choose(self, question: str, options: Dict[str, str]) -> str:
        """Pick one of several numbered options.

        Args:
            question: Heading shown above the menu
            options: Option key to label, in display order

        Returns:
            The chosen key

        Raises:
            ConfigurationError: On an invalid choice or when not interactive
        """
        if not self.interactive:
            raise ConfigurationError(f"Missing required choice: {question}")

        keys = list(options)
        print(question)
        for i, key in enumerate(keys, start=1):
            print(f"  {i}) {options[key]}")
        answer = self._read(f"Choose option [1-{len(keys)}]: ").strip()
        if answer.isdigit() and 1 <= int(answer) <= len(keys):
            return keys[int(answer) - 1]
        if answer in options:
            return answer
        raise ConfigurationError(f"Invalid option: {answer!r}")

    def pause(self, message: str) -> None:
        """Wait for the operator to press Enter."""
        if not self.interactive:
            logger.info("pause_skipped", message=message)
            return
        self._read(f"{message} ")
