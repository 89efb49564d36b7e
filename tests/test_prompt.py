"""Tests for interactive prompts."""

import pytest

from server_provisioner.exceptions import ConfigurationError, OperationCancelled
from server_provisioner.utils.prompt import Prompter

from conftest import scripted_prompter


def test_ask_returns_answer():
    prompter = scripted_prompter(["  my-app "])
    assert prompter.ask("Project name") == "my-app"


def test_ask_uses_default_on_empty_answer():
    prompter = scripted_prompter([""])
    assert prompter.ask("Username", default="my-app-user") == "my-app-user"


def test_ask_required_without_answer():
    prompter = scripted_prompter([""])
    with pytest.raises(ConfigurationError):
        prompter.ask("Domain")


def test_ask_optional_without_answer():
    prompter = scripted_prompter([""])
    assert prompter.ask("Hostname", required=False) == ""


def test_non_interactive_ask_needs_default():
    prompter = Prompter(interactive=False)
    assert prompter.ask("Username", default="app-user") == "app-user"
    with pytest.raises(ConfigurationError):
        prompter.ask("Domain")


@pytest.mark.parametrize("answer, expected", [("y", True), ("YES", True), ("n", False), ("", False)])
def test_confirm(answer, expected):
    assert scripted_prompter([answer]).confirm("Continue?") is expected


def test_confirm_non_interactive():
    assert Prompter(interactive=False).confirm("Continue?", default=True)
    assert not Prompter(interactive=False).confirm("Continue?")
    assert Prompter(interactive=False, assume_yes=True).confirm("Continue?")


def test_confirm_or_cancel():
    with pytest.raises(OperationCancelled):
        scripted_prompter(["no"]).confirm_or_cancel("Continue?")


def test_choose_by_number_or_key():
    options = {"https": "Public", "ssh": "Private", "skip": "Later"}
    assert scripted_prompter(["2"]).choose("Mode?", options) == "ssh"
    assert scripted_prompter(["skip"]).choose("Mode?", options) == "skip"


def test_choose_invalid():
    with pytest.raises(ConfigurationError):
        scripted_prompter(["9"]).choose("Mode?", {"a": "A", "b": "B"})


def test_choose_non_interactive():
    with pytest.raises(ConfigurationError):
        Prompter(interactive=False).choose("Mode?", {"a": "A"})
