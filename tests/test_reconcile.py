"""Tests for desired-state reconciliation."""

import pytest

from server_provisioner.exceptions import CommandExecutionError
from server_provisioner.reconcile import Reconciler, Step
from server_provisioner.types import StepTier


def test_satisfied_steps_are_skipped():
    calls = []
    reconciler = Reconciler(
        [
            Step("done", lambda: calls.append("done"), lambda: True),
            Step("todo", lambda: calls.append("todo"), lambda: False),
            Step("always", lambda: calls.append("always")),
        ]
    )

    report = reconciler.apply()

    assert calls == ["todo", "always"]
    assert report.skipped == ["done"]
    assert report.applied == ["todo", "always"]


def test_plan_reports_state_without_applying():
    calls = []
    plan = Reconciler([Step("a", lambda: calls.append("a"), lambda: True)]).plan()
    assert [p.satisfied for p in plan] == [True]
    assert calls == []


def test_failed_check_counts_as_unsatisfied():
    def broken_check():
        raise OSError("permission denied")

    plan = Reconciler([Step("a", lambda: None, broken_check)]).plan()
    assert plan[0].satisfied is False


def test_advisory_failure_continues():
    calls = []

    def fail():
        raise CommandExecutionError("apt-get failed")

    reconciler = Reconciler(
        [
            Step("broken", fail, tier=StepTier.ADVISORY),
            Step("next", lambda: calls.append("next")),
        ]
    )
    report = reconciler.apply()

    assert calls == ["next"]
    assert report.warnings == ["broken: apt-get failed"]
    assert report.applied == ["next"]


def test_fatal_failure_stops_run():
    calls = []

    def fail():
        raise CommandExecutionError("useradd failed")

    reconciler = Reconciler([Step("broken", fail), Step("next", lambda: calls.append("next"))])
    with pytest.raises(CommandExecutionError):
        reconciler.apply()
    assert calls == []
