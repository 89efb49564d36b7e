"""Desired-state reconciliation of host provisioning steps."""

from dataclasses import dataclass, field
from typing import Callable, List, Optional

import structlog

from server_provisioner.exceptions import ProvisionerError
from server_provisioner.types import StepTier

logger = structlog.get_logger(__name__)


@dataclass
class Step:
    """A unit of host configuration.

    ``check`` reports whether the host is already in the desired state;
    steps without a check always run.
    """

    name: str
    apply: Callable[[], None]
    check: Optional[Callable[[], bool]] = None
    tier: StepTier = StepTier.FATAL

    def is_satisfied(self) -> bool:
        if self.check is None:
            return False
        return self.check()


@dataclass
class PlannedStep:
    step: Step
    satisfied: bool


@dataclass
class ReconcileReport:
    applied: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class Reconciler:
    """Evaluate every step's current state, then apply what is missing."""

    def __init__(self, steps: List[Step]) -> None:
        self.steps = steps

    def plan(self) -> List[PlannedStep]:
        """Check the current state of every step.

        Returns:
            Steps in order, each marked satisfied or not
        """
        planned = []
        for step in self.steps:
            try:
                satisfied = step.is_satisfied()
            except (ProvisionerError, OSError) as e:
                logger.warning("state_check_failed", step=step.name, error=str(e))
                satisfied = False
            planned.append(PlannedStep(step, satisfied))
        return planned

    def apply(self, plan: Optional[List[PlannedStep]] = None) -> ReconcileReport:
        """Apply every unsatisfied step.

        Advisory failures are logged and collected; fatal ones propagate.

        Raises:
            ProvisionerError: If a fatal step fails
        """
        report = ReconcileReport()
        for item in plan if plan is not None else self.plan():
            step = item.step
            if item.satisfied:
                logger.info("step_skipped", step=step.name, reason="already in desired state")
                report.skipped.append(step.name)
                continue

            logger.info("step_started", step=step.name)
            try:
                step.apply()
            except (ProvisionerError, OSError) as e:
                if step.tier is StepTier.FATAL:
                    logger.error("step_failed", step=step.name, error=str(e))
                    raise
                logger.warning("step_failed", step=step.name, error=str(e))
                report.warnings.append(f"{step.name}: {e}")
                continue
            report.applied.append(step.name)
        return report
