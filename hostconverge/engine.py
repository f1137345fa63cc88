"""A full run: sequence, verify, recover, report."""

import dataclasses
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from .console import _I, _section
from .recovery import RecoveryPass
from .sequencer import Report, Sequencer
from .steps import Step, probe_step
from .verifier import Check, Verifier


@dataclass
class Plan:
    """Static declarations supplied by the orchestrator layer."""

    name: str
    description: str
    steps: Tuple[Step, ...]
    checks: Tuple[Check, ...] = ()
    recovery: Tuple[Step, ...] = ()

    def __post_init__(self):
        self.steps = tuple(self.steps)
        self.checks = tuple(self.checks)
        self.recovery = tuple(self.recovery)
        # Constructing these validates the declarations up front.
        self._verifier = Verifier(self.checks)
        self._recovery = RecoveryPass(self.recovery)


def converge(plan: Plan, ctx, deadline: Optional[float] = None, audit=None,
             clock=time.monotonic, sleep=time.sleep) -> Report:
    """Run *plan* against the host behind *ctx* and return its Report.

    Verification and recovery always run, even after a fatal stop.
    """
    _section(_I.COGS, f"{plan.name}: converge", 1, 3)
    main = Sequencer(ctx, deadline=deadline, audit=audit,
                     clock=clock, sleep=sleep).run(plan.steps)

    _section(_I.SHIELD, f"{plan.name}: verify", 2, 3)
    verification = plan._verifier.run(ctx, audit=audit)

    _section(_I.WRENCH, f"{plan.name}: recovery", 3, 3)
    recovery = plan._recovery.run(ctx, audit=audit)

    return dataclasses.replace(main, recovery=recovery, verification=verification)


def inspect(plan: Plan, ctx):
    """Probe every step without acting; returns (step name, ProbeResult) pairs."""
    results = []
    for step in plan.steps:
        results.append((step.name, probe_step(step, ctx)))
    return results


def verify(plan: Plan, ctx, audit=None):
    return plan._verifier.run(ctx, audit=audit)


def cleanup(plan: Plan, ctx, audit=None):
    """Run only the recovery pass."""
    return plan._recovery.run(ctx, audit=audit)
