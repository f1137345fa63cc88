"""Ordered execution of reconciliation steps and the run Report."""

import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from .console import print_outcome
from .errors import DeadlineExceeded
from .steps import Outcome, Policy, StepOutcome, run_step

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_UNVERIFIED = 2


@dataclass(frozen=True)
class Report:
    """Everything a run produced.  Built once, read-only afterwards."""

    outcomes: Tuple[StepOutcome, ...] = ()
    halted: bool = False
    recovery: Tuple[StepOutcome, ...] = ()
    verification: Mapping = field(default_factory=lambda: MappingProxyType({}))

    @property
    def converged(self) -> bool:
        return not self.halted

    @property
    def verified(self) -> bool:
        return all(r.passed or r.advisory for r in self.verification.values())

    @property
    def exit_code(self) -> int:
        if self.halted:
            return EXIT_FATAL
        if not self.verified:
            return EXIT_UNVERIFIED
        return EXIT_OK

    @property
    def failures(self) -> Tuple[StepOutcome, ...]:
        return tuple(o for o in self.outcomes + self.recovery if o.failed)

    def counts(self) -> dict:
        counts = {kind.value: 0 for kind in Outcome}
        for outcome in self.outcomes:
            counts[outcome.outcome.value] += 1
        return counts


class Sequencer:
    """Run steps strictly in order, applying each step's failure policy.

    Holds nothing between runs: every run() starts a fresh outcome list and
    relies on the probes to find out what is already done.  *deadline* is a
    per-run budget in seconds; once spent, the step about to run is recorded
    as a fatal failure and the run stops.
    """

    def __init__(self, ctx, deadline: Optional[float] = None, audit=None,
                 phase: str = "main", clock=time.monotonic, sleep=time.sleep):
        self.ctx = ctx
        self.deadline = deadline
        self.audit = audit
        self.phase = phase
        self.clock = clock
        self.sleep = sleep

    def _record(self, outcome: StepOutcome) -> None:
        print_outcome(outcome, verbose=self.ctx.verbose, quiet=self.ctx.quiet)
        if self.audit is not None:
            self.audit.outcome(outcome, phase=self.phase)

    def run(self, steps) -> Report:
        outcomes = []
        deadline_at = None
        if self.deadline is not None:
            deadline_at = self.clock() + self.deadline

        for step in steps:
            if deadline_at is not None and self.clock() >= deadline_at:
                outcome = StepOutcome(
                    step.name, Outcome.FAILED, Policy.FATAL,
                    f"deadline of {self.deadline:g}s exceeded before step ran",
                    DeadlineExceeded(step.name),
                )
            else:
                outcome = run_step(step, self.ctx, deadline_at,
                                   self.clock, self.sleep)
            outcomes.append(outcome)
            self._record(outcome)
            if outcome.fatal:
                return Report(outcomes=tuple(outcomes), halted=True)

        return Report(outcomes=tuple(outcomes))
