"""Reconciliation steps: probe, act only on divergence, re-probe."""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .errors import (
    ActionError, ConvergeError, DeadlineExceeded, PolicyViolation, ProbeError,
)
from .resources import ProbeResult


class Policy(str, Enum):
    FATAL = "fatal"
    WARN = "warn"
    IGNORE = "ignore"


class Outcome(str, Enum):
    SKIPPED = "skipped"
    APPLIED = "applied"
    FAILED = "failed"


@dataclass(frozen=True)
class Wait:
    """Bounded poll loop settings for a step's (re-)probe."""

    interval: float
    timeout: float


class Step:
    """One reconciliation unit owned by the plan that declares it.

    *probe* and *action* take the run's RunContext.  *probe* returns a
    ProbeResult and must not mutate the host; *action* returns nothing and
    raises ActionError on failure.  A step without an action is a readiness
    check: with *wait* set it polls its probe until satisfied.
    """

    def __init__(self, name: str, probe: Callable, action: Optional[Callable] = None,
                 policy: Policy = Policy.FATAL, wait: Optional[Wait] = None,
                 description: str = ""):
        if not name:
            raise PolicyViolation("step name must not be empty")
        if not callable(probe):
            raise PolicyViolation(f"step {name!r}: probe is not callable")
        if action is not None and not callable(action):
            raise PolicyViolation(f"step {name!r}: action is not callable")
        if not isinstance(policy, Policy):
            raise PolicyViolation(f"step {name!r}: unknown policy {policy!r}")
        if policy is Policy.FATAL and action is None:
            raise PolicyViolation(
                f"step {name!r}: a fatal step must declare an action")
        if wait is not None and (wait.interval <= 0 or wait.timeout <= 0):
            raise PolicyViolation(
                f"step {name!r}: wait interval and timeout must be positive")
        self.name = name
        self.probe = probe
        self.action = action
        self.policy = policy
        self.wait = wait
        self.description = description

    def __repr__(self) -> str:
        return f"Step({self.name!r}, policy={self.policy.value})"


@dataclass(frozen=True)
class StepOutcome:
    step_name: str
    outcome: Outcome
    policy: Policy
    detail: str = ""
    error: Optional[Exception] = None
    action_ran: bool = False

    @property
    def failed(self) -> bool:
        return self.outcome is Outcome.FAILED

    @property
    def fatal(self) -> bool:
        return self.failed and self.policy is Policy.FATAL

    @property
    def probe_failed(self) -> bool:
        return isinstance(self.error, ProbeError)

    def to_record(self) -> dict:
        """The structured audit line for this outcome."""
        record = {
            "step_name": self.step_name,
            "outcome": self.outcome.value,
            "detail": self.detail,
            "policy": self.policy.value,
        }
        if self.error is not None:
            record["error"] = type(self.error).__name__
        return record


def probe_step(step: Step, ctx) -> ProbeResult:
    """Call the step's probe once; ProbeError or OSError becomes an ERROR result."""
    try:
        result = step.probe(ctx)
    except ProbeError as exc:
        return ProbeResult.error(str(exc))
    except OSError as exc:
        return ProbeResult.error(f"{exc.strerror or exc}: {exc.filename or step.name}")
    if not isinstance(result, ProbeResult):
        raise TypeError(f"probe of step {step.name!r} returned {result!r}")
    return result


def poll(step: Step, ctx, deadline: Optional[float] = None,
         clock=time.monotonic, sleep=time.sleep) -> ProbeResult:
    """Probe *step* until satisfied, errored, or its wait budget runs out.

    Without ``step.wait`` this is a single probe.  The loop never outlives
    *deadline* (an absolute ``clock()`` value).
    """
    result = probe_step(step, ctx)
    if step.wait is None:
        return result
    stop_at = clock() + step.wait.timeout
    if deadline is not None:
        stop_at = min(stop_at, deadline)
    while result.is_divergent and clock() < stop_at:
        sleep(max(0.0, min(step.wait.interval, stop_at - clock())))
        result = probe_step(step, ctx)
    return result


def run_step(step: Step, ctx, deadline: Optional[float] = None,
             clock=time.monotonic, sleep=time.sleep) -> StepOutcome:
    """Run one Probe -> Action -> re-Probe cycle and classify the result."""

    def failed(detail, error, action_ran=False):
        return StepOutcome(step.name, Outcome.FAILED, step.policy,
                           detail, error, action_ran)

    def expired():
        return deadline is not None and clock() >= deadline

    def deadline_failure(detail, action_ran=False):
        return StepOutcome(step.name, Outcome.FAILED, Policy.FATAL,
                           f"deadline exceeded: {detail}",
                           DeadlineExceeded(detail), action_ran)

    if step.action is None:
        result = poll(step, ctx, deadline, clock, sleep)
    else:
        result = probe_step(step, ctx)

    if result.is_satisfied:
        return StepOutcome(step.name, Outcome.SKIPPED, step.policy, result.detail)
    if result.is_error:
        # Inspection failure is not evidence that a repair is needed.
        return failed(f"probe error: {result.detail}", ProbeError(result.detail))
    if step.action is None:
        if expired():
            return deadline_failure(result.detail)
        return failed(f"not ready: {result.detail}", ActionError(result.detail))

    try:
        step.action(ctx)
    except ActionError as exc:
        return failed(f"action failed: {exc}", exc, action_ran=True)
    except (ConvergeError, OSError) as exc:
        error = ActionError(f"{type(exc).__name__}: {exc}")
        error.__cause__ = exc
        return failed(f"action failed: {error}", error, action_ran=True)

    after = poll(step, ctx, deadline, clock, sleep)
    if after.is_satisfied:
        return StepOutcome(step.name, Outcome.APPLIED, step.policy,
                           f"repaired: {result.detail}", action_ran=True)
    if after.is_error:
        return failed(f"probe error after action: {after.detail}",
                      ProbeError(after.detail), action_ran=True)
    if expired():
        return deadline_failure(after.detail, action_ran=True)
    return failed(f"action had no verified effect: {after.detail}",
                  ActionError(after.detail), action_ran=True)
