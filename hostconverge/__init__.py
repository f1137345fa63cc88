"""Idempotent host convergence: probe, act only on divergence, verify."""

from .engine import Plan, cleanup, converge, inspect, verify
from .errors import (
    ActionError, CommandError, ConfigError, ConvergeError, DeadlineExceeded,
    PolicyViolation, ProbeError,
)
from .host import Host, RunContext
from .resources import Kind, ProbeResult, ProbeState, Resource, probe
from .sequencer import Report, Sequencer
from .steps import Outcome, Policy, Step, StepOutcome, Wait, run_step
from .verifier import Check, CheckResult, Verifier

__version__ = "0.1.0"
