"""Post-run usability checks, independent of the sequencer's bookkeeping.

A step can report "applied" while the capability it was meant to enable is
still broken (say, environment not loaded in the current process); the
verifier re-probes what must be true for the host to be usable.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable

from .console import _I, _info, _warn
from .errors import PolicyViolation, ProbeError
from .resources import ProbeResult


@dataclass(frozen=True)
class Check:
    name: str
    probe: Callable
    advisory: bool = False
    description: str = ""


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool
    detail: str = ""
    advisory: bool = False


class Verifier:

    def __init__(self, checks):
        seen = set()
        for check in checks:
            if not check.name:
                raise PolicyViolation("check name must not be empty")
            if check.name in seen:
                raise PolicyViolation(f"duplicate check name {check.name!r}")
            if not callable(check.probe):
                raise PolicyViolation(f"check {check.name!r}: probe is not callable")
            seen.add(check.name)
        self.checks = tuple(checks)

    def _run_one(self, check: Check, ctx) -> CheckResult:
        try:
            result = check.probe(ctx)
        except ProbeError as exc:
            result = ProbeResult.error(str(exc))
        passed = result.is_satisfied
        detail = result.detail
        if result.is_error:
            detail = f"could not check: {detail}"
        return CheckResult(check.name, passed, detail, check.advisory)

    def run(self, ctx, audit=None):
        """Run every check and return a read-only name -> CheckResult map."""
        results = {}
        for check in self.checks:
            result = self._run_one(check, ctx)
            results[check.name] = result
            if audit is not None:
                audit.check(result)
            if result.passed:
                if not ctx.quiet:
                    _info(f"{_I.SHIELD}  {check.name}: {result.detail or 'ok'}")
            else:
                suffix = " (advisory)" if check.advisory else ""
                _warn(f"{check.name}: {result.detail}{suffix}")
        return MappingProxyType(results)


CHECK_TIMEOUT = 60.0


def command_check(name: str, cmd, advisory: bool = False,
                  timeout: float = CHECK_TIMEOUT, description: str = "") -> Check:
    """Passes when *cmd* exits 0 (a missing binary fails the check).

    The command is killed after *timeout* seconds and the check fails.
    """
    if not timeout or timeout <= 0:
        raise PolicyViolation(f"check {name!r}: timeout must be positive")
    cmd = list(cmd)
    pretty = " ".join(str(c) for c in cmd)

    def check(ctx):
        result = ctx.host.runner.query(cmd, timeout=timeout)
        if result.returncode == 0:
            first = (result.stdout or "").strip().splitlines()[:1]
            return ProbeResult.satisfied(first[0] if first else f"{pretty} ok")
        return ProbeResult.divergent(f"{pretty} exited {result.returncode}")

    return Check(name, check, advisory, description or pretty)
