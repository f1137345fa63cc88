"""Terminal output and the JSON-lines audit trail."""

import json
import sys
from datetime import datetime, timezone
from pathlib import Path

from .steps import Outcome, Policy


# ── Nerd Font icons ──────────────────────────────────────────────────────────

class _I:
    ROCKET   = "\uf135"
    CHECK    = "\uf058"   # check-circle
    OK       = "\uf00c"   # check
    WARN     = "\uf071"   # exclamation-triangle
    ERROR    = "\uf057"   # times-circle
    SKIP     = "\uf04e"   # forward
    BUG      = "\uf188"   # bug (debug)
    SEARCH   = "\uf002"   # search (status)
    SHIELD   = "\uf132"   # shield (verify)
    WRENCH   = "\uf0ad"   # wrench (recovery)
    COGS     = "\uf085"   # cogs
    LIST     = "\uf03a"   # list (outcome log)


# ── ANSI helpers ─────────────────────────────────────────────────────────────

class _C:
    BOLD   = "\033[1m"
    DIM    = "\033[2m"
    GREEN  = "\033[32m"
    YELLOW = "\033[33m"
    RED    = "\033[31m"
    CYAN   = "\033[36m"
    RESET  = "\033[0m"

# Decided once at import time against the real stdout.
if not sys.stdout.isatty():
    _C.BOLD = _C.DIM = _C.GREEN = _C.YELLOW = _C.RED = ""
    _C.CYAN = _C.RESET = ""


def _banner(title: str) -> None:
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {title}")
    print(f"{'─' * 60}{_C.RESET}")


def _section(icon: str, title: str, step: int, total: int) -> None:
    tag = f"{_C.DIM}[{step}/{total}]{_C.RESET}"
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {icon}  {title}  {tag}")
    print(f"{'─' * 60}{_C.RESET}")


def _info(msg: str) -> None:
    print(f"  {_C.GREEN}{_I.OK}{_C.RESET}  {msg}")


def _warn(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.WARN}{_C.RESET}  {msg}")


def _error(msg: str) -> None:
    print(f"  {_C.RED}{_I.ERROR}{_C.RESET}  {msg}", file=sys.stderr)


def _skip(msg: str) -> None:
    print(f"  {_C.DIM}{_I.SKIP}  {msg}{_C.RESET}")


def _debug(msg: str) -> None:
    print(f"  {_C.DIM}{_I.BUG}  {msg}{_C.RESET}")


# ── Outcome rendering ────────────────────────────────────────────────────────

def outcome_level(outcome) -> str:
    """Map a StepOutcome to the log level its line is emitted at."""
    if outcome.outcome is not Outcome.FAILED:
        return "info"
    if outcome.policy is Policy.FATAL:
        return "error"
    # Inspection failures are never demoted to debug.
    if outcome.policy is Policy.IGNORE and not outcome.probe_failed:
        return "debug"
    return "warning"


def print_outcome(outcome, verbose: bool = False, quiet: bool = False) -> None:
    """Print the human-readable line for one StepOutcome."""
    level = outcome_level(outcome)
    name = outcome.step_name
    if outcome.outcome is Outcome.SKIPPED:
        if not quiet:
            _skip(f"{name}: {outcome.detail or 'already satisfied'}")
    elif outcome.outcome is Outcome.APPLIED:
        if not quiet:
            _info(f"{name}: {outcome.detail or 'changed'}")
    elif level == "error":
        _error(f"{name}: {outcome.detail}")
    elif level == "warning":
        _warn(f"{name}: {outcome.detail} (continuing)")
    elif verbose:
        _debug(f"{name}: {outcome.detail} (ignored)")


def print_outcome_log(outcomes) -> None:
    """Print every outcome so far, in order, after a fatal halt."""
    _banner(f"{_I.LIST}  Outcome log")
    for idx, outcome in enumerate(outcomes, 1):
        tag = outcome.outcome.value.upper()
        if outcome.outcome is Outcome.FAILED:
            tag += f"/{outcome.policy.value}"
        print(f"  {idx:>3}. {tag:<15} {outcome.step_name}"
              f"{'  (' + outcome.detail + ')' if outcome.detail else ''}")


def print_report(report) -> None:
    """Print the end-of-run summary for a Report."""
    counts = report.counts()
    parts = [f"{counts['applied']} applied", f"{counts['skipped']} skipped"]
    if counts["failed"]:
        parts.append(f"{counts['failed']} failed")
    title = "Converged" if report.exit_code == 0 else "Run finished with problems"
    icon = _I.CHECK if report.exit_code == 0 else _I.WARN
    _banner(f"{icon}  {title}")
    _info(f"{_I.COGS}  Steps:    {', '.join(parts)}")

    if report.recovery:
        rec_failed = sum(1 for o in report.recovery if o.failed)
        rec = f"{len(report.recovery)} step(s)"
        if rec_failed:
            rec += f", {rec_failed} failed"
        _info(f"{_I.WRENCH}  Recovery: {rec}")

    for name, result in report.verification.items():
        if result.passed:
            _info(f"{_I.SHIELD}  {name}: passed")
        elif result.advisory:
            _warn(f"{name}: {result.detail} (advisory)")
        else:
            _error(f"{name}: {result.detail}")

    if report.halted:
        _error("Stopped on a fatal step failure")


# ── Audit trail ──────────────────────────────────────────────────────────────

class AuditLog:
    """JSON-lines record of every step outcome and check result.

    Writes to *path* (appending; the parent directory is created on first
    use) or to *stream* when no path is given.  This is the only record a
    run leaves behind; nothing in the engine ever reads it back.
    """

    def __init__(self, path=None, stream=None):
        self.path = Path(path) if path is not None else None
        self.stream = stream

    def ensure_writable(self) -> None:
        """Create the log's directory and open it for append once.

        Raises OSError when the audit trail cannot be written.
        """
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a"):
            pass

    def _write(self, record: dict) -> None:
        record = dict(record, ts=datetime.now(timezone.utc).isoformat())
        line = json.dumps(record, sort_keys=True)
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as fh:
                fh.write(line + "\n")
        else:
            stream = self.stream if self.stream is not None else sys.stderr
            stream.write(line + "\n")
            stream.flush()

    def outcome(self, outcome, phase: str = "main") -> None:
        record = outcome.to_record()
        record["phase"] = phase
        record["level"] = outcome_level(outcome)
        self._write(record)

    def check(self, result) -> None:
        self._write({
            "phase": "verify",
            "step_name": result.name,
            "outcome": "passed" if result.passed else "failed",
            "detail": result.detail,
            "advisory": result.advisory,
            "level": "info" if result.passed else (
                "warning" if result.advisory else "error"),
        })
