"""hostconverge command line."""

import argparse
import os
import sys
import time

from .config import load_config
from .console import (
    _C, _I, _banner, _error, _info, _skip, _warn, AuditLog,
    print_outcome_log, print_report,
)
from .engine import cleanup, converge, inspect, verify
from .errors import ConfigError, PolicyViolation
from .host import Host, RunContext
from .plans import CONFIG_TYPES, PLANS
from .sequencer import EXIT_FATAL, EXIT_OK, EXIT_UNVERIFIED

AUDIT_PATH = "/var/log/hostconverge/audit.jsonl"


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="hostconverge",
        description="Converge this host to a declared configuration.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  sudo hostconverge                              # ansible plan (interactive confirm)
  sudo hostconverge -y --plan kubernetes-node    # skip confirmation prompt
  sudo hostconverge --plan monitoring -q         # warnings and errors only
  hostconverge --status --plan ansible           # probe every step, change nothing
  hostconverge --verify                          # run the post-run checks only
  sudo hostconverge --cleanup                    # recovery pass only
  sudo hostconverge --deadline 900 --audit-log - # 15 minute budget, audit to stderr
""",
    )
    p.add_argument(
        "--plan", choices=sorted(PLANS), default="ansible",
        help="what to converge: ansible (default), kubernetes-node, monitoring",
    )
    mode = p.add_mutually_exclusive_group()
    mode.add_argument(
        "--status", action="store_true",
        help="probe every step and report what would change",
    )
    mode.add_argument(
        "--verify", action="store_true",
        help="run only the post-run usability checks",
    )
    mode.add_argument(
        "--cleanup", action="store_true",
        help="run only the recovery pass (ownership, dangling links)",
    )
    p.add_argument(
        "--config", metavar="FILE",
        help="JSON file overriding the plan's default settings",
    )
    p.add_argument(
        "--deadline", metavar="SECONDS", type=float,
        help="overall time budget for the converge run",
    )
    p.add_argument(
        "--audit-log", metavar="PATH", default=AUDIT_PATH,
        help=f"JSON-lines audit trail (default {AUDIT_PATH}; '-' for stderr)",
    )
    p.add_argument(
        "-y", "--yes", action="store_true",
        help="skip interactive confirmation prompt",
    )
    p.add_argument(
        "-q", "--quiet", action="store_true",
        help="suppress per-command and per-step output; show only section "
             "banners, warnings, and errors",
    )
    p.add_argument(
        "--verbose", action="store_true",
        help="also show failures of steps whose policy is ignore",
    )
    return p


def _audit(path):
    if path == "-":
        return AuditLog(stream=sys.stderr)
    return AuditLog(path=path)


def _confirm(plan, cleanup_mode: bool = False) -> None:
    """Describe what is about to happen and ask; exits if declined."""
    print()
    if cleanup_mode:
        print(f"  {_C.BOLD}About to run the {plan.name} recovery pass:{_C.RESET}")
        steps = plan.recovery
    else:
        print(f"  {_C.BOLD}About to converge {plan.name}: "
              f"{plan.description}{_C.RESET}")
        steps = plan.steps
    for step in steps:
        line = f"    • {step.name}"
        if step.description:
            line += f"  {_C.DIM}{step.description}{_C.RESET}"
        print(line)
    print()
    print(f"  {_C.DIM}Steps already in the desired state are left alone.{_C.RESET}")
    print()
    try:
        answer = input("  Proceed? [y/N] ").strip().lower()
    except (EOFError, KeyboardInterrupt):
        print()
        _info("Aborted.")
        sys.exit(0)

    if answer != "y":
        _info("Aborted.")
        sys.exit(0)

    print()


def _print_status(results) -> int:
    pending = 0
    for name, result in results:
        if result.is_satisfied:
            _skip(f"{name}: {result.detail or 'satisfied'}")
        elif result.is_divergent:
            pending += 1
            _warn(f"{name}: {result.detail}")
        else:
            pending += 1
            _error(f"{name}: could not probe: {result.detail}")
    if pending:
        _info(f"{_I.SEARCH}  {pending} of {len(results)} step(s) would act")
    else:
        _info(f"{_I.CHECK}  All {len(results)} step(s) satisfied")
    return EXIT_OK


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    mutating = not (args.status or args.verify)
    if mutating and os.geteuid() != 0:
        _error("hostconverge must run as root for this mode (try: sudo hostconverge)")
        sys.exit(EXIT_FATAL)

    try:
        cfg = load_config(CONFIG_TYPES[args.plan], args.config)
        plan = PLANS[args.plan](cfg)
    except (ConfigError, PolicyViolation) as exc:
        _error(str(exc))
        sys.exit(EXIT_FATAL)

    ctx = RunContext(
        host=Host.local(quiet=args.quiet),
        config=cfg, verbose=args.verbose, quiet=args.quiet,
    )

    if args.status:
        _banner(f"{_I.SEARCH}  hostconverge --status: {plan.name}")
        sys.exit(_print_status(inspect(plan, ctx)))

    if args.verify:
        _banner(f"{_I.SHIELD}  hostconverge --verify: {plan.name}")
        results = verify(plan, ctx)
        ok = all(r.passed or r.advisory for r in results.values())
        sys.exit(EXIT_OK if ok else EXIT_UNVERIFIED)

    audit = _audit(args.audit_log)
    try:
        audit.ensure_writable()
    except OSError as exc:
        _error(f"cannot write audit log {args.audit_log}: {exc.strerror or exc}")
        sys.exit(EXIT_FATAL)

    if args.cleanup:
        _banner(f"{_I.WRENCH}  hostconverge --cleanup: {plan.name}")
        if not args.yes:
            _confirm(plan, cleanup_mode=True)
        outcomes = cleanup(plan, ctx, audit=audit)
        failed = sum(1 for o in outcomes if o.failed)
        if failed:
            _warn(f"{failed} recovery step(s) failed")
        sys.exit(EXIT_OK)

    _banner(f"{_I.ROCKET}  hostconverge: {plan.name}")
    if not args.yes:
        _confirm(plan)

    t0 = time.monotonic()
    report = converge(plan, ctx, deadline=args.deadline, audit=audit)
    if report.halted:
        print_outcome_log(report.outcomes)
    print_report(report)
    _info(f"Finished in {time.monotonic() - t0:.1f}s")
    sys.exit(report.exit_code)


if __name__ == "__main__":
    main()
