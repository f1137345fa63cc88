"""Recovery pass: repairs cross-cutting drift no ordinary step owns."""

import grp
import os
import pwd
from pathlib import Path

from .errors import PolicyViolation, ProbeError
from .resources import ProbeResult
from .sequencer import Sequencer
from .steps import Policy, Step


class RecoveryPass:
    """A small Warn-only step set run after verification, whatever happened.

    Recovery must never abort the run, so every step has to be declared
    with Policy.WARN.
    """

    def __init__(self, steps):
        for step in steps:
            if step.policy is not Policy.WARN:
                raise PolicyViolation(
                    f"recovery step {step.name!r} must use the warn policy")
        self.steps = tuple(steps)

    def run(self, ctx, audit=None):
        report = Sequencer(ctx, audit=audit, phase="recovery").run(self.steps)
        return report.outcomes


def reset_ownership(name: str, root, user: str, group: str) -> Step:
    """Everything under *root* owned by user:group.  Absent root is fine."""
    root = Path(root)

    def check(ctx):
        if not root.exists():
            return ProbeResult.satisfied(f"{root} absent, nothing to own")
        try:
            uid = pwd.getpwnam(user).pw_uid
            gid = grp.getgrnam(group).gr_gid
        except KeyError as exc:
            raise ProbeError(f"unknown account {exc.args[0]}") from exc
        paths = [root]
        for dirpath, dirs, files in os.walk(root):
            paths.extend(Path(dirpath) / n for n in dirs + files)
        for path in paths:
            try:
                st = path.lstat()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise ProbeError(f"cannot stat {path}: {exc.strerror}") from exc
            if st.st_uid != uid or st.st_gid != gid:
                return ProbeResult.divergent(f"{path} not owned by {user}:{group}")
        return ProbeResult.satisfied(f"{root} owned by {user}:{group}")

    def action(ctx):
        ctx.host.fs.set_owner(root, user, group, recursive=True)

    return Step(name, check, action, Policy.WARN,
                description=f"ownership of {root}")


def prune_dangling_symlinks(name: str, links) -> Step:
    """Remove symlinks whose targets vanished.

    *links* maps link path -> intended target.  A pruned link is re-created
    when its intended target exists again.
    """
    links = {Path(k): Path(v) for k, v in dict(links).items()}

    def dangling():
        return [link for link in links
                if link.is_symlink() and not link.exists()]

    def check(ctx):
        broken = dangling()
        if broken:
            return ProbeResult.divergent(
                "dangling: " + ", ".join(str(p) for p in broken))
        return ProbeResult.satisfied("no dangling symlinks")

    def action(ctx):
        for link in dangling():
            ctx.host.fs.remove(link)
            target = links[link]
            if target.exists():
                ctx.host.fs.symlink(target, link)

    return Step(name, check, action, Policy.WARN,
                description="dangling symlinks")
