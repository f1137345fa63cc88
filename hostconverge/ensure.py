"""Step factories pairing a Resource probe with a conflict-tolerant action.

Actions never assume a clean slate: whatever occupies a path in the wrong
form is removed before the desired form is created.
"""

import socket
import tempfile
from pathlib import Path
from typing import Optional

from .errors import ProbeError
from .resources import Kind, ProbeResult, Resource, probe
from .steps import Policy, Step, Wait


def _resource_probe(res: Resource):
    return lambda ctx: probe(res, ctx)


def ensure_directory(name: str, path, mode: int = 0o755, owner: Optional[str] = None,
                     group: Optional[str] = None, policy: Policy = Policy.FATAL) -> Step:
    res = Resource(Kind.DIRECTORY, str(path), mode=mode, owner=owner, group=group)

    def action(ctx):
        ctx.host.fs.ensure_dir(path, mode)
        if owner or group:
            ctx.host.fs.set_owner(path, owner, group)

    return Step(name, _resource_probe(res), action, policy,
                description=f"directory {path}")


def ensure_file(name: str, path, content: str, mode: int = 0o644,
                owner: Optional[str] = None, group: Optional[str] = None,
                create_only: bool = False, policy: Policy = Policy.FATAL) -> Step:
    """Keep *path* a regular file holding *content*.

    With create_only the file only has to exist: operators may edit it
    afterwards and the step will leave their edits alone.
    """
    if create_only:
        res = Resource(Kind.FILE, str(path))
    else:
        res = Resource(Kind.FILE, str(path), content=content, mode=mode,
                       owner=owner, group=group)

    def action(ctx):
        ctx.host.fs.write_text(path, content, mode)
        if owner or group:
            ctx.host.fs.set_owner(path, owner, group)

    return Step(name, _resource_probe(res), action, policy,
                description=f"file {path}")


def ensure_symlink(name: str, link, target, policy: Policy = Policy.FATAL) -> Step:
    res = Resource(Kind.SYMLINK, str(link), link_to=str(target))

    def action(ctx):
        ctx.host.fs.symlink(target, link)

    return Step(name, _resource_probe(res), action, policy,
                description=f"symlink {link} -> {target}")


def ensure_group(name: str, group: str, system: bool = True,
                 policy: Policy = Policy.FATAL) -> Step:
    res = Resource(Kind.GROUP, group)

    def action(ctx):
        cmd = ["groupadd"] + (["-r"] if system else []) + [group]
        ctx.host.runner.run(cmd)

    return Step(name, _resource_probe(res), action, policy,
                description=f"group {group}")


def ensure_user(name: str, user: str, group: str, home, shell: str = "/bin/bash",
                comment: str = "", system: bool = True,
                policy: Policy = Policy.FATAL) -> Step:
    res = Resource(Kind.USER, user)

    def action(ctx):
        cmd = ["useradd"] + (["-r"] if system else [])
        cmd += ["-g", group, "-d", str(home), "-s", shell]
        if comment:
            cmd += ["-c", comment]
        ctx.host.runner.run(cmd + [user])

    return Step(name, _resource_probe(res), action, policy,
                description=f"user {user}")


def ensure_group_members(name: str, group: str, members,
                         policy: Policy = Policy.FATAL) -> Step:
    res = Resource(Kind.GROUP, group, members=tuple(members))

    def action(ctx):
        for member in members:
            ctx.host.runner.run(["usermod", "-aG", group, member])

    return Step(name, _resource_probe(res), action, policy,
                description=f"{', '.join(members)} in group {group}")


def ensure_packages(name: str, packages, policy: Policy = Policy.FATAL) -> Step:
    """All of *packages* installed; only the missing ones are installed."""
    packages = tuple(packages)

    def missing(ctx):
        return [p for p in packages
                if ctx.host.packages.query(p) != "installed"]

    def check(ctx):
        absent = missing(ctx)
        if absent:
            return ProbeResult.divergent(f"missing packages: {', '.join(absent)}")
        return ProbeResult.satisfied("all packages installed")

    def action(ctx):
        ctx.host.packages.install(missing(ctx))

    return Step(name, check, action, policy,
                description=f"packages {', '.join(packages)}")


def ensure_apt_repo(name: str, list_path, line: str, key_url: str, keyring,
                    policy: Policy = Policy.FATAL) -> Step:
    """A signed apt source: dearmored key in *keyring*, *line* in *list_path*.

    *line* may use ``{arch}``, ``{codename}`` and ``{keyring}``; the first
    two are filled from dpkg and lsb_release when the action runs.  The
    package index is refreshed afterwards.
    """
    list_path, keyring = Path(list_path), Path(keyring)
    url = next((w for w in line.split() if w.startswith("https://")), line)
    key = Resource(Kind.FILE, str(keyring))
    source = Resource(Kind.FILE, str(list_path))

    def check(ctx):
        for res in (key, source):
            result = probe(res, ctx)
            if not result.is_satisfied:
                return result
        try:
            with open(list_path) as fh:
                listed = fh.read()
        except OSError as exc:
            raise ProbeError(f"cannot read {list_path}: {exc.strerror or exc}") from exc
        if url not in listed:
            return ProbeResult.divergent(f"{list_path} does not list {url}")
        return ProbeResult.satisfied(f"{url} configured")

    def action(ctx):
        runner = ctx.host.runner
        arch = codename = ""
        if "{arch}" in line:
            arch = runner.run(["dpkg", "--print-architecture"],
                              capture=True).stdout.strip()
        if "{codename}" in line:
            codename = runner.run(["lsb_release", "-cs"], capture=True).stdout.strip()
        ctx.host.fs.ensure_dir(keyring.parent)
        with tempfile.TemporaryDirectory() as tmp:
            armored = Path(tmp) / "key.asc"
            runner.run(["curl", "-fsSL", "-o", armored, key_url], timeout=120)
            runner.run(["gpg", "--dearmor", "--yes", "-o", keyring, armored])
        ctx.host.fs.set_mode(keyring, 0o644)
        ctx.host.fs.write_text(list_path, line.format(
            arch=arch, codename=codename, keyring=keyring) + "\n")
        ctx.host.packages.refresh()

    return Step(name, check, action, policy, description=f"apt source {url}")


def ensure_service(name: str, unit: str, enable: bool = True,
                   policy: Policy = Policy.FATAL, wait: Optional[Wait] = None) -> Step:
    res = Resource(Kind.SERVICE_UNIT, unit, state="active")

    def action(ctx):
        if enable:
            ctx.host.services.enable(unit)
        ctx.host.services.start(unit)

    return Step(name, _resource_probe(res), action, policy, wait,
                description=f"service {unit} active")


def command_step(name: str, check_cmd, apply_cmds, policy: Policy = Policy.FATAL,
                 wait: Optional[Wait] = None, divergent_detail: str = "",
                 timeout: Optional[float] = None) -> Step:
    """Probe with a command's exit status; repair with one or more commands.

    A missing probe binary is divergence, not an error: the usual reason is
    that the software providing it has not been installed yet.
    """
    check_cmd = list(check_cmd)

    def check(ctx):
        if ctx.host.runner.succeeds(check_cmd, timeout=timeout):
            return ProbeResult.satisfied(" ".join(check_cmd) + " succeeded")
        return ProbeResult.divergent(
            divergent_detail or " ".join(check_cmd) + " failed")

    action = None
    if apply_cmds:
        def action(ctx):
            for cmd in apply_cmds:
                ctx.host.runner.run(cmd, timeout=timeout)

    return Step(name, check, action, policy, wait,
                description=divergent_detail or " ".join(check_cmd))


def port_open(host: str, port: int, timeout: float = 2.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def launch_background(name: str, cmd, host: str, port: int, log_path=None,
                      policy: Policy = Policy.WARN) -> Step:
    """Fire-and-forget launch of a long-running process serving *port*.

    The action spawns and returns at once.  Readiness is not confirmed here:
    pair this with a wait_for_port step further down the plan.  The probe
    counts the launch as satisfied once the port accepts connections or the
    process has been started in this run.
    """
    cmd = list(cmd)
    launched = []

    def check(ctx):
        if port_open(host, port):
            return ProbeResult.satisfied(f"{host}:{port} already serving")
        if launched and launched[-1].poll() is None:
            return ProbeResult.satisfied(f"launched pid {launched[-1].pid}")
        return ProbeResult.divergent(f"nothing serving {host}:{port}")

    def action(ctx):
        launched.append(ctx.host.runner.spawn(
            cmd, log_path=Path(log_path) if log_path else None))

    return Step(name, check, action, policy,
                description=f"background {' '.join(cmd)}")


def wait_for_port(name: str, host: str, port: int, interval: float = 2.0,
                  timeout: float = 30.0, policy: Policy = Policy.WARN) -> Step:
    """Probe-only readiness step polling a TCP port."""

    def check(ctx):
        if port_open(host, port):
            return ProbeResult.satisfied(f"{host}:{port} accepting connections")
        return ProbeResult.divergent(f"{host}:{port} not accepting connections")

    return Step(name, check, None, policy, Wait(interval, timeout),
                description=f"port {host}:{port} ready")
