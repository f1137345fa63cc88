"""Host-level collaborators: commands, packages, services, filesystem.

Every mutating call either succeeds or raises ActionError (CommandError for
external commands).  Query calls used by probes raise ProbeError when the
state cannot be determined.
"""

import grp
import os
import pwd
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .console import _info, _warn
from .errors import ActionError, CommandError, ProbeError


class CommandRunner:
    """Thin wrapper over subprocess with the tool's echo conventions."""

    def __init__(self, quiet: bool = False, env: Optional[dict] = None):
        self.quiet = quiet
        self.env = env

    def _environ(self):
        if not self.env:
            return None
        merged = dict(os.environ)
        merged.update(self.env)
        return merged

    def run(self, cmd, check=True, capture=False, timeout=None):
        """Execute *cmd*; raise CommandError on non-zero exit when *check*.

        With quiet the "Running:" echo is suppressed; warnings still print.
        """
        pretty = " ".join(str(c) for c in cmd)
        if not self.quiet:
            _info(f"Running: {pretty}")
        try:
            result = subprocess.run(
                [str(c) for c in cmd],
                capture_output=capture, text=True,
                timeout=timeout, env=self._environ(),
            )
        except FileNotFoundError as exc:
            raise CommandError(cmd, 127, str(exc)) from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandError(cmd, 124, f"timed out after {timeout}s") from exc
        if result.returncode != 0:
            if check:
                raise CommandError(cmd, result.returncode,
                                   (result.stderr or "") if capture else "")
            _warn(f"  ↳ exited {result.returncode}: {pretty}")
        return result

    def query(self, cmd, timeout=None) -> subprocess.CompletedProcess:
        """Run a read-only command silently and hand back the result.

        Only failure to run at all raises (ProbeError); the exit status is
        left for the caller to interpret.
        """
        try:
            return subprocess.run(
                [str(c) for c in cmd], capture_output=True, text=True,
                timeout=timeout, env=self._environ(),
            )
        except FileNotFoundError as exc:
            raise ProbeError(f"{cmd[0]} is not installed") from exc
        except subprocess.TimeoutExpired as exc:
            raise ProbeError(f"{cmd[0]} timed out after {timeout}s") from exc

    def output(self, cmd, timeout=None) -> str:
        """Return stdout of a read-only query; ProbeError unless it exits 0."""
        result = self.query(cmd, timeout=timeout)
        if result.returncode != 0:
            raise ProbeError(
                f"{' '.join(str(c) for c in cmd)} exited {result.returncode}")
        return result.stdout

    def succeeds(self, cmd, timeout=None) -> bool:
        """True when *cmd* exits 0.  Missing binaries count as failure."""
        try:
            return self.query(cmd, timeout=timeout).returncode == 0
        except ProbeError:
            return False

    def spawn(self, cmd, log_path=None) -> subprocess.Popen:
        """Start *cmd* detached and return at once; the caller never waits."""
        pretty = " ".join(str(c) for c in cmd)
        if not self.quiet:
            _info(f"Launching: {pretty}")
        try:
            if log_path is not None:
                with open(log_path, "ab") as log:
                    return subprocess.Popen(
                        [str(c) for c in cmd], stdout=log,
                        stderr=subprocess.STDOUT, stdin=subprocess.DEVNULL,
                        env=self._environ(), start_new_session=True,
                    )
            return subprocess.Popen(
                [str(c) for c in cmd], stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL, stdin=subprocess.DEVNULL,
                env=self._environ(), start_new_session=True,
            )
        except OSError as exc:
            raise CommandError(cmd, 127, str(exc)) from exc


class PackageManager:
    """apt/dpkg collaborator: query(name) and install(names)."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner
        self._updated = False

    def query(self, name: str) -> str:
        try:
            result = subprocess.run(
                ["dpkg-query", "-W", "-f=${Status}", name],
                capture_output=True, text=True,
            )
        except FileNotFoundError as exc:
            raise ProbeError("dpkg-query is not available") from exc
        # dpkg-query exits 1 for packages it has never heard of.
        if result.returncode == 0 and result.stdout.strip().endswith("install ok installed"):
            return "installed"
        return "absent"

    def version(self, name: str) -> str:
        """Installed version of *name*, or "" when it is not installed."""
        if self.query(name) != "installed":
            return ""
        result = self.runner.query(["dpkg-query", "-W", "-f=${Version}", name])
        return result.stdout.strip() if result.returncode == 0 else ""

    def held(self) -> set:
        result = self.runner.query(["apt-mark", "showhold"])
        if result.returncode != 0:
            raise ProbeError(f"apt-mark showhold exited {result.returncode}")
        return set(result.stdout.split())

    def refresh(self) -> None:
        """Re-read the package index, e.g. after adding a repository."""
        self.runner.run(["apt-get", "update"])
        self._updated = True

    def install(self, names, allow_downgrades: bool = False) -> None:
        if not names:
            return
        if not self._updated:
            self.refresh()
        extra = ["--allow-downgrades"] if allow_downgrades else []
        self.runner.run(["apt-get", "install", "-y", *extra, *names])

    def hold(self, names, hold: bool = True) -> None:
        self.runner.run(["apt-mark", "hold" if hold else "unhold", *names])


class ServiceManager:
    """systemctl collaborator."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def status(self, unit: str) -> str:
        try:
            result = subprocess.run(
                ["systemctl", "is-active", unit],
                capture_output=True, text=True,
            )
        except FileNotFoundError as exc:
            raise ProbeError("systemctl is not available") from exc
        state = result.stdout.strip()
        return state or "unknown"

    def start(self, unit: str) -> None:
        self.runner.run(["systemctl", "start", unit])

    def stop(self, unit: str) -> None:
        self.runner.run(["systemctl", "stop", unit])

    def restart(self, unit: str) -> None:
        self.runner.run(["systemctl", "restart", unit])

    def enable(self, unit: str) -> None:
        self.runner.run(["systemctl", "enable", unit])


class Filesystem:
    """Filesystem collaborator.  Each call is one ActionError-or-success."""

    def __init__(self, quiet: bool = False):
        self.quiet = quiet

    def _note(self, msg: str) -> None:
        if not self.quiet:
            _info(msg)

    def remove(self, path) -> None:
        """Remove whatever occupies *path*: file, symlink or directory tree."""
        path = Path(path)
        try:
            if path.is_symlink() or path.is_file():
                path.unlink()
            elif path.is_dir():
                shutil.rmtree(path)
            else:
                return
        except OSError as exc:
            raise ActionError(f"cannot remove {path}: {exc}") from exc
        self._note(f"Removed {path}")

    def ensure_dir(self, path, mode: int = 0o755) -> None:
        path = Path(path)
        if path.is_symlink() or (path.exists() and not path.is_dir()):
            self.remove(path)
        try:
            path.mkdir(parents=True, exist_ok=True)
            os.chmod(path, mode)
        except OSError as exc:
            raise ActionError(f"cannot create {path}: {exc}") from exc
        self._note(f"Created dir {path}")

    def write_text(self, path, content: str, mode: int = 0o644) -> None:
        """Atomically replace *path* with *content*.

        A directory (or anything else) sitting at *path* is removed first.
        """
        path = Path(path)
        if path.is_symlink() or path.is_dir():
            self.remove(path)
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w") as fh:
                fh.write(content)
            os.chmod(tmp, mode)
            tmp.replace(path)
        except OSError as exc:
            raise ActionError(f"cannot write {path}: {exc}") from exc
        self._note(f"Wrote {path}")

    def set_mode(self, path, mode: int) -> None:
        try:
            os.chmod(path, mode)
        except OSError as exc:
            raise ActionError(f"cannot chmod {path}: {exc}") from exc

    def set_owner(self, path, user=None, group=None, recursive=False) -> None:
        path = Path(path)
        targets = [path]
        if recursive and path.is_dir() and not path.is_symlink():
            for root, dirs, files in os.walk(path):
                targets.extend(Path(root) / name for name in dirs + files)
        try:
            for target in targets:
                if target.is_symlink():
                    os.lchown(target, *_ids(user, group))
                else:
                    shutil.chown(target, user=user, group=group)
        except (OSError, LookupError) as exc:
            raise ActionError(f"cannot chown {path}: {exc}") from exc
        self._note(f"Set owner of {path} to {user or ''}:{group or ''}")

    def symlink(self, target, link) -> None:
        """Point *link* at *target*, replacing whatever is there."""
        link = Path(link)
        if link.is_symlink() or link.exists():
            self.remove(link)
        try:
            link.parent.mkdir(parents=True, exist_ok=True)
            link.symlink_to(target)
        except OSError as exc:
            raise ActionError(f"cannot link {link}: {exc}") from exc
        self._note(f"Linked {link} -> {target}")


def _ids(user, group):
    uid = pwd.getpwnam(user).pw_uid if user else -1
    gid = grp.getgrnam(group).gr_gid if group else -1
    return uid, gid


@dataclass
class Host:
    runner: CommandRunner
    packages: PackageManager
    services: ServiceManager
    fs: Filesystem

    @classmethod
    def local(cls, quiet: bool = False, env: Optional[dict] = None) -> "Host":
        runner = CommandRunner(quiet=quiet, env=env)
        return cls(
            runner=runner,
            packages=PackageManager(runner),
            services=ServiceManager(runner),
            fs=Filesystem(quiet=quiet),
        )


@dataclass
class RunContext:
    """Everything a probe, action or check may use; nothing else is shared."""

    host: Host
    config: Any = None
    verbose: bool = False
    quiet: bool = False
