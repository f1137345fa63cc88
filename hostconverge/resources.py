"""Resource descriptions and the read-only probes that inspect them."""

import grp
import os
import pwd
import shutil
import stat
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

from .errors import ProbeError


class Kind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    USER = "user"
    GROUP = "group"
    COMMAND = "command"
    SERVICE_UNIT = "service-unit"
    PACKAGE = "package"


@dataclass(frozen=True)
class Resource:
    """A named thing on the host plus the expectations a probe checks.

    Only the fields relevant to *kind* are consulted; the rest stay None.
    """

    kind: Kind
    target: str
    content: Optional[str] = None
    mode: Optional[int] = None
    owner: Optional[str] = None
    group: Optional[str] = None
    link_to: Optional[str] = None
    members: Tuple[str, ...] = ()
    state: str = "active"
    search_path: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.target}"


class ProbeState(str, Enum):
    SATISFIED = "satisfied"
    DIVERGENT = "divergent"
    ERROR = "error"


@dataclass(frozen=True)
class ProbeResult:
    state: ProbeState
    detail: str = ""

    @classmethod
    def satisfied(cls, detail: str = "") -> "ProbeResult":
        return cls(ProbeState.SATISFIED, detail)

    @classmethod
    def divergent(cls, detail: str) -> "ProbeResult":
        return cls(ProbeState.DIVERGENT, detail)

    @classmethod
    def error(cls, detail: str) -> "ProbeResult":
        return cls(ProbeState.ERROR, detail)

    @property
    def is_satisfied(self) -> bool:
        return self.state is ProbeState.SATISFIED

    @property
    def is_divergent(self) -> bool:
        return self.state is ProbeState.DIVERGENT

    @property
    def is_error(self) -> bool:
        return self.state is ProbeState.ERROR


# ── filesystem helpers ───────────────────────────────────────────────────────

def _lstat(path: Path):
    """lstat *path*; None when absent.  Other OSErrors become ProbeError."""
    try:
        return path.lstat()
    except FileNotFoundError:
        return None
    except NotADirectoryError:
        # A parent component is a regular file: the path cannot exist.
        return None
    except OSError as exc:
        raise ProbeError(f"cannot stat {path}: {exc.strerror or exc}") from exc


def _describe(st) -> str:
    if stat.S_ISDIR(st.st_mode):
        return "a directory"
    if stat.S_ISLNK(st.st_mode):
        return "a symlink"
    if stat.S_ISREG(st.st_mode):
        return "a regular file"
    return "a special file"


def _check_attrs(path: Path, st, res: Resource) -> Optional[str]:
    """Return a divergence message for mode/owner/group drift, else None."""
    if res.mode is not None and stat.S_IMODE(st.st_mode) != res.mode:
        return (f"{path} has mode {stat.S_IMODE(st.st_mode):o}, "
                f"want {res.mode:o}")
    if res.owner is not None:
        try:
            owner = pwd.getpwuid(st.st_uid).pw_name
        except KeyError:
            owner = str(st.st_uid)
        if owner != res.owner:
            return f"{path} is owned by {owner}, want {res.owner}"
    if res.group is not None:
        try:
            group = grp.getgrgid(st.st_gid).gr_name
        except KeyError:
            group = str(st.st_gid)
        if group != res.group:
            return f"{path} has group {group}, want {res.group}"
    return None


# ── per-kind probes ──────────────────────────────────────────────────────────

def _probe_file(res: Resource, ctx) -> ProbeResult:
    path = Path(res.target)
    st = _lstat(path)
    if st is None:
        return ProbeResult.divergent(f"{path} is missing")
    if not stat.S_ISREG(st.st_mode):
        return ProbeResult.divergent(f"{path} exists as {_describe(st)}")
    if res.content is not None:
        try:
            with open(path) as fh:
                current = fh.read()
        except OSError as exc:
            raise ProbeError(f"cannot read {path}: {exc.strerror or exc}") from exc
        except UnicodeDecodeError:
            return ProbeResult.divergent(f"{path} is not a text file")
        if current != res.content:
            return ProbeResult.divergent(f"{path} content differs")
    drift = _check_attrs(path, st, res)
    if drift:
        return ProbeResult.divergent(drift)
    return ProbeResult.satisfied(f"{path} present")


def _probe_directory(res: Resource, ctx) -> ProbeResult:
    path = Path(res.target)
    st = _lstat(path)
    if st is None:
        return ProbeResult.divergent(f"{path} is missing")
    if not stat.S_ISDIR(st.st_mode):
        return ProbeResult.divergent(f"{path} exists as {_describe(st)}")
    drift = _check_attrs(path, st, res)
    if drift:
        return ProbeResult.divergent(drift)
    return ProbeResult.satisfied(f"{path} present")


def _probe_symlink(res: Resource, ctx) -> ProbeResult:
    path = Path(res.target)
    st = _lstat(path)
    if st is None:
        return ProbeResult.divergent(f"{path} is missing")
    if not stat.S_ISLNK(st.st_mode):
        return ProbeResult.divergent(f"{path} exists as {_describe(st)}")
    try:
        current = os.readlink(path)
    except OSError as exc:
        raise ProbeError(f"cannot read link {path}: {exc.strerror}") from exc
    if res.link_to is not None and current != res.link_to:
        return ProbeResult.divergent(f"{path} points to {current}")
    try:
        os.stat(path)
    except (FileNotFoundError, NotADirectoryError):
        return ProbeResult.divergent(f"{path} is dangling ({current})")
    except OSError as exc:
        raise ProbeError(
            f"cannot follow link {path}: {exc.strerror or exc}") from exc
    return ProbeResult.satisfied(f"{path} -> {current}")


def _probe_user(res: Resource, ctx) -> ProbeResult:
    try:
        pwd.getpwnam(res.target)
    except KeyError:
        return ProbeResult.divergent(f"user {res.target} does not exist")
    return ProbeResult.satisfied(f"user {res.target} exists")


def _probe_group(res: Resource, ctx) -> ProbeResult:
    try:
        entry = grp.getgrnam(res.target)
    except KeyError:
        return ProbeResult.divergent(f"group {res.target} does not exist")
    missing = []
    for member in res.members:
        if member in entry.gr_mem:
            continue
        try:
            if pwd.getpwnam(member).pw_gid == entry.gr_gid:
                continue
        except KeyError:
            pass
        missing.append(member)
    if missing:
        return ProbeResult.divergent(
            f"{', '.join(missing)} not in group {res.target}")
    return ProbeResult.satisfied(f"group {res.target} exists")


def _probe_command(res: Resource, ctx) -> ProbeResult:
    found = shutil.which(res.target, path=res.search_path)
    if found is None:
        return ProbeResult.divergent(f"{res.target} not found on PATH")
    return ProbeResult.satisfied(f"{res.target} at {found}")


def _probe_service(res: Resource, ctx) -> ProbeResult:
    state = ctx.host.services.status(res.target)
    if state != res.state:
        return ProbeResult.divergent(f"{res.target} is {state}, want {res.state}")
    return ProbeResult.satisfied(f"{res.target} is {state}")


def _probe_package(res: Resource, ctx) -> ProbeResult:
    if ctx.host.packages.query(res.target) != "installed":
        return ProbeResult.divergent(f"package {res.target} is not installed")
    return ProbeResult.satisfied(f"package {res.target} installed")


_PROBES = {
    Kind.FILE: _probe_file,
    Kind.DIRECTORY: _probe_directory,
    Kind.SYMLINK: _probe_symlink,
    Kind.USER: _probe_user,
    Kind.GROUP: _probe_group,
    Kind.COMMAND: _probe_command,
    Kind.SERVICE_UNIT: _probe_service,
    Kind.PACKAGE: _probe_package,
}


def probe(resource: Resource, ctx) -> ProbeResult:
    """Inspect *resource* on the live host without changing anything.

    A resource present in a conflicting form (say a directory where a file
    is expected) is DIVERGENT so that the owning step can clean it up.
    ERROR is reserved for cases where the state could not be determined.
    """
    try:
        return _PROBES[resource.kind](resource, ctx)
    except ProbeError as exc:
        return ProbeResult.error(str(exc))
