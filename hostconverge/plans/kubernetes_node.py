"""Single-node Kubernetes cluster on this host.

Container runtime from Docker's apt repository, pinned kubeadm/kubelet/
kubectl, swap and kernel prerequisites, mount propagation (WSL2 needs an
rshared root and netns dir for Cilium), ``kubeadm init``, the operator's
kubeconfig, single-node taint cleanup, Cilium as CNI and finally Helm.
"""

import hashlib
import json
import platform
import re
import tempfile
from pathlib import Path

from ..engine import Plan
from ..ensure import (
    ensure_apt_repo, ensure_directory, ensure_file, ensure_group_members,
    ensure_packages, ensure_service,
)
from ..errors import ActionError, ProbeError
from ..recovery import reset_ownership
from ..resources import Kind, ProbeResult, Resource, probe
from ..steps import Policy, Step, Wait
from ..verifier import Check, command_check

SWAP_LINE = re.compile(r"^([^#\n].*\sswap\s.*)$", re.MULTILINE)
SYSTEMD_CGROUP = re.compile(r"SystemdCgroup\s*=\s*false")
DISABLED_PLUGINS = re.compile(r"^(\s*)disabled_plugins\s*=.*$", re.MULTILINE)
CRI_DISABLED = re.compile(r"^\s*disabled_plugins\s*=\s*\[[^\]]*\"cri\"", re.MULTILINE)


def _read(path) -> str:
    try:
        with open(path) as fh:
            return fh.read()
    except OSError as exc:
        raise ProbeError(f"cannot read {path}: {exc.strerror or exc}") from exc


def _kubectl(cfg, *args):
    return ["env", f"KUBECONFIG={cfg.kubeconfig}", "kubectl", *args]


def _cilium(cfg, *args):
    cilium = str(Path(cfg.cilium_bin_dir) / "cilium")
    return ["env", f"KUBECONFIG={cfg.kubeconfig}", cilium, *args]


# ── container runtime ────────────────────────────────────────────────────────

def _containerd_config_step(cfg) -> Step:
    path = Path(cfg.containerd_config)

    def check(ctx):
        if not path.exists():
            return ProbeResult.divergent(f"{path} is missing")
        text = _read(path)
        if SYSTEMD_CGROUP.search(text) or "SystemdCgroup" not in text:
            return ProbeResult.divergent("containerd not using the systemd cgroup driver")
        if CRI_DISABLED.search(text):
            return ProbeResult.divergent("containerd CRI plugin disabled")
        return ProbeResult.satisfied(f"{path} configured for Kubernetes")

    def action(ctx):
        default = ctx.host.runner.run(["containerd", "config", "default"],
                                      capture=True).stdout
        text = SYSTEMD_CGROUP.sub("SystemdCgroup = true", default)
        text = DISABLED_PLUGINS.sub(r"\1disabled_plugins = []", text)
        ctx.host.fs.ensure_dir(path.parent)
        ctx.host.fs.write_text(path, text)
        ctx.host.services.restart("containerd")

    return Step("containerd-config", check, action,
                description=f"{path} with SystemdCgroup and CRI enabled")


def _docker_daemon_step(cfg) -> Step:
    content = json.dumps(cfg.docker_daemon, indent=2) + "\n"
    written = ensure_file("docker-daemon-config", cfg.docker_daemon_json, content)

    def action(ctx):
        written.action(ctx)
        ctx.host.services.restart("docker")

    return Step(written.name, written.probe, action, Policy.WARN,
                description=written.description)


# ── kubernetes packages ──────────────────────────────────────────────────────

def _kube_packages_step(cfg) -> Step:
    names = list(cfg.kube_packages)

    def check(ctx):
        wrong = []
        for name in names:
            version = ctx.host.packages.version(name)
            if not version:
                wrong.append(f"{name} missing")
            elif not version.startswith(cfg.k8s_version + "."):
                wrong.append(f"{name} {version}")
        if wrong:
            return ProbeResult.divergent(", ".join(wrong))
        unheld = [n for n in names if n not in ctx.host.packages.held()]
        if unheld:
            return ProbeResult.divergent(f"not held: {', '.join(unheld)}")
        return ProbeResult.satisfied(f"{', '.join(names)} {cfg.k8s_version} held")

    def action(ctx):
        ctx.host.packages.hold(names, hold=False)
        ctx.host.packages.install([f"{n}={cfg.k8s_version}.*" for n in names],
                                  allow_downgrades=True)
        ctx.host.packages.hold(names)

    return Step("kubernetes-packages", check, action,
                description=f"{', '.join(names)} {cfg.k8s_version}.* held")


# ── swap ─────────────────────────────────────────────────────────────────────

def swap_probe(cfg):
    def check(ctx):
        lines = _read(cfg.swaps).splitlines()[1:]
        active = [line.split()[0] for line in lines if line.strip()]
        if active:
            return ProbeResult.divergent(f"swap active on {', '.join(active)}")
        return ProbeResult.satisfied("no active swap")
    return check


def _swap_off_step(cfg) -> Step:
    def action(ctx):
        ctx.host.runner.run(["swapoff", "-a"])

    return Step("swap-off", swap_probe(cfg), action,
                description="disable all active swap")


def _fstab_step(cfg) -> Step:
    def check(ctx):
        if not Path(cfg.fstab).exists():
            return ProbeResult.satisfied(f"{cfg.fstab} absent")
        entries = SWAP_LINE.findall(_read(cfg.fstab))
        if entries:
            return ProbeResult.divergent(
                f"{len(entries)} swap entr{'y' if len(entries) == 1 else 'ies'} "
                f"in {cfg.fstab}")
        return ProbeResult.satisfied(f"no swap entries in {cfg.fstab}")

    def action(ctx):
        text = _read(cfg.fstab)
        mode = Path(cfg.fstab).stat().st_mode & 0o777
        ctx.host.fs.write_text(cfg.fstab, SWAP_LINE.sub(r"# \1", text), mode)

    return Step("fstab-swap", check, action,
                description=f"comment out swap entries in {cfg.fstab}")


# ── kernel ───────────────────────────────────────────────────────────────────

def _modules_loaded_step(cfg) -> Step:
    def missing():
        loaded = {line.split()[0] for line in _read(cfg.proc_modules).splitlines()
                  if line.strip()}
        return [m for m in cfg.modules if m not in loaded]

    def check(ctx):
        absent = missing()
        if absent:
            return ProbeResult.divergent(f"modules not loaded: {', '.join(absent)}")
        return ProbeResult.satisfied("kernel modules loaded")

    def action(ctx):
        for module in missing():
            ctx.host.runner.run(["modprobe", module])

    return Step("kernel-modules-loaded", check, action,
                description=f"load {', '.join(cfg.modules)}")


def sysctl_probe(cfg, keys=None):
    keys = list(keys or cfg.sysctls)

    def check(ctx):
        wrong = []
        for key in keys:
            path = Path(cfg.proc_sys) / key.replace(".", "/")
            if not path.exists():
                wrong.append(f"{key} unavailable")
                continue
            value = _read(path).strip()
            if value != cfg.sysctls[key]:
                wrong.append(f"{key}={value}")
        if wrong:
            return ProbeResult.divergent(", ".join(wrong))
        return ProbeResult.satisfied("sysctls applied")
    return check


def _sysctl_live_step(cfg) -> Step:
    def action(ctx):
        ctx.host.runner.run(["sysctl", "--system"])

    return Step("sysctl-live", sysctl_probe(cfg), action,
                description="apply Kubernetes sysctls to the running kernel")


# ── mounts ───────────────────────────────────────────────────────────────────

def _propagation(ctx, target: str) -> str:
    """Mount propagation of *target*, or "" when it is not a mount point."""
    result = ctx.host.runner.query(["findmnt", "-no", "PROPAGATION", target])
    return result.stdout.strip() if result.returncode == 0 else ""


def _shared_root_step(cfg) -> Step:
    def check(ctx):
        propagation = _propagation(ctx, "/")
        if "shared" in propagation:
            return ProbeResult.satisfied(f"/ is {propagation}")
        return ProbeResult.divergent(f"/ propagation is {propagation or 'unknown'}")

    def action(ctx):
        ctx.host.runner.run(["mount", "--make-rshared", "/"])

    return Step("root-mount-shared", check, action, Policy.WARN,
                description="make / rshared (WSL2)")


def _shared_netns_step(cfg) -> Step:
    netns = cfg.netns_dir

    def check(ctx):
        propagation = _propagation(ctx, netns)
        if not propagation:
            return ProbeResult.divergent(f"{netns} is not a mount point")
        if "shared" in propagation:
            return ProbeResult.satisfied(f"{netns} is {propagation}")
        return ProbeResult.divergent(f"{netns} propagation is {propagation}")

    def action(ctx):
        if not _propagation(ctx, netns):
            ctx.host.runner.run(["mount", "--bind", netns, netns])
        ctx.host.runner.run(["mount", "--make-rshared", netns])

    return Step("netns-shared", check, action, Policy.WARN,
                description=f"make {netns} an rshared mount")


# ── cluster ──────────────────────────────────────────────────────────────────

def _kubeadm_init_step(cfg) -> Step:
    admin = Resource(Kind.FILE, cfg.admin_conf)

    def check(ctx):
        result = probe(admin, ctx)
        if result.is_divergent:
            return ProbeResult.divergent("cluster not initialised")
        return result

    def action(ctx):
        # Clear leftovers of an earlier failed init.
        ctx.host.runner.run(["kubeadm", "reset", "-f", "--cri-socket", cfg.cri_socket],
                            check=False)
        ctx.host.runner.run([
            "kubeadm", "init",
            f"--pod-network-cidr={cfg.pod_network_cidr}",
            "--cri-socket", cfg.cri_socket,
            f"--kubernetes-version=v{cfg.k8s_version}.0",
        ])

    return Step("kubeadm-init", check, action,
                description=f"kubeadm init, pod network {cfg.pod_network_cidr}")


def _kubeconfig_step(cfg) -> Step:
    def check(ctx):
        if not Path(cfg.admin_conf).exists():
            return ProbeResult.divergent(f"{cfg.admin_conf} not generated yet")
        res = Resource(Kind.FILE, cfg.kubeconfig, content=_read(cfg.admin_conf),
                       mode=0o600, owner=cfg.kube_user, group=cfg.kube_user)
        return probe(res, ctx)

    def action(ctx):
        ctx.host.fs.write_text(cfg.kubeconfig, _read(cfg.admin_conf), 0o600)
        ctx.host.fs.set_owner(cfg.kubeconfig, cfg.kube_user, cfg.kube_user)

    return Step("kubeconfig", check, action,
                description=f"{cfg.admin_conf} copied to {cfg.kubeconfig}")


def _taint_step(cfg, taint: str) -> Step:
    short = taint.rsplit("/", 1)[-1]

    def check(ctx):
        keys = ctx.host.runner.output(_kubectl(
            cfg, "get", "nodes", "-o",
            "jsonpath={.items[*].spec.taints[*].key}"), timeout=30).split()
        if taint in keys:
            return ProbeResult.divergent(f"{taint} taint present")
        return ProbeResult.satisfied(f"no {taint} taint")

    def action(ctx):
        ctx.host.runner.run(_kubectl(cfg, "taint", "nodes", "--all", f"{taint}-"))

    # Taint removal is best-effort on a single node.
    return Step(f"untaint-{short}", check, action, Policy.WARN,
                description=f"remove {taint} taint")


# ── cilium ───────────────────────────────────────────────────────────────────

def _cli_arch() -> str:
    return "arm64" if platform.machine() == "aarch64" else "amd64"


def _verify_sha256(path: Path, sum_file: Path) -> None:
    try:
        expected = sum_file.read_text().split()[0]
    except (OSError, IndexError) as exc:
        raise ActionError(f"unreadable checksum file {sum_file.name}") from exc
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(1 << 20), b""):
            digest.update(chunk)
    if digest.hexdigest() != expected:
        raise ActionError(f"checksum mismatch for {path.name}")


def _cilium_cli_step(cfg) -> Step:
    binary = Resource(Kind.COMMAND, "cilium", search_path=cfg.cilium_bin_dir)

    def action(ctx):
        runner = ctx.host.runner
        version = runner.run(["curl", "-fsSL", cfg.cilium_version_url],
                             capture=True, timeout=60).stdout.strip()
        url = cfg.cilium_release_url.format(version=version, arch=_cli_arch())
        with tempfile.TemporaryDirectory() as tmp:
            tarball = Path(tmp) / url.rsplit("/", 1)[-1]
            sums = tarball.with_name(tarball.name + ".sha256sum")
            runner.run(["curl", "-fL", "-o", tarball, url], timeout=600)
            runner.run(["curl", "-fL", "-o", sums, url + ".sha256sum"], timeout=60)
            _verify_sha256(tarball, sums)
            runner.run(["tar", "xzf", tarball, "-C", cfg.cilium_bin_dir, "cilium"])

    return Step("cilium-cli", lambda ctx: probe(binary, ctx), action,
                description=f"cilium CLI in {cfg.cilium_bin_dir}")


def _cilium_cni_step(cfg) -> Step:
    def installed(ctx):
        return ctx.host.runner.succeeds(
            _kubectl(cfg, "-n", "kube-system", "get", "daemonset", "cilium"),
            timeout=30)

    def check(ctx):
        if ctx.host.runner.succeeds(_cilium(cfg, "status"), timeout=60):
            return ProbeResult.satisfied("cilium healthy")
        if installed(ctx):
            return ProbeResult.divergent("cilium installed but not ready")
        return ProbeResult.divergent("cilium not installed")

    def action(ctx):
        if not installed(ctx):
            ctx.host.runner.run(_cilium(cfg, "install"), timeout=600)

    return Step("cilium-cni", check, action,
                wait=Wait(cfg.cilium_interval, cfg.cilium_timeout),
                description="Cilium CNI installed and healthy")


def _node_ready_step(cfg) -> Step:
    def check(ctx):
        result = ctx.host.runner.query(
            _kubectl(cfg, "get", "nodes", "--no-headers"), timeout=30)
        if result.returncode != 0:
            return ProbeResult.divergent("API server not answering")
        statuses = [line.split()[1] for line in result.stdout.splitlines()
                    if len(line.split()) > 1]
        if statuses and all(s == "Ready" for s in statuses):
            return ProbeResult.satisfied(f"{len(statuses)} node(s) Ready")
        return ProbeResult.divergent(
            f"node status: {', '.join(statuses) or 'no nodes'}")

    return Step("node-ready", check, None, Policy.WARN,
                Wait(cfg.node_ready_interval, cfg.node_ready_timeout),
                description="wait for every node to report Ready")


def build(cfg) -> Plan:
    modules_conf = "".join(f"{m}\n" for m in cfg.modules)
    sysctl_conf = "".join(f"{k} = {v}\n" for k, v in cfg.sysctls.items())
    kube_dir = Path(cfg.kubeconfig).parent

    steps = [
        ensure_packages("prerequisites", cfg.prerequisites),
        ensure_apt_repo("docker-apt-repo", cfg.docker_list, cfg.docker_repo,
                        cfg.docker_key_url, cfg.docker_keyring),
        ensure_packages("container-runtime", cfg.runtime_packages),
        _containerd_config_step(cfg),
        _docker_daemon_step(cfg),
        ensure_service("service-containerd", "containerd"),
        ensure_service("service-docker", "docker", policy=Policy.WARN),
        ensure_group_members("docker-group", "docker", [cfg.kube_user],
                             policy=Policy.WARN),
        ensure_apt_repo("kubernetes-apt-repo", cfg.kube_list, cfg.kube_repo,
                        cfg.kube_key_url, cfg.kube_keyring),
        _kube_packages_step(cfg),
        _swap_off_step(cfg),
        _fstab_step(cfg),
        ensure_file("kernel-modules-persisted", cfg.modules_conf, modules_conf),
        _modules_loaded_step(cfg),
        ensure_file("sysctl-persisted", cfg.sysctl_conf, sysctl_conf),
        _sysctl_live_step(cfg),
        ensure_directory("netns-dir", cfg.netns_dir),
        _shared_root_step(cfg),
        _shared_netns_step(cfg),
        _kubeadm_init_step(cfg),
        ensure_directory("kube-dir", kube_dir,
                         owner=cfg.kube_user, group=cfg.kube_user),
        _kubeconfig_step(cfg),
        ensure_service("service-kubelet", "kubelet",
                       policy=Policy.WARN, wait=Wait(2.0, 30.0)),
    ]
    steps += [_taint_step(cfg, taint) for taint in cfg.taints]
    steps += [
        _cilium_cli_step(cfg),
        _cilium_cni_step(cfg),
        _node_ready_step(cfg),
        ensure_apt_repo("helm-apt-repo", cfg.helm_list, cfg.helm_repo,
                        cfg.helm_key_url, cfg.helm_keyring, policy=Policy.WARN),
        ensure_packages("helm", ["helm"], policy=Policy.WARN),
    ]

    checks = [
        Check("swap-inactive", swap_probe(cfg)),
        Check("ip-forwarding", sysctl_probe(cfg, ["net.ipv4.ip_forward"])),
        command_check("kubectl-nodes",
                      _kubectl(cfg, "get", "nodes", "--request-timeout=10s"),
                      advisory=True, timeout=30),
        command_check("cilium-status", _cilium(cfg, "status"),
                      advisory=True, timeout=60),
    ]

    recovery = [
        reset_ownership("own-kubeconfig", kube_dir, cfg.kube_user, cfg.kube_user),
    ]

    return Plan(
        name="kubernetes-node",
        description="Set this host up as a single-node Kubernetes cluster",
        steps=steps, checks=checks, recovery=recovery,
    )
