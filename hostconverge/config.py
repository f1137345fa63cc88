"""Per-plan configuration with the stock values as defaults.

Each plan receives one of these dataclasses explicitly; steps read their
paths, accounts and package lists from it rather than from the environment.
A JSON file can override any field.
"""

import dataclasses
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Tuple

from .errors import ConfigError


ANSIBLE_BINARIES = (
    "ansible", "ansible-playbook", "ansible-galaxy", "ansible-vault",
    "ansible-config", "ansible-inventory", "ansible-doc",
)


@dataclass(frozen=True)
class AnsibleConfig:
    home: str = "/opt/ansible"
    venv: str = "/opt/ansible/venv"
    etc_dir: str = "/etc/ansible"
    playbooks: str = "/opt/ansible/playbooks"
    inventory: str = "/etc/ansible/hosts"
    cfg_file: str = "/etc/ansible/ansible.cfg"
    log_dir: str = "/var/log/ansible"
    bin_dir: str = "/usr/local/bin"
    profile_script: str = "/etc/profile.d/ansible.sh"
    sudoers_file: str = "/etc/sudoers.d/ansible"
    user: str = "ansible"
    group: str = "ansible"
    sudo_group: str = "sudo"
    python: str = "python3"
    prerequisites: Tuple[str, ...] = (
        "python3", "python3-pip", "python3-venv",
        "software-properties-common", "curl", "git", "sudo",
    )
    pip_packages: Tuple[str, ...] = (
        "ansible", "ansible-core", "jmespath", "netaddr", "dnspython",
    )
    collections: Tuple[str, ...] = (
        "community.general", "ansible.posix", "kubernetes.core",
    )
    kubernetes_pip_packages: Tuple[str, ...] = ("kubernetes", "pyyaml", "openshift")
    binaries: Tuple[str, ...] = ANSIBLE_BINARIES

    @property
    def collections_path(self) -> str:
        return str(Path(self.home) / "collections")


@dataclass(frozen=True)
class KubernetesNodeConfig:
    kube_user: str = "ubuntu"
    kube_home: str = "/home/ubuntu"
    prerequisites: Tuple[str, ...] = (
        "apt-transport-https", "ca-certificates", "curl",
        "gnupg", "lsb-release", "software-properties-common",
    )
    fstab: str = "/etc/fstab"
    swaps: str = "/proc/swaps"
    proc_modules: str = "/proc/modules"
    proc_sys: str = "/proc/sys"
    modules: Tuple[str, ...] = ("overlay", "br_netfilter")
    modules_conf: str = "/etc/modules-load.d/k8s.conf"
    sysctls: Dict[str, str] = field(default_factory=lambda: {
        "net.bridge.bridge-nf-call-iptables": "1",
        "net.bridge.bridge-nf-call-ip6tables": "1",
        "net.ipv4.ip_forward": "1",
    })
    sysctl_conf: str = "/etc/sysctl.d/k8s.conf"
    netns_dir: str = "/var/run/netns"

    docker_key_url: str = "https://download.docker.com/linux/ubuntu/gpg"
    docker_keyring: str = "/etc/apt/keyrings/docker.gpg"
    docker_list: str = "/etc/apt/sources.list.d/docker.list"
    docker_repo: str = ("deb [arch={arch} signed-by={keyring}] "
                        "https://download.docker.com/linux/ubuntu {codename} stable")
    runtime_packages: Tuple[str, ...] = ("docker-ce", "docker-ce-cli", "containerd.io")
    containerd_config: str = "/etc/containerd/config.toml"
    docker_daemon_json: str = "/etc/docker/daemon.json"
    docker_daemon: Dict[str, object] = field(default_factory=lambda: {
        "exec-opts": ["native.cgroupdriver=systemd"],
        "log-driver": "json-file",
        "log-opts": {"max-size": "100m"},
        "storage-driver": "overlay2",
    })

    k8s_version: str = "1.31"
    kube_keyring: str = "/etc/apt/keyrings/kubernetes-apt-keyring.gpg"
    kube_list: str = "/etc/apt/sources.list.d/kubernetes.list"
    kube_packages: Tuple[str, ...] = ("kubelet", "kubeadm", "kubectl")
    pod_network_cidr: str = "10.244.0.0/16"
    cri_socket: str = "unix:///var/run/containerd/containerd.sock"
    admin_conf: str = "/etc/kubernetes/admin.conf"
    taints: Tuple[str, ...] = (
        "node-role.kubernetes.io/control-plane",
        "node.kubernetes.io/unreachable",
    )

    cilium_version_url: str = (
        "https://raw.githubusercontent.com/cilium/cilium-cli/master/stable.txt")
    cilium_release_url: str = (
        "https://github.com/cilium/cilium-cli/releases/download/"
        "{version}/cilium-linux-{arch}.tar.gz")
    cilium_bin_dir: str = "/usr/local/bin"
    cilium_interval: float = 30.0
    cilium_timeout: float = 300.0

    node_ready_interval: float = 10.0
    node_ready_timeout: float = 300.0

    helm_key_url: str = "https://baltocdn.com/helm/signing.asc"
    helm_keyring: str = "/usr/share/keyrings/helm.gpg"
    helm_list: str = "/etc/apt/sources.list.d/helm-stable-debian.list"
    helm_repo: str = ("deb [arch={arch} signed-by={keyring}] "
                      "https://baltocdn.com/helm/stable/debian/ all main")

    @property
    def kubeconfig(self) -> str:
        return str(Path(self.kube_home) / ".kube" / "config")

    @property
    def kube_key_url(self) -> str:
        return f"https://pkgs.k8s.io/core:/stable:/v{self.k8s_version}/deb/Release.key"

    @property
    def kube_repo(self) -> str:
        return ("deb [signed-by={keyring}] "
                f"https://pkgs.k8s.io/core:/stable:/v{self.k8s_version}/deb/ /")


@dataclass(frozen=True)
class MonitoringConfig:
    kube_home: str = "/home/ubuntu"
    namespace: str = "monitoring"
    helm_repos: Dict[str, str] = field(default_factory=lambda: {
        "prometheus-community": "https://prometheus-community.github.io/helm-charts",
        "grafana": "https://grafana.github.io/helm-charts",
    })
    release: str = "grafana"
    chart: str = "grafana/grafana"
    chart_values: Dict[str, str] = field(default_factory=lambda: {
        "service.type": "NodePort",
        "service.nodePort": "30000",
        "adminPassword": "admin123",
        "persistence.enabled": "false",
    })
    install_timeout: str = "10m"
    pod_selector: str = "app.kubernetes.io/name=grafana"
    pod_ready_interval: float = 5.0
    pod_ready_timeout: float = 300.0
    node_port: int = 30000
    local_port: int = 3000
    service_port: int = 80
    port_forward_log: str = "/tmp/grafana-portforward.log"
    ready_interval: float = 2.0
    ready_timeout: float = 30.0
    prometheus_image: str = "prom/prometheus:latest"
    prometheus_port: int = 9090
    prometheus_manifest: str = "/var/lib/hostconverge/prometheus.json"

    @property
    def kubeconfig(self) -> str:
        return str(Path(self.kube_home) / ".kube" / "config")


def load_config(cls, path=None):
    """Build *cls* from its defaults plus an optional JSON override file."""
    if path is None:
        return cls()
    path = Path(path)
    try:
        with open(path) as fh:
            overrides = json.load(fh)
    except OSError as exc:
        raise ConfigError(f"cannot read {path}: {exc.strerror or exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(overrides, dict):
        raise ConfigError(f"{path} must hold a JSON object")

    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ConfigError(f"{path}: unknown key(s) {', '.join(unknown)}")

    values = {}
    for key, value in overrides.items():
        values[key] = tuple(value) if isinstance(value, list) else value
    try:
        return cls(**values)
    except TypeError as exc:
        raise ConfigError(f"{path}: {exc}") from exc
