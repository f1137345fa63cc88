"""System-wide Ansible in /opt/ansible, usable by every local account."""

from pathlib import Path

from ..engine import Plan
from ..ensure import (
    command_step, ensure_directory, ensure_file, ensure_group,
    ensure_group_members, ensure_packages, ensure_symlink, ensure_user,
)
from ..errors import ActionError, CommandError, ProbeError
from ..recovery import prune_dangling_symlinks, reset_ownership
from ..resources import Kind, ProbeResult, Resource, probe
from ..steps import Policy, Step
from ..verifier import command_check


PROFILE_TEMPLATE = """\
# Ansible Environment Setup
export ANSIBLE_CONFIG="{cfg_file}"
export ANSIBLE_HOME="{home}"
export ANSIBLE_INVENTORY="{inventory}"
export ANSIBLE_PLAYBOOKS="{playbooks}"
export ANSIBLE_LOG_PATH="{log_dir}/ansible.log"

# Add ansible bin to PATH if not already there
if [[ ":$PATH:" != *":{bin_dir}:"* ]]; then
    export PATH="{bin_dir}:$PATH"
fi
"""

INVENTORY = """\
# Ansible System-Wide Inventory
[local]
localhost ansible_connection=local

[local:vars]
ansible_python_interpreter=/usr/bin/python3

# Example groups for local management
[workstations]
# Add workstation hostnames here

[servers]
# Add server hostnames here

[all:vars]
# Global variables
ansible_user={user}
ansible_become=yes
ansible_become_method=sudo
"""

ANSIBLE_CFG_TEMPLATE = """\
# Ansible System-Wide Configuration
[defaults]
inventory = {inventory}
library = {home}/library
module_utils = {home}/module_utils
collections_path = {collections_path}:/usr/share/ansible/collections
remote_tmp = /tmp/.ansible-${{USER}}/tmp
local_tmp = /tmp/.ansible-${{USER}}/tmp
forks = 5
poll_interval = 15
transport = smart
remote_port = 22
module_lang = C
gathering = implicit
gather_subset = all
gather_timeout = 10
roles_path = {playbooks}/roles
host_key_checking = False
stdout_callback = yaml
display_skipped_hosts = False
display_ok_hosts = True
display_failed_stderr = True
system_warnings = True
deprecation_warnings = True
bin_ansible_callbacks = True
nocows = 1
retry_files_enabled = False
log_path = {log_dir}/ansible.log

[inventory]
enable_plugins = host_list, script, auto, yaml, ini, toml

[privilege_escalation]
become = True
become_method = sudo
become_user = root
become_ask_pass = False

[ssh_connection]
ssh_args = -C -o ControlMaster=auto -o ControlPersist=60s
control_path_dir = /tmp/.ansible-cp
pipelining = True
transfer_method = smart

[persistent_connection]
connect_timeout = 30
command_timeout = 30
"""

HELLO_WORLD = """\
---
# Simple Hello World Playbook
- name: Hello World from Ansible
  hosts: local
  gather_facts: no
  tasks:
    - name: Say hello
      debug:
        msg: "Hello World! Ansible is working correctly on {{ inventory_hostname }}"

    - name: Show current date and time
      debug:
        msg: "Current date/time: {{ ansible_date_time.iso8601 }}"
      when: ansible_date_time is defined
"""

SYSTEM_SETUP = """\
---
# System Setup Playbook for Local Management
- name: Local System Setup and Configuration
  hosts: local
  gather_facts: yes
  become: yes
  vars:
    common_packages:
      - htop
      - vim
      - curl
      - wget
      - git
      - tree
      - unzip

  tasks:
    - name: Update package cache
      apt:
        update_cache: yes
        cache_valid_time: 3600

    - name: Install common packages
      apt:
        name: "{{ common_packages }}"
        state: present

    - name: Create system info file
      template:
        src: system_info.j2
        dest: /tmp/system_info.txt
        mode: '0644'
      vars:
        timestamp: "{{ ansible_date_time.iso8601 }}"
"""

SYSTEM_INFO_TEMPLATE = """\
System Information Report
=========================
Generated by Ansible on {{ timestamp }}

Hostname: {{ ansible_hostname }}
Operating System: {{ ansible_distribution }} {{ ansible_distribution_version }}
Kernel: {{ ansible_kernel }}
Architecture: {{ ansible_architecture }}
CPU Cores: {{ ansible_processor_vcpus }}

Ansible Version: {{ ansible_version.full }}
Python Version: {{ ansible_python_version }}
"""

K8S_TEST = """\
---
- name: Kubernetes Test Playbook
  hosts: localhost
  connection: local
  gather_facts: false

  tasks:
    - name: Test kubernetes.core collection
      kubernetes.core.k8s_info:
        api_version: v1
        kind: Namespace
        name: default
      register: namespace_info
      failed_when: false

    - name: Display connection status
      ansible.builtin.debug:
        msg: >-
          {{ 'Kubernetes connection failed; the collection is installed and ready to use.'
             if namespace_info.failed else 'Successfully connected to Kubernetes cluster!' }}
"""

PLAYBOOK_DIRS = ("roles", "group_vars", "host_vars", "templates")


def _virtualenv_step(cfg) -> Step:
    venv = Path(cfg.venv)
    marker = Resource(Kind.FILE, str(venv / "bin" / "ansible"))

    def action(ctx):
        # A venv without bin/ansible is a partial install: start over.
        ctx.host.fs.remove(venv)
        ctx.host.runner.run([cfg.python, "-m", "venv", str(venv)])
        pip = [str(venv / "bin" / "python"), "-m", "pip", "install"]
        ctx.host.runner.run(pip + ["--upgrade", "pip"])
        ctx.host.runner.run(pip + list(cfg.pip_packages))

    return Step("ansible-virtualenv", lambda ctx: probe(marker, ctx), action,
                description=f"Ansible virtualenv in {venv}")


def _collection_dir(cfg, name: str) -> Path:
    namespace, _, collection = name.partition(".")
    return Path(cfg.collections_path) / "ansible_collections" / namespace / collection


def _collections_step(cfg) -> Step:
    galaxy = str(Path(cfg.venv) / "bin" / "ansible-galaxy")

    def missing(ctx):
        absent = []
        for name in cfg.collections:
            result = probe(Resource(Kind.DIRECTORY, str(_collection_dir(cfg, name))), ctx)
            if result.is_error:
                raise ProbeError(result.detail)
            if result.is_divergent:
                absent.append(name)
        return absent

    def check(ctx):
        absent = missing(ctx)
        if absent:
            return ProbeResult.divergent(f"collections missing: {', '.join(absent)}")
        return ProbeResult.satisfied("collections installed")

    def action(ctx):
        ctx.host.fs.ensure_dir(cfg.collections_path)
        failed = []
        for name in missing(ctx):
            try:
                ctx.host.runner.run([galaxy, "collection", "install", name,
                                     "--collections-path", cfg.collections_path,
                                     "--force"])
            except CommandError as exc:
                failed.append(f"{name} ({exc})")
        if failed:
            raise ActionError("collection install failed: " + "; ".join(failed))

    # Galaxy installs are best-effort: a network hiccup must not abort.
    return Step("ansible-collections", check, action, Policy.WARN,
                description=f"Galaxy collections {', '.join(cfg.collections)}")


def _kubernetes_modules_step(cfg) -> Step:
    """Python client libraries the kubernetes.core modules import."""
    python = str(Path(cfg.venv) / "bin" / "python")
    pip = [python, "-m", "pip", "install", *cfg.kubernetes_pip_packages]
    return command_step(
        "ansible-kubernetes-modules",
        [python, "-c", "import kubernetes, yaml"],
        [pip],
        Policy.WARN,
        divergent_detail="kubernetes/yaml modules missing from the virtualenv",
        timeout=600,
    )


def _env_command(cfg, *cmd):
    return ["env", f"ANSIBLE_CONFIG={cfg.cfg_file}",
            f"PATH={cfg.bin_dir}:/usr/sbin:/usr/bin:/sbin:/bin", *cmd]


def build(cfg) -> Plan:
    fmt = dict(
        home=cfg.home, inventory=cfg.inventory, playbooks=cfg.playbooks,
        log_dir=cfg.log_dir, cfg_file=cfg.cfg_file, bin_dir=cfg.bin_dir,
        collections_path=cfg.collections_path, user=cfg.user,
    )
    playbooks = Path(cfg.playbooks)
    owned = dict(owner=cfg.user, group=cfg.group)

    steps = [
        ensure_packages("prerequisites", cfg.prerequisites),
        ensure_group("ansible-group", cfg.group),
        ensure_user("ansible-user", cfg.user, cfg.group, cfg.home,
                    comment="Ansible System User"),
        ensure_group_members("ansible-sudo", cfg.sudo_group, [cfg.user]),
        ensure_file("ansible-sudoers", cfg.sudoers_file,
                    f"{cfg.user} ALL=(ALL) NOPASSWD:ALL\n", mode=0o440),
        ensure_directory("ansible-home", cfg.home, **owned),
        ensure_directory("ansible-etc", cfg.etc_dir),
        ensure_directory("ansible-playbooks", cfg.playbooks, **owned),
        ensure_directory("ansible-logs", cfg.log_dir, **owned),
        _virtualenv_step(cfg),
    ]
    steps += [
        ensure_symlink(f"link-{binary}", Path(cfg.bin_dir) / binary,
                       Path(cfg.venv) / "bin" / binary)
        for binary in cfg.binaries
    ]
    steps += [
        ensure_file("profile-env", cfg.profile_script,
                    PROFILE_TEMPLATE.format(**fmt)),
        ensure_file("inventory", cfg.inventory, INVENTORY.format(**fmt),
                    create_only=True),
        ensure_file("ansible-cfg", cfg.cfg_file,
                    ANSIBLE_CFG_TEMPLATE.format(**fmt), create_only=True),
    ]
    steps += [
        ensure_directory(f"playbooks-{name.replace('_', '-')}", playbooks / name)
        for name in PLAYBOOK_DIRS
    ]
    steps += [
        ensure_file("playbook-hello-world", playbooks / "hello-world.yml",
                    HELLO_WORLD, create_only=True),
        ensure_file("playbook-system-setup", playbooks / "system-setup.yml",
                    SYSTEM_SETUP, create_only=True),
        ensure_file("template-system-info",
                    playbooks / "templates" / "system_info.j2",
                    SYSTEM_INFO_TEMPLATE, create_only=True),
        ensure_file("playbook-k8s-test", playbooks / "k8s-test.yml",
                    K8S_TEST, create_only=True, **owned),
        _collections_step(cfg),
        _kubernetes_modules_step(cfg),
    ]

    checks = [
        command_check("ansible-command", _env_command(cfg, "ansible", "--version"),
                      timeout=30),
        command_check("ansible-config", _env_command(cfg, "ansible-config", "dump"),
                      timeout=30),
        command_check("local-ping",
                      _env_command(cfg, "ansible", "local", "-m", "ping"),
                      advisory=True, timeout=30),
        command_check("hello-world-playbook",
                      _env_command(cfg, "ansible-playbook",
                                   str(playbooks / "hello-world.yml")),
                      advisory=True, timeout=60),
        command_check("kubernetes-python-modules",
                      [str(Path(cfg.venv) / "bin" / "python"), "-c",
                       "import kubernetes, yaml"],
                      advisory=True, timeout=30),
    ]

    recovery = [
        reset_ownership("own-ansible-home", cfg.home, cfg.user, cfg.group),
        reset_ownership("own-ansible-logs", cfg.log_dir, cfg.user, cfg.group),
        prune_dangling_symlinks("relink-binaries", {
            Path(cfg.bin_dir) / b: Path(cfg.venv) / "bin" / b
            for b in cfg.binaries
        }),
    ]

    return Plan(
        name="ansible",
        description=f"System-wide Ansible in {cfg.home} for all users",
        steps=steps, checks=checks, recovery=recovery,
    )
