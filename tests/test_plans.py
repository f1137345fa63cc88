import io
import json
import os
import subprocess
import tempfile
import unittest
import unittest.mock
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

from hostconverge import cli
from hostconverge.config import (
    AnsibleConfig, KubernetesNodeConfig, MonitoringConfig, load_config,
)
from hostconverge.console import AuditLog, outcome_level, print_outcome_log
from hostconverge.errors import (
    ActionError, CommandError, ConfigError, PolicyViolation, ProbeError,
)
from hostconverge.host import Filesystem, Host, RunContext
from hostconverge.plans import CONFIG_TYPES, PLANS, kubernetes_node, monitoring
from hostconverge.sequencer import Report
from hostconverge.steps import Outcome, Policy, StepOutcome, run_step
from hostconverge.verifier import CHECK_TIMEOUT, Verifier, command_check

_DEVNULL = None


def setUpModule():
    global _DEVNULL
    _DEVNULL = open(os.devnull, "w")


def tearDownModule():
    _DEVNULL.close()


def make_ctx():
    host = Host(
        runner=unittest.mock.MagicMock(),
        packages=unittest.mock.MagicMock(),
        services=unittest.mock.MagicMock(),
        fs=Filesystem(quiet=True),
    )
    return RunContext(host=host, quiet=True)


class PlanTestCase(unittest.TestCase):
    def setUp(self):
        self._suppress = redirect_stdout(_DEVNULL)
        self._suppress.__enter__()
        self._suppress_err = redirect_stderr(_DEVNULL)
        self._suppress_err.__enter__()

    def tearDown(self):
        self._suppress_err.__exit__(None, None, None)
        self._suppress.__exit__(None, None, None)


class TestConfig(PlanTestCase):
    def test_defaults_without_file(self):
        cfg = load_config(AnsibleConfig)
        self.assertEqual(cfg.home, "/opt/ansible")
        self.assertEqual(cfg.collections_path, "/opt/ansible/collections")

    def test_overrides_and_lists_become_tuples(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "cfg.json"
            path.write_text(json.dumps({"home": "/srv/ansible",
                                        "collections": ["community.docker"]}))
            cfg = load_config(AnsibleConfig, path)
        self.assertEqual(cfg.home, "/srv/ansible")
        self.assertEqual(cfg.collections, ("community.docker",))

    def test_bad_files_raise_config_error(self):
        with tempfile.TemporaryDirectory() as td:
            cases = {
                "unknown.json": json.dumps({"nope": 1}),
                "broken.json": "{not json",
                "list.json": "[1, 2]",
            }
            for name, text in cases.items():
                path = Path(td) / name
                path.write_text(text)
                with self.assertRaises(ConfigError):
                    load_config(MonitoringConfig, path)
            with self.assertRaises(ConfigError):
                load_config(MonitoringConfig, Path(td) / "missing.json")

    def test_registries_agree(self):
        self.assertEqual(set(PLANS), set(CONFIG_TYPES))

    def test_kubernetes_repo_follows_version(self):
        cfg = KubernetesNodeConfig(k8s_version="1.30")
        self.assertIn("/v1.30/deb/", cfg.kube_repo)
        self.assertTrue(cfg.kube_key_url.endswith("/v1.30/deb/Release.key"))
        self.assertIn("{keyring}", cfg.kube_repo)


class TestCheckTimeouts(PlanTestCase):
    def test_command_check_defaults_to_a_timeout(self):
        ctx = make_ctx()
        ctx.host.runner.query.return_value = subprocess.CompletedProcess([], 0, "ok\n", "")
        command_check("x", ["true"]).probe(ctx)
        self.assertEqual(ctx.host.runner.query.call_args.kwargs["timeout"], CHECK_TIMEOUT)

    def test_command_check_rejects_unbounded_timeout(self):
        with self.assertRaises(PolicyViolation):
            command_check("x", ["true"], timeout=None)

    def test_every_plan_check_runs_commands_with_a_timeout(self):
        for name, build in PLANS.items():
            with self.subTest(plan=name):
                ctx = make_ctx()
                done = subprocess.CompletedProcess([], 0, "", "")
                ctx.host.runner.query.return_value = done
                ctx.host.runner.output.return_value = ""
                ctx.host.runner.succeeds.return_value = True
                plan = build(CONFIG_TYPES[name]())
                with unittest.mock.patch("hostconverge.plans.monitoring.port_open",
                                         return_value=True):
                    Verifier(plan.checks).run(ctx)
                runner = ctx.host.runner
                calls = (runner.query.call_args_list + runner.output.call_args_list
                         + runner.succeeds.call_args_list + runner.run.call_args_list)
                self.assertTrue(calls)
                for call in calls:
                    self.assertTrue(call.kwargs.get("timeout"), call)


class TestAnsiblePlan(PlanTestCase):
    def setUp(self):
        super().setUp()
        self.plan = PLANS["ansible"](AnsibleConfig())
        self.by_name = {s.name: s for s in self.plan.steps}

    def test_step_names_unique_and_ordered(self):
        names = [s.name for s in self.plan.steps]
        self.assertEqual(len(names), len(set(names)))
        self.assertEqual(names[0], "prerequisites")
        self.assertLess(names.index("ansible-group"), names.index("ansible-user"))
        self.assertLess(names.index("ansible-virtualenv"), names.index("link-ansible"))
        self.assertEqual(names[-2:], ["ansible-collections", "ansible-kubernetes-modules"])

    def test_kubernetes_support(self):
        self.assertIn("kubernetes.core", AnsibleConfig().collections)
        modules = self.by_name["ansible-kubernetes-modules"]
        self.assertIs(modules.policy, Policy.WARN)
        ctx = make_ctx()
        modules.action(ctx)
        cmd = ctx.host.runner.run.call_args.args[0]
        self.assertEqual(cmd[0], "/opt/ansible/venv/bin/python")
        self.assertEqual(cmd[-3:], ["kubernetes", "pyyaml", "openshift"])
        self.assertIn("playbook-k8s-test", self.by_name)

    def test_collections_check_names_each_missing_collection(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = AnsibleConfig(home=td, collections=("community.general",
                                                      "kubernetes.core"))
            (Path(td) / "collections" / "ansible_collections" / "community"
             / "general").mkdir(parents=True)
            step = {s.name: s for s in PLANS["ansible"](cfg).steps}["ansible-collections"]
            result = step.probe(make_ctx())
            self.assertTrue(result.is_divergent)
            self.assertIn("kubernetes.core", result.detail)
            self.assertNotIn("community.general", result.detail)

            (Path(td) / "collections" / "ansible_collections" / "kubernetes"
             / "core").mkdir(parents=True)
            self.assertTrue(step.probe(make_ctx()).is_satisfied)

    def test_links_every_binary(self):
        for binary in AnsibleConfig().binaries:
            self.assertIn(f"link-{binary}", self.by_name)

    def test_collections_are_best_effort(self):
        self.assertIs(self.by_name["ansible-collections"].policy, Policy.WARN)
        self.assertIs(self.by_name["ansible-virtualenv"].policy, Policy.FATAL)

    def test_checks_and_recovery(self):
        checks = {c.name: c for c in self.plan.checks}
        self.assertFalse(checks["ansible-command"].advisory)
        self.assertTrue(checks["local-ping"].advisory)
        self.assertTrue(all(s.policy is Policy.WARN for s in self.plan.recovery))

    def test_generated_config_mentions_paths(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = AnsibleConfig(home=td, etc_dir=td,
                                cfg_file=str(Path(td) / "ansible.cfg"),
                                inventory=str(Path(td) / "hosts"))
            step = {s.name: s for s in PLANS["ansible"](cfg).steps}["ansible-cfg"]
            outcome = run_step(step, make_ctx())
            text = (Path(td) / "ansible.cfg").read_text()
        self.assertIs(outcome.outcome, Outcome.APPLIED)
        self.assertIn(f"inventory = {td}/hosts", text)
        self.assertIn("/tmp/.ansible-${USER}/tmp", text)

    def test_collection_failures_are_collected(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = AnsibleConfig(home=td)
            step = {s.name: s for s in PLANS["ansible"](cfg).steps}["ansible-collections"]
            ctx = make_ctx()
            ctx.host.runner.run.side_effect = CommandError(["ansible-galaxy"], 1)
            with self.assertRaises(ActionError) as cm:
                step.action(ctx)
        self.assertEqual(ctx.host.runner.run.call_count, len(cfg.collections))
        self.assertIn("community.general", str(cm.exception))


class TestKubernetesNodePlan(PlanTestCase):
    def test_policies(self):
        plan = PLANS["kubernetes-node"](KubernetesNodeConfig())
        by_name = {s.name: s for s in plan.steps}
        self.assertIs(by_name["service-containerd"].policy, Policy.FATAL)
        self.assertIs(by_name["service-docker"].policy, Policy.WARN)
        self.assertIs(by_name["service-kubelet"].policy, Policy.WARN)
        self.assertIs(by_name["untaint-control-plane"].policy, Policy.WARN)
        self.assertIs(by_name["netns-shared"].policy, Policy.WARN)
        self.assertIs(by_name["kubeadm-init"].policy, Policy.FATAL)
        self.assertIs(by_name["cilium-cni"].policy, Policy.FATAL)
        self.assertIs(by_name["helm"].policy, Policy.WARN)
        ready = by_name["node-ready"]
        self.assertIsNone(ready.action)
        self.assertEqual(ready.wait.timeout, 300.0)
        self.assertEqual(by_name["cilium-cni"].wait.interval, 30.0)

    def test_order(self):
        names = [s.name for s in PLANS["kubernetes-node"](KubernetesNodeConfig()).steps]
        self.assertEqual(len(names), len(set(names)))
        before = [
            ("docker-apt-repo", "container-runtime"),
            ("container-runtime", "containerd-config"),
            ("containerd-config", "service-containerd"),
            ("kubernetes-apt-repo", "kubernetes-packages"),
            ("kubernetes-packages", "kubeadm-init"),
            ("swap-off", "kubeadm-init"),
            ("sysctl-live", "kubeadm-init"),
            ("netns-shared", "kubeadm-init"),
            ("kubeadm-init", "kubeconfig"),
            ("kube-dir", "kubeconfig"),
            ("kubeconfig", "untaint-control-plane"),
            ("cilium-cli", "cilium-cni"),
            ("cilium-cni", "node-ready"),
            ("helm-apt-repo", "helm"),
        ]
        for first, second in before:
            self.assertLess(names.index(first), names.index(second), (first, second))
        self.assertEqual(names[-1], "helm")

    def test_kubernetes_packages_pinned_and_held(self):
        cfg = KubernetesNodeConfig()
        step = {s.name: s for s in kubernetes_node.build(cfg).steps}["kubernetes-packages"]
        ctx = make_ctx()
        ctx.host.packages.version.side_effect = lambda name: {
            "kubelet": "1.31.2-1.1", "kubeadm": "1.30.5-1.1", "kubectl": ""}[name]
        ctx.host.packages.held.return_value = set()
        result = step.probe(ctx)
        self.assertTrue(result.is_divergent)
        self.assertIn("kubeadm 1.30.5-1.1", result.detail)
        self.assertIn("kubectl missing", result.detail)

        ctx.host.packages.version.side_effect = lambda name: "1.31.2-1.1"
        self.assertIn("not held", step.probe(ctx).detail)
        ctx.host.packages.held.return_value = {"kubelet", "kubeadm", "kubectl"}
        self.assertTrue(step.probe(ctx).is_satisfied)

        step.action(ctx)
        ctx.host.packages.install.assert_called_once_with(
            ["kubelet=1.31.*", "kubeadm=1.31.*", "kubectl=1.31.*"],
            allow_downgrades=True)
        self.assertEqual(ctx.host.packages.hold.call_args_list[-1],
                         unittest.mock.call(["kubelet", "kubeadm", "kubectl"]))

    def test_containerd_config_uses_systemd_cgroup_and_cri(self):
        default = ('disabled_plugins = ["cri"]\n'
                   "[plugins.runc.options]\n"
                   "  SystemdCgroup = false\n")
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "containerd" / "config.toml"
            cfg = KubernetesNodeConfig(containerd_config=str(path))
            step = {s.name: s for s in kubernetes_node.build(cfg).steps}["containerd-config"]
            ctx = make_ctx()
            ctx.host.runner.run.return_value = subprocess.CompletedProcess(
                [], 0, default, "")
            self.assertTrue(step.probe(ctx).is_divergent)
            step.action(ctx)
            text = path.read_text()
            self.assertTrue(step.probe(ctx).is_satisfied)
        self.assertIn("SystemdCgroup = true", text)
        self.assertIn("disabled_plugins = []", text)
        ctx.host.services.restart.assert_called_once_with("containerd")

    def test_kubeadm_init_skipped_when_admin_conf_exists(self):
        with tempfile.TemporaryDirectory() as td:
            admin = Path(td) / "admin.conf"
            cfg = KubernetesNodeConfig(admin_conf=str(admin))
            steps = {s.name: s for s in kubernetes_node.build(cfg).steps}
            ctx = make_ctx()
            self.assertTrue(steps["kubeadm-init"].probe(ctx).is_divergent)
            self.assertIn("not generated", steps["kubeconfig"].probe(ctx).detail)

            steps["kubeadm-init"].action(ctx)
            reset, init = [c.args[0] for c in ctx.host.runner.run.call_args_list]
            self.assertEqual(reset[:2], ["kubeadm", "reset"])
            self.assertIs(ctx.host.runner.run.call_args_list[0].kwargs["check"], False)
            self.assertIn("--pod-network-cidr=10.244.0.0/16", init)
            self.assertIn("--kubernetes-version=v1.31.0", init)

            admin.write_text("apiVersion: v1\n")
            self.assertTrue(steps["kubeadm-init"].probe(ctx).is_satisfied)

    def test_netns_bind_mounted_before_sharing(self):
        step = {s.name: s for s in
                kubernetes_node.build(KubernetesNodeConfig()).steps}["netns-shared"]
        ctx = make_ctx()
        ctx.host.runner.query.return_value = subprocess.CompletedProcess([], 1, "", "")
        self.assertIn("not a mount point", step.probe(ctx).detail)
        step.action(ctx)
        self.assertEqual([c.args[0] for c in ctx.host.runner.run.call_args_list], [
            ["mount", "--bind", "/var/run/netns", "/var/run/netns"],
            ["mount", "--make-rshared", "/var/run/netns"],
        ])

    def test_cilium_install_skipped_when_daemonset_exists(self):
        step = {s.name: s for s in
                kubernetes_node.build(KubernetesNodeConfig()).steps}["cilium-cni"]
        ctx = make_ctx()
        ctx.host.runner.succeeds.side_effect = lambda cmd, timeout=None: "daemonset" in cmd
        self.assertIn("not ready", step.probe(ctx).detail)
        step.action(ctx)
        ctx.host.runner.run.assert_not_called()

    def test_cilium_checksum_mismatch_is_action_error(self):
        with tempfile.TemporaryDirectory() as td:
            tarball = Path(td) / "cilium-linux-amd64.tar.gz"
            tarball.write_bytes(b"not the release")
            sums = Path(td) / "cilium-linux-amd64.tar.gz.sha256sum"
            sums.write_text("0" * 64 + "  cilium-linux-amd64.tar.gz\n")
            with self.assertRaises(ActionError):
                kubernetes_node._verify_sha256(tarball, sums)

    def test_swap_probe(self):
        with tempfile.TemporaryDirectory() as td:
            swaps = Path(td) / "swaps"
            swaps.write_text("Filename\tType\tSize\tUsed\tPriority\n")
            cfg = KubernetesNodeConfig(swaps=str(swaps))
            self.assertTrue(kubernetes_node.swap_probe(cfg)(make_ctx()).is_satisfied)
            swaps.write_text("Filename\tType\tSize\tUsed\tPriority\n"
                             "/swap.img\tfile\t2097148\t0\t-2\n")
            result = kubernetes_node.swap_probe(cfg)(make_ctx())
        self.assertTrue(result.is_divergent)
        self.assertIn("/swap.img", result.detail)

    def test_unreadable_proc_file_is_probe_error(self):
        cfg = KubernetesNodeConfig(swaps="/nonexistent/swaps")
        with self.assertRaises(ProbeError):
            kubernetes_node.swap_probe(cfg)(make_ctx())

    def test_fstab_swap_lines_commented_out(self):
        with tempfile.TemporaryDirectory() as td:
            fstab = Path(td) / "fstab"
            fstab.write_text("UUID=abc / ext4 defaults 0 1\n"
                             "/swap.img none swap sw 0 0\n")
            cfg = KubernetesNodeConfig(fstab=str(fstab))
            step = {s.name: s for s in kubernetes_node.build(cfg).steps}["fstab-swap"]
            first = run_step(step, make_ctx())
            second = run_step(step, make_ctx())
            text = fstab.read_text()
        self.assertIs(first.outcome, Outcome.APPLIED)
        self.assertIs(second.outcome, Outcome.SKIPPED)
        self.assertIn("# /swap.img none swap sw 0 0", text)
        self.assertIn("UUID=abc / ext4 defaults 0 1", text)

    def test_sysctl_probe_reads_proc_sys(self):
        with tempfile.TemporaryDirectory() as td:
            knob = Path(td) / "net" / "ipv4" / "ip_forward"
            knob.parent.mkdir(parents=True)
            knob.write_text("0\n")
            cfg = KubernetesNodeConfig(proc_sys=td,
                                       sysctls={"net.ipv4.ip_forward": "1"})
            result = kubernetes_node.sysctl_probe(cfg)(make_ctx())
            self.assertTrue(result.is_divergent)
            self.assertIn("net.ipv4.ip_forward=0", result.detail)
            knob.write_text("1\n")
            self.assertTrue(kubernetes_node.sysctl_probe(cfg)(make_ctx()).is_satisfied)


class TestMonitoringPlan(PlanTestCase):
    def setUp(self):
        super().setUp()
        self.cfg = MonitoringConfig()
        self.plan = PLANS["monitoring"](self.cfg)
        self.by_name = {s.name: s for s in self.plan.steps}

    def test_order_and_policies(self):
        self.assertEqual([s.name for s in self.plan.steps], [
            "helm-repos", "monitoring-namespace", "grafana-release",
            "grafana-pod-ready", "prometheus-manifest", "prometheus",
            "grafana-port-forward", "grafana-port-ready",
        ])
        self.assertIs(self.by_name["grafana-release"].policy, Policy.FATAL)
        self.assertIs(self.by_name["grafana-port-forward"].policy, Policy.WARN)
        self.assertIs(self.by_name["prometheus"].policy, Policy.WARN)
        self.assertIsNone(self.by_name["grafana-port-ready"].action)
        pods = self.by_name["grafana-pod-ready"]
        self.assertIsNone(pods.action)
        self.assertEqual(pods.wait.timeout, 300.0)

    def test_grafana_pods_ready_only_when_all_report_true(self):
        ctx = make_ctx()
        probe = self.by_name["grafana-pod-ready"].probe
        ctx.host.runner.query.return_value = subprocess.CompletedProcess(
            [], 0, "True False", "")
        self.assertTrue(probe(ctx).is_divergent)
        ctx.host.runner.query.return_value = subprocess.CompletedProcess([], 0, "", "")
        self.assertTrue(probe(ctx).is_divergent)
        ctx.host.runner.query.return_value = subprocess.CompletedProcess([], 0, "True", "")
        self.assertTrue(probe(ctx).is_satisfied)

    def test_prometheus_diff_exit_codes(self):
        ctx = make_ctx()
        step = self.by_name["prometheus"]
        ctx.host.runner.query.return_value = subprocess.CompletedProcess([], 0, "", "")
        self.assertTrue(step.probe(ctx).is_satisfied)
        ctx.host.runner.query.return_value = subprocess.CompletedProcess([], 1, "diff", "")
        self.assertTrue(step.probe(ctx).is_divergent)
        ctx.host.runner.query.return_value = subprocess.CompletedProcess(
            [], 2, "", "error: connection refused\n")
        with self.assertRaises(ProbeError) as cm:
            step.probe(ctx)
        self.assertIn("connection refused", str(cm.exception))
        step.action(ctx)
        cmd = ctx.host.runner.run.call_args.args[0]
        self.assertEqual(cmd[-3:], ["apply", "-f", self.cfg.prometheus_manifest])

    def test_prometheus_manifest(self):
        items = monitoring.prometheus_manifest(self.cfg)["items"]
        self.assertEqual([i["kind"] for i in items], ["ConfigMap", "Deployment", "Service"])
        self.assertTrue(all(i["metadata"]["namespace"] == "monitoring" for i in items))
        self.assertIn("kubernetes-nodes", items[0]["data"]["prometheus.yml"])
        container = items[1]["spec"]["template"]["spec"]["containers"][0]
        self.assertEqual(container["image"], "prom/prometheus:latest")
        self.assertIn("--web.enable-lifecycle", container["args"])
        self.assertEqual(items[2]["spec"]["ports"][0]["port"], 9090)

    def test_helm_repos_probe_lists_missing(self):
        ctx = make_ctx()
        ctx.host.runner.query.return_value = subprocess.CompletedProcess(
            [], 0, json.dumps([{"name": "grafana", "url": "x"}]), "")
        result = self.by_name["helm-repos"].probe(ctx)
        self.assertTrue(result.is_divergent)
        self.assertIn("prometheus-community", result.detail)
        self.assertNotIn("grafana,", result.detail)

    def test_no_repos_configured_is_divergence(self):
        ctx = make_ctx()
        ctx.host.runner.query.return_value = subprocess.CompletedProcess(
            [], 1, "", "Error: no repositories to show")
        self.assertTrue(self.by_name["helm-repos"].probe(ctx).is_divergent)

    def test_release_install_uses_kubeconfig_and_values(self):
        ctx = make_ctx()
        self.by_name["grafana-release"].action(ctx)
        cmd = ctx.host.runner.run.call_args.args[0]
        self.assertEqual(cmd[:2], ["env", "KUBECONFIG=/home/ubuntu/.kube/config"])
        self.assertIn("upgrade", cmd)
        self.assertIn("persistence.enabled=false", cmd)
        self.assertIn("service.nodePort=30000", cmd)
        self.assertIn("adminPassword=admin123", cmd)
        self.assertIn("--timeout=10m", cmd)

    def test_port_check_is_advisory(self):
        checks = {c.name: c for c in self.plan.checks}
        self.assertTrue(checks["grafana-reachable"].advisory)
        self.assertFalse(checks["grafana-release"].advisory)


class TestConsole(PlanTestCase):
    def test_outcome_levels(self):
        ignored = StepOutcome("x", Outcome.FAILED, Policy.IGNORE, "", ActionError("a"))
        probe_fail = StepOutcome("x", Outcome.FAILED, Policy.IGNORE, "", ProbeError("p"))
        fatal = StepOutcome("x", Outcome.FAILED, Policy.FATAL, "", ActionError("a"))
        self.assertEqual(outcome_level(ignored), "debug")
        self.assertEqual(outcome_level(probe_fail), "warning")
        self.assertEqual(outcome_level(fatal), "error")
        self.assertEqual(outcome_level(StepOutcome("x", Outcome.SKIPPED, Policy.FATAL)),
                         "info")

    def test_outcome_log_is_numbered_in_order(self):
        outcomes = [
            StepOutcome("first", Outcome.APPLIED, Policy.FATAL, "repaired: off"),
            StepOutcome("second", Outcome.FAILED, Policy.FATAL, "action failed: x"),
        ]
        self._suppress.__exit__(None, None, None)
        buf = io.StringIO()
        with redirect_stdout(buf):
            print_outcome_log(outcomes)
        self._suppress.__enter__()
        out = buf.getvalue()
        self.assertIn("1. APPLIED", out)
        self.assertIn("2. FAILED/fatal", out)
        self.assertLess(out.index("first"), out.index("second"))

    def test_audit_log_appends_to_file(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "logs" / "audit.jsonl"
            audit = AuditLog(path=path)
            audit.outcome(StepOutcome("a", Outcome.SKIPPED, Policy.WARN, "ok"))
            audit.outcome(StepOutcome("b", Outcome.FAILED, Policy.WARN, "bad",
                                      ActionError("bad")), phase="recovery")
            records = [json.loads(l) for l in path.read_text().splitlines()]
        self.assertEqual(len(records), 2)
        self.assertEqual(records[1]["phase"], "recovery")
        self.assertEqual(records[1]["error"], "ActionError")
        self.assertEqual(records[1]["level"], "warning")

    def test_audit_log_writability_checked_up_front(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "logs" / "audit.jsonl"
            AuditLog(path=path).ensure_writable()
            self.assertEqual(path.read_text(), "")
            (Path(td) / "file").write_text("")
            with self.assertRaises(OSError):
                AuditLog(path=Path(td) / "file" / "audit.jsonl").ensure_writable()
        AuditLog(stream=io.StringIO()).ensure_writable()


class TestCli(PlanTestCase):
    def test_defaults(self):
        args = cli.build_parser().parse_args([])
        self.assertEqual(args.plan, "ansible")
        self.assertFalse(args.status)
        self.assertEqual(args.audit_log, cli.AUDIT_PATH)
        self.assertIsNone(args.deadline)

    def test_modes_are_exclusive(self):
        with self.assertRaises(SystemExit):
            cli.build_parser().parse_args(["--status", "--verify"])

    def test_flags_parsed(self):
        args = cli.build_parser().parse_args(
            ["--plan", "monitoring", "-y", "-q", "--deadline", "60",
             "--audit-log", "-"])
        self.assertEqual(args.plan, "monitoring")
        self.assertTrue(args.yes)
        self.assertTrue(args.quiet)
        self.assertEqual(args.deadline, 60.0)
        self.assertEqual(args.audit_log, "-")

    def test_converge_requires_root(self):
        with unittest.mock.patch("os.geteuid", return_value=1000):
            with self.assertRaises(SystemExit) as cm:
                cli.main(["-y"])
        self.assertEqual(cm.exception.code, 1)

    def test_bad_config_exits_one(self):
        with self.assertRaises(SystemExit) as cm:
            cli.main(["--status", "--config", "/nonexistent/cfg.json"])
        self.assertEqual(cm.exception.code, 1)

    def test_status_never_converges(self):
        with unittest.mock.patch("hostconverge.cli.inspect", return_value=[]), \
             unittest.mock.patch("hostconverge.cli.converge") as converge:
            with self.assertRaises(SystemExit) as cm:
                cli.main(["--status", "--plan", "monitoring"])
        self.assertEqual(cm.exception.code, 0)
        converge.assert_not_called()

    def test_exit_code_comes_from_report(self):
        with unittest.mock.patch("os.geteuid", return_value=0), \
             unittest.mock.patch("hostconverge.cli.converge",
                                 return_value=Report(halted=True)):
            with self.assertRaises(SystemExit) as cm:
                cli.main(["-y", "--audit-log", "-"])
        self.assertEqual(cm.exception.code, 1)

    def test_unwritable_audit_log_stops_before_converge(self):
        with tempfile.TemporaryDirectory() as td:
            blocker = Path(td) / "not-a-dir"
            blocker.write_text("")
            with unittest.mock.patch("os.geteuid", return_value=0), \
                 unittest.mock.patch("hostconverge.cli.converge") as converge, \
                 unittest.mock.patch("hostconverge.cli.cleanup") as cleanup:
                for extra in ([], ["--cleanup"]):
                    with self.assertRaises(SystemExit) as cm:
                        cli.main(["-y", "--audit-log",
                                  str(blocker / "audit.jsonl"), *extra])
                    self.assertEqual(cm.exception.code, 1)
        converge.assert_not_called()
        cleanup.assert_not_called()

    def test_confirm_declined_exits_zero(self):
        plan = PLANS["monitoring"](MonitoringConfig())
        with unittest.mock.patch("builtins.input", return_value="n"), \
             unittest.mock.patch("builtins.print"):
            with self.assertRaises(SystemExit) as cm:
                cli._confirm(plan)
        self.assertEqual(cm.exception.code, 0)

    def test_confirm_eof_exits_zero(self):
        plan = PLANS["monitoring"](MonitoringConfig())
        with unittest.mock.patch("builtins.input", side_effect=EOFError), \
             unittest.mock.patch("builtins.print"):
            with self.assertRaises(SystemExit) as cm:
                cli._confirm(plan)
        self.assertEqual(cm.exception.code, 0)

    def test_confirm_y_proceeds(self):
        plan = PLANS["ansible"](AnsibleConfig())
        with unittest.mock.patch("builtins.input", return_value="y"), \
             unittest.mock.patch("builtins.print"):
            cli._confirm(plan)


if __name__ == "__main__":
    unittest.main()
