"""Grafana and a basic Prometheus on the local cluster, reachable on localhost."""

import json

from ..engine import Plan
from ..ensure import (
    command_step, ensure_file, launch_background, port_open, wait_for_port,
)
from ..errors import ProbeError
from ..resources import ProbeResult
from ..steps import Policy, Step, Wait
from ..verifier import Check, command_check

PROMETHEUS_YML = """\
global:
  scrape_interval: 15s
scrape_configs:
  - job_name: 'kubernetes-apiservers'
    kubernetes_sd_configs:
    - role: endpoints
    scheme: https
    tls_config:
      ca_file: /var/run/secrets/kubernetes.io/serviceaccount/ca.crt
    bearer_token_file: /var/run/secrets/kubernetes.io/serviceaccount/token
    relabel_configs:
    - source_labels: [__meta_kubernetes_namespace, __meta_kubernetes_service_name, __meta_kubernetes_endpoint_port_name]
      action: keep
      regex: default;kubernetes;https
  - job_name: 'kubernetes-nodes'
    kubernetes_sd_configs:
    - role: node
    scheme: https
    tls_config:
      ca_file: /var/run/secrets/kubernetes.io/serviceaccount/ca.crt
    bearer_token_file: /var/run/secrets/kubernetes.io/serviceaccount/token
"""


def _kube_env(cfg, *cmd):
    return ["env", f"KUBECONFIG={cfg.kubeconfig}", *cmd]


def prometheus_manifest(cfg) -> dict:
    """ConfigMap, Deployment and Service for a single Prometheus replica."""
    ns = cfg.namespace
    labels = {"app": "prometheus"}
    config_map = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "prometheus-config", "namespace": ns},
        "data": {"prometheus.yml": PROMETHEUS_YML},
    }
    deployment = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "prometheus", "namespace": ns, "labels": labels},
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [{
                        "name": "prometheus",
                        "image": cfg.prometheus_image,
                        "ports": [{"containerPort": cfg.prometheus_port}],
                        "args": [
                            "--config.file=/etc/prometheus/prometheus.yml",
                            "--storage.tsdb.path=/prometheus/",
                            "--web.console.libraries=/etc/prometheus/console_libraries",
                            "--web.console.templates=/etc/prometheus/consoles",
                            "--web.enable-lifecycle",
                        ],
                        "volumeMounts": [{"name": "prometheus-config",
                                          "mountPath": "/etc/prometheus"}],
                    }],
                    "volumes": [{"name": "prometheus-config",
                                 "configMap": {"name": "prometheus-config"}}],
                },
            },
        },
    }
    service = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": "prometheus", "namespace": ns},
        "spec": {
            "selector": labels,
            "ports": [{"port": cfg.prometheus_port,
                       "targetPort": cfg.prometheus_port}],
            "type": "ClusterIP",
        },
    }
    return {"apiVersion": "v1", "kind": "List",
            "items": [config_map, deployment, service]}


def _helm_repos_step(cfg) -> Step:
    def configured(ctx):
        result = ctx.host.runner.query(["helm", "repo", "list", "-o", "json"],
                                       timeout=60)
        if result.returncode != 0:
            # helm exits 1 when no repositories are configured at all.
            return set()
        try:
            repos = json.loads(result.stdout or "[]")
        except ValueError as exc:
            raise ProbeError(f"unreadable helm repo list: {exc}") from exc
        return {repo.get("name") for repo in repos}

    def check(ctx):
        missing = sorted(set(cfg.helm_repos) - configured(ctx))
        if missing:
            return ProbeResult.divergent(f"helm repos missing: {', '.join(missing)}")
        return ProbeResult.satisfied("helm repos configured")

    def action(ctx):
        present = configured(ctx)
        for name, url in cfg.helm_repos.items():
            if name not in present:
                ctx.host.runner.run(["helm", "repo", "add", name, url])
        ctx.host.runner.run(["helm", "repo", "update"])

    return Step("helm-repos", check, action,
                description=f"helm repos {', '.join(cfg.helm_repos)}")


def _pods_ready_step(cfg) -> Step:
    query = _kube_env(
        cfg, "kubectl", "get", "pods", "-n", cfg.namespace, "-l", cfg.pod_selector,
        "-o", 'jsonpath={.items[*].status.conditions[?(@.type=="Ready")].status}')

    def check(ctx):
        result = ctx.host.runner.query(query, timeout=30)
        if result.returncode != 0:
            return ProbeResult.divergent("API server not answering")
        states = result.stdout.split()
        if states and all(s == "True" for s in states):
            return ProbeResult.satisfied(f"{len(states)} grafana pod(s) ready")
        return ProbeResult.divergent(f"grafana pods ready: {' '.join(states) or 'none'}")

    return Step("grafana-pod-ready", check, None, Policy.WARN,
                Wait(cfg.pod_ready_interval, cfg.pod_ready_timeout),
                description=f"pods {cfg.pod_selector} Ready")


def _prometheus_step(cfg) -> Step:
    manifest = cfg.prometheus_manifest

    def check(ctx):
        # kubectl diff: 0 no differences, 1 differences, anything else failed.
        result = ctx.host.runner.query(
            _kube_env(cfg, "kubectl", "diff", "-f", manifest), timeout=60)
        if result.returncode == 0:
            return ProbeResult.satisfied("prometheus objects up to date")
        if result.returncode == 1:
            return ProbeResult.divergent("prometheus objects differ from manifest")
        last = (result.stderr or "").strip().splitlines()[-1:]
        raise ProbeError(f"kubectl diff exited {result.returncode}"
                         + (f": {last[0]}" if last else ""))

    def action(ctx):
        ctx.host.runner.run(_kube_env(cfg, "kubectl", "apply", "-f", manifest),
                            timeout=120)

    return Step("prometheus", check, action, Policy.WARN,
                description=f"Prometheus in namespace {cfg.namespace}")


def build(cfg) -> Plan:
    ns = cfg.namespace
    install = _kube_env(
        cfg, "helm", "upgrade", "--install", cfg.release, cfg.chart,
        "--namespace", ns, "--wait", f"--timeout={cfg.install_timeout}",
    )
    for key, value in cfg.chart_values.items():
        install += ["--set", f"{key}={value}"]
    release_status = _kube_env(cfg, "helm", "status", cfg.release, "-n", ns)

    steps = [
        _helm_repos_step(cfg),
        command_step(
            "monitoring-namespace",
            _kube_env(cfg, "kubectl", "get", "namespace", ns),
            [_kube_env(cfg, "kubectl", "create", "namespace", ns)],
            divergent_detail=f"namespace {ns} missing",
            timeout=60,
        ),
        command_step(
            "grafana-release", release_status, [install],
            divergent_detail=f"release {cfg.release} not installed in {ns}",
        ),
        _pods_ready_step(cfg),
        ensure_file("prometheus-manifest", cfg.prometheus_manifest,
                    json.dumps(prometheus_manifest(cfg), indent=2) + "\n"),
        _prometheus_step(cfg),
        launch_background(
            "grafana-port-forward",
            _kube_env(cfg, "kubectl", "port-forward", "-n", ns,
                      f"svc/{cfg.release}",
                      f"{cfg.local_port}:{cfg.service_port}"),
            "127.0.0.1", cfg.local_port, log_path=cfg.port_forward_log,
        ),
        wait_for_port("grafana-port-ready", "127.0.0.1", cfg.local_port,
                      interval=cfg.ready_interval, timeout=cfg.ready_timeout),
    ]

    def port_check(port, where):
        def check(ctx):
            if port_open("127.0.0.1", port):
                return ProbeResult.satisfied(f"Grafana on http://localhost:{port} ({where})")
            return ProbeResult.divergent(f"nothing listening on port {port}")
        return check

    checks = [
        command_check("grafana-release", release_status, timeout=60),
        Check("grafana-reachable", port_check(cfg.local_port, "port-forward"),
              advisory=True),
        Check("grafana-nodeport", port_check(cfg.node_port, "NodePort"),
              advisory=True),
        command_check("prometheus-rollout",
                      _kube_env(cfg, "kubectl", "rollout", "status", "-n", ns,
                                "deployment/prometheus", "--timeout=30s"),
                      advisory=True, timeout=60),
    ]

    return Plan(
        name="monitoring",
        description=f"Grafana release {cfg.release!r} and Prometheus in namespace {ns!r}",
        steps=steps, checks=checks,
    )
