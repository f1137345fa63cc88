"""Built-in plans: name -> (config dataclass, builder)."""

from ..config import AnsibleConfig, KubernetesNodeConfig, MonitoringConfig
from . import ansible, kubernetes_node, monitoring

PLANS = {
    "ansible": ansible.build,
    "kubernetes-node": kubernetes_node.build,
    "monitoring": monitoring.build,
}

CONFIG_TYPES = {
    "ansible": AnsibleConfig,
    "kubernetes-node": KubernetesNodeConfig,
    "monitoring": MonitoringConfig,
}
