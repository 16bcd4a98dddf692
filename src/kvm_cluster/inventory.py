"""
Ansible inventory generation for kubespray.
"""

import os
from typing import Any, Dict

import yaml

from .exceptions import ValidationError
from .models import Cluster, Role


class _InventoryDumper(yaml.SafeDumper):
    """Renders group members as bare keys (``host:``) instead of ``host: null``."""


def _represent_none(dumper: yaml.SafeDumper, _value: None) -> Any:
    return dumper.represent_scalar("tag:yaml.org,2002:null", "")


_InventoryDumper.add_representer(type(None), _represent_none)


def build_inventory(cluster: Cluster) -> Dict[str, Any]:
    """Kubespray inventory document for ``cluster``."""
    all_hosts: Dict[str, Dict[str, str]] = {}
    masters: Dict[str, None] = {}
    nodes: Dict[str, None] = {}
    etcd: Dict[str, None] = {}

    for instance in cluster.instances:
        if not instance.address:
            raise ValidationError(f"Instance {instance.name} has no address", "inventory")
        all_hosts[instance.name] = {"ansible_host": instance.address}
        if instance.role is Role.CONTROLLER:
            masters[instance.name] = None
            etcd[instance.name] = None
        else:
            nodes[instance.name] = None

    return {
        "all": {
            "hosts": all_hosts,
            "vars": {
                "cluster_name": cluster.fqdn,
                "artifacts_dir": f"/tmp/{cluster.name}",
                "kube_network_plugin": "cni",
                "kube_network_plugin_multus": "false",
                "kubectl_localhost": "true",
                "kubeconfig_localhost": "true",
                "override_system_hostname": "true",
                "container_manager": "crio",
                "kubelet_deployment_type": "host",
                "download_container": "false",
                "etcd_deployment_type": "host",
                "host_key_checking": "false",
            },
        },
        "kube-master": {"hosts": masters},
        "kube-node": {"hosts": nodes},
        "etcd": {"hosts": etcd},
        "k8s-cluster": {"children": {"kube-master": None, "kube-node": None}},
    }


def render_inventory(cluster: Cluster) -> str:
    return yaml.dump(
        build_inventory(cluster), Dumper=_InventoryDumper, default_flow_style=False, sort_keys=False
    )


def write_inventory(cluster: Cluster, path: str) -> str:
    """Write the inventory for ``cluster`` to ``path`` with mode 0600."""
    path = os.path.expanduser(path)
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(render_inventory(cluster))
    # O_CREAT only applies the mode to new files
    os.chmod(path, 0o600)
    return path
