"""
kubeadm bootstrap over SSH.

The bootstrap runs in three phases with a full barrier between them:

A. every node: OS preparation, /etc/hosts entries, and on controllers the
   control-plane image pull;
B. the first controller that succeeds: ``kubeadm init``, then the join command
   and the admin kubeconfig, both captured from that controller before any
   worker is contacted;
C. every worker: the captured join command.

A node whose commands fail is logged and left behind; the other nodes carry
on. The run only aborts when no controller yields both captures.
"""

import asyncio
import ipaddress
import os
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .exceptions import BootstrapError, ConfigurationError, KVMClusterError
from .logging import logger
from .models import BootstrapState, Cluster, Instance, Role
from .registry import MAX_CLUSTER_ORDINAL, ClusterRegistry
from .security import CommandBuilder
from .transport import SSHTransport

CRI_SOCKET = "/var/run/crio/crio.sock"
ADMIN_CONF = "/etc/kubernetes/admin.conf"

# kubeadm's names inside admin.conf
KUBEADM_CLUSTER = "kubernetes"
KUBEADM_USER = "kubernetes-admin"

OS_PREPARATION = [
    "hwclock --hctosys",
    "sed -i '/ swap / s/^\\(.*\\)$/#\\1/g' /etc/fstab",
    "swapoff -a",
    "modprobe overlay",
    "modprobe br_netfilter",
    "echo overlay > /etc/modules-load.d/crio.conf",
    "echo br_netfilter >> /etc/modules-load.d/crio.conf",
    'echo "net.bridge.bridge-nf-call-ip6tables = 1" > /etc/sysctl.d/kubernetes.conf',
    'echo "net.bridge.bridge-nf-call-iptables = 1" >> /etc/sysctl.d/kubernetes.conf',
    'echo "net.ipv4.ip_forward = 1" >> /etc/sysctl.d/kubernetes.conf',
    "sysctl --system",
    ". /etc/os-release",
    "curl -s https://packages.cloud.google.com/apt/doc/apt-key.gpg | apt-key add -",
    "wget -nv https://download.opensuse.org/repositories/devel:/kubic:/libcontainers:/stable/xUbuntu_${VERSION_ID}/Release.key -O- | apt-key add -",
    "wget -nv http://download.opensuse.org/repositories/devel:/kubic:/libcontainers:/stable:/cri-o:/1.20:/1.20.2/x${NAME}_${VERSION_ID}/Release.key -O- | apt-key add -",
    'echo "deb https://apt.kubernetes.io/ kubernetes-xenial main" > /etc/apt/sources.list.d/kubernetes.list',
    'echo "deb http://download.opensuse.org/repositories/devel:/kubic:/libcontainers:/stable:/cri-o:/1.20:/1.20.2/x${NAME}_${VERSION_ID}/ /" > /etc/apt/sources.list.d/devel:kubic:libcontainers:stable.list',
    'echo "deb https://download.opensuse.org/repositories/devel:/kubic:/libcontainers:/stable/xUbuntu_${VERSION_ID}/ /" >> /etc/apt/sources.list.d/devel:kubic:libcontainers:stable.list',
    "apt update",
    "apt -y install kubelet kubeadm kubectl cri-o cri-o-runc",
    "systemctl enable crio",
    "systemctl start crio",
    "systemctl enable kubelet",
    "rm -rf /etc/cni/net.d/*",
]

IMAGE_PULL = [f"kubeadm config images pull --cri-socket {CRI_SOCKET}"]
TOKEN_CREATE = ["kubeadm token create --print-join-command"]
FETCH_KUBECONFIG = [f"cat {ADMIN_CONF}"]


def kubeadm_init(pod_cidr: str, service_cidr: str, endpoint: str) -> List[str]:
    return [
        CommandBuilder.build_safe_command(
            "kubeadm init --pod-network-cidr={pod} --service-cidr={service} "
            f"--control-plane-endpoint={{endpoint}} --cri-socket {CRI_SOCKET}",
            pod=pod_cidr,
            service=service_cidr,
            endpoint=endpoint,
        )
    ]


def cluster_network_cidrs(ordinal: int) -> Tuple[str, str]:
    """
    Pod and service CIDRs for the cluster holding slot ``ordinal``.

    Clusters get ``10.(100+n).0.0/16`` for pods and ``10.(200+n).0.0/16`` for
    services, so they do not overlap on one host.
    """
    if ordinal < 0 or ordinal >= MAX_CLUSTER_ORDINAL:
        raise ConfigurationError(
            f"Cluster ordinal {ordinal} is out of range; at most {MAX_CLUSTER_ORDINAL} clusters are supported"
        )
    pod = ipaddress.IPv4Network(f"10.{100 + ordinal}.0.0/16")
    service = ipaddress.IPv4Network(f"10.{200 + ordinal}.0.0/16")
    return str(pod), str(service)


def clean_output(output: bytes) -> str:
    """Decode pty output and drop trailing carriage returns and newlines."""
    return output.decode("utf-8", errors="replace").rstrip("\r\n")


def merge_kubeconfig(
    existing: Optional[Dict[str, Any]], admin: Dict[str, Any], cluster: str, suffix: str
) -> Dict[str, Any]:
    """
    Merge a kubeadm ``admin.conf`` into an operator kubeconfig.

    kubeadm's default entry names are renamed to ``<cluster>.<suffix>`` (cluster),
    ``admin@<cluster>`` (user) and ``<cluster>`` (context). Entries with other
    names are kept, entries with the same names are replaced.
    """
    cluster_entry = f"{cluster}.{suffix}" if suffix else cluster
    user_entry = f"admin@{cluster}"
    context_entry = cluster

    merged: Dict[str, Any] = dict(existing or {})
    merged.setdefault("apiVersion", "v1")
    merged.setdefault("kind", "Config")
    merged.setdefault("preferences", {})

    def replace(section: str, name: str, body_key: str, body: Any) -> None:
        entries = [e for e in (merged.get(section) or []) if e.get("name") != name]
        entries.append({"name": name, body_key: body})
        merged[section] = entries

    def pick(section: str, name: str) -> Dict[str, Any]:
        entries = admin.get(section) or []
        if not entries:
            raise ConfigurationError(f"admin kubeconfig has no {section} entry")
        for entry in entries:
            if entry.get("name") == name:
                return entry
        return entries[0]

    replace("clusters", cluster_entry, "cluster", pick("clusters", KUBEADM_CLUSTER).get("cluster", {}))
    replace("users", user_entry, "user", pick("users", KUBEADM_USER).get("user", {}))
    replace(
        "contexts",
        context_entry,
        "context",
        {"cluster": cluster_entry, "user": user_entry},
    )
    if not merged.get("current-context"):
        merged["current-context"] = context_entry
    return merged


def _write_private(path: str, content: str) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(content)


class RemoteBootstrapper:
    """Runs the three bootstrap phases against a cluster's instances."""

    def __init__(
        self,
        transport: SSHTransport,
        registry: ClusterRegistry,
        credentials_dir: str = "~/.config/kvm-cluster/clusters",
        kubeconfig_path: str = "~/.kube/config",
    ) -> None:
        self.transport = transport
        self.registry = registry
        self.credentials_dir = os.path.expanduser(credentials_dir)
        self.kubeconfig_path = os.path.expanduser(kubeconfig_path)

    def hosts_commands(self, cluster: Cluster) -> List[str]:
        return CommandBuilder.build_hosts_entries(
            {i.name: i.address for i in cluster.instances if i.address}
        )

    async def _prepare(self, instance: Instance, cluster: Cluster, state: BootstrapState) -> None:
        commands = self.hosts_commands(cluster) + OS_PREPARATION
        if instance.role is Role.CONTROLLER:
            commands = commands + IMAGE_PULL
        await self.transport.run(instance.address, commands)
        state.prepared[instance.name] = True
        logger.info(f"Prepared {instance.name}", cluster=cluster.name, instance=instance.name, phase="prepare")

    async def _init_controller(
        self, instance: Instance, cluster: Cluster, pod_cidr: str, service_cidr: str
    ) -> Tuple[str, str]:
        """
        Initialise ``instance`` and return its join command and admin kubeconfig.

        Raises:
            BootstrapError: If either capture comes back empty
        """
        address = instance.address
        await self.transport.run(address, kubeadm_init(pod_cidr, service_cidr, instance.name))
        join_command = clean_output(await self.transport.run(address, TOKEN_CREATE))
        if not join_command:
            raise BootstrapError(f"{instance.name} returned an empty join command", cluster.name, "init")
        kubeconfig = clean_output(await self.transport.run(address, FETCH_KUBECONFIG))
        if not kubeconfig:
            raise BootstrapError(f"{instance.name} returned an empty admin kubeconfig", cluster.name, "init")
        return join_command, kubeconfig.replace("\r\n", "\n") + "\n"

    async def _join(self, instance: Instance, cluster: Cluster, state: BootstrapState) -> None:
        await self.transport.run(instance.address, [state.join_command])
        state.joined[instance.name] = True
        logger.info(f"Joined {instance.name}", cluster=cluster.name, instance=instance.name, phase="join")

    async def _fan_out(self, phase: str, cluster: Cluster, coros: Dict[str, Any]) -> None:
        names = list(coros)
        results = await asyncio.gather(*coros.values(), return_exceptions=True)
        for node, result in zip(names, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, KVMClusterError):
                logger.error(
                    f"{phase} failed on {node}: {result}",
                    cluster=cluster.name,
                    instance=node,
                    phase=phase,
                )
            elif isinstance(result, BaseException):
                raise result

    async def bootstrap(self, cluster: Cluster) -> BootstrapState:
        state = BootstrapState()
        reachable = [i for i in cluster.instances if i.address]
        for instance in cluster.instances:
            if not instance.address:
                logger.warning(
                    f"Skipping {instance.name}: no address", cluster=cluster.name, instance=instance.name
                )

        ordinal = await self.registry.cluster_ordinal(cluster.name)
        pod_cidr, service_cidr = cluster_network_cidrs(ordinal)

        await self._fan_out(
            "prepare", cluster, {i.name: self._prepare(i, cluster, state) for i in reachable}
        )

        controllers = [i for i in cluster.controllers if state.prepared.get(i.name)]
        for controller in controllers:
            try:
                join_command, kubeconfig = await self._init_controller(
                    controller, cluster, pod_cidr, service_cidr
                )
            except KVMClusterError as e:
                logger.error(
                    f"init failed on {controller.name}: {e}",
                    cluster=cluster.name,
                    instance=controller.name,
                    phase="init",
                )
                continue
            state.join_command = join_command
            state.kubeconfig = kubeconfig
            state.controller = controller.name
            break
        if not (state.join_command and state.kubeconfig):
            raise BootstrapError(
                "no controller produced a join command and admin kubeconfig", cluster.name, "init"
            )
        self.store_admin_conf(cluster, state)

        extra = [c.name for c in cluster.controllers if c.name != state.controller]
        if extra:
            logger.warning(
                "Only one controller is initialised; additional controllers stay unjoined",
                cluster=cluster.name,
                controllers=extra,
            )

        workers = [i for i in cluster.workers if state.prepared.get(i.name)]
        await self._fan_out(
            "join", cluster, {i.name: self._join(i, cluster, state) for i in workers}
        )

        self.finalize(cluster, state)
        return state

    def store_admin_conf(self, cluster: Cluster, state: BootstrapState) -> None:
        """Write the captured admin kubeconfig under the credentials directory."""
        path = os.path.join(self.credentials_dir, cluster.name, "admin.conf")
        _write_private(path, state.kubeconfig)
        state.kubeconfig_path = path
        logger.info(f"Stored admin kubeconfig for {cluster.name}", cluster=cluster.name, path=path)

    def finalize(self, cluster: Cluster, state: BootstrapState) -> None:
        """Merge the admin kubeconfig into the operator kubeconfig."""
        admin = yaml.safe_load(state.kubeconfig) or {}
        existing = None
        if os.path.exists(self.kubeconfig_path):
            with open(self.kubeconfig_path, "r") as f:
                existing = yaml.safe_load(f)
        merged = merge_kubeconfig(existing, admin, cluster.name, cluster.suffix)
        _write_private(
            self.kubeconfig_path, yaml.safe_dump(merged, default_flow_style=False, sort_keys=False)
        )
        logger.info(
            f"Merged kubeconfig for {cluster.name}",
            cluster=cluster.name,
            kubeconfig=self.kubeconfig_path,
        )
