#!/usr/bin/env python3
"""
Command-line interface for KVM cluster operations.

Commands are grouped by resource: ``cluster``, ``snapshot``, ``image``,
``network`` and ``config``.
"""

import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional

import click
import yaml

from kvm_cluster import KVMClusterClient
from kvm_cluster.config import AppConfig, ConfigLoader, config_loader
from kvm_cluster.exceptions import (
    ConfigurationError,
    KVMClusterError,
    OperationCancelledError,
    ValidationError,
)
from kvm_cluster.inventory import write_inventory
from kvm_cluster.logging import logger
from kvm_cluster.models import Cluster, Image, ImageKind, Network, Snapshot


def setup_logging(verbose: bool = False, quiet: bool = False, log_level: str = "INFO") -> None:
    """Setup logging configuration."""
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = getattr(logging, log_level.upper(), logging.INFO)

    logger.set_level(level)


def load_config(config_path: Optional[str]) -> AppConfig:
    """Load configuration, falling back to defaults on error."""
    try:
        return config_loader.load_config(config_path)
    except ConfigurationError as e:
        click.echo(f"Warning: {e}", err=True)
        return AppConfig()


def cluster_to_dict(cluster: Cluster) -> Dict[str, Any]:
    return {
        "name": cluster.name,
        "suffix": cluster.suffix,
        "instances": [
            {
                "name": i.name,
                "role": i.role.value,
                "ip_addresses": list(i.ip_addresses),
                "state": i.state.value,
            }
            for i in cluster.instances
        ],
    }


def image_to_dict(image: Image) -> Dict[str, Any]:
    return {
        "name": image.name,
        "kind": image.kind.value,
        "owner": image.owner,
        "pool": image.pool,
        "path": image.path,
    }


def network_to_dict(network: Network) -> Dict[str, Any]:
    return {
        "name": network.name,
        "subnet": str(network.subnet),
        "gateway": str(network.gateway),
        "dns_server": str(network.dns_server),
        "dhcp": network.dhcp,
        "type": network.type.value,
        "active": network.active,
    }


def snapshot_to_dict(snapshot: Snapshot) -> Dict[str, Any]:
    return {"instance": snapshot.instance, "name": snapshot.name, "current": snapshot.is_current}


def emit(ctx: Any, data: Any, text: Callable[[], None]) -> None:
    """Print ``data`` in the selected output format."""
    output_format = ctx.obj.get("output_format", "text")
    if output_format == "json":
        click.echo(json.dumps(data, indent=2))
    elif output_format == "yaml":
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
    else:
        text()


def run(ctx: Any, factory: Callable[[KVMClusterClient], Awaitable[None]]) -> None:
    """Run an async command body with a client, mapping errors to exit codes."""

    async def _main() -> None:
        async with KVMClusterClient(config=ctx.obj["config"]) as client:
            try:
                await factory(client)
            except asyncio.CancelledError:
                raise OperationCancelledError(
                    ctx.info_name, ctx.params.get("name") or ctx.command_path
                ) from None

    try:
        asyncio.run(_main())
    except KVMClusterError as e:
        click.echo(f"✗ Error: {e}", err=True)
        sys.exit(e.error_code)
    except Exception as e:
        click.echo(f"✗ Unexpected error: {e}", err=True)
        sys.exit(1)


def say(ctx: Any, message: str) -> None:
    if not ctx.obj["quiet"] and ctx.obj.get("output_format", "text") == "text":
        click.echo(message)


@click.group()
@click.option("--config", "-c", default=None, help="Configuration file path")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-error output")
@click.option(
    "--output",
    "-o",
    type=click.Choice(["text", "json", "yaml"]),
    default="text",
    help="Output format",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level (overrides the configuration file)",
)
@click.version_option(package_name="kvm-cluster")
@click.pass_context
def cli(ctx: Any, config: Any, verbose: bool, quiet: bool, output: str, log_level: Optional[str]) -> None:
    """Provision clusters of KVM virtual machines."""
    app_config = load_config(config)
    setup_logging(verbose, quiet, log_level or app_config.log_level)

    ctx.ensure_object(dict)
    ctx.obj["config"] = app_config
    ctx.obj["config_path"] = config
    ctx.obj["output_format"] = output
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet


@cli.group()
def cluster() -> None:
    """Create, delete and list clusters."""


@cluster.command("create")
@click.argument("name")
@click.option("--worker", "-w", type=int, default=0, help="Number of workers")
@click.option("--controller", "-c", type=int, default=1, help="Number of controllers")
@click.option("--image", "-i", default="default", help="Base image name")
@click.option("--network", "-l", default=None, help="Network name")
@click.option("--suffix", "-s", default=None, help="DNS suffix")
@click.option("--memory", "-m", default="12G", help="Memory per instance (e.g. 4G)")
@click.option("--cpu", "-v", type=int, default=4, help="vCPUs per instance")
@click.option("--disk", "-d", default="10G", help="Root disk size per instance")
@click.option("--publickey", "-k", default=None, help="Public key installed on instances")
@click.option("--run", "run_bootstrap", is_flag=True, help="Bootstrap Kubernetes with kubeadm")
@click.option("--exec", "run_kubespray", is_flag=True, help="Deploy Kubernetes with kubespray")
@click.option("--inventory", default=None, help="Write an Ansible inventory to this path")
@click.option("--gitlocation", default="~/kubespray", help="kubespray checkout location")
@click.pass_context
def cluster_create(
    ctx: Any,
    name: str,
    worker: int,
    controller: int,
    image: str,
    network: Optional[str],
    suffix: Optional[str],
    memory: str,
    cpu: int,
    disk: str,
    publickey: Optional[str],
    run_bootstrap: bool,
    run_kubespray: bool,
    inventory: Optional[str],
    gitlocation: str,
) -> None:
    """Create a cluster."""

    async def body(client: KVMClusterClient) -> None:
        if run_bootstrap and run_kubespray:
            raise ValidationError("--run and --exec are mutually exclusive", "cli")
        if run_kubespray and not inventory:
            raise ValidationError("--exec requires --inventory", "cli")

        spec = await client.build_cluster_spec(
            name,
            controllers=controller,
            workers=worker,
            image=image,
            network=network,
            suffix=suffix,
            memory=memory,
            cpu=cpu,
            disk=disk,
            public_key_path=publickey,
        )
        say(ctx, f"Creating cluster '{name}' ({controller} controller(s), {worker} worker(s))...")
        created = await client.create_cluster(spec)

        if run_kubespray:
            path = await client.deploy_kubespray(created, inventory, gitlocation)
            say(ctx, f"✓ kubespray finished with inventory {path}")
        elif inventory:
            path = write_inventory(created, inventory)
            say(ctx, f"✓ Inventory written to {path}")

        if run_bootstrap:
            state = await client.bootstrap_cluster(created)
            say(ctx, f"✓ Kubernetes bootstrapped, kubeconfig at {state.kubeconfig_path}")

        emit(ctx, cluster_to_dict(created), lambda: _print_clusters([created]))

    run(ctx, body)


@cluster.command("delete")
@click.argument("name")
@click.pass_context
def cluster_delete(ctx: Any, name: str) -> None:
    """Delete a cluster and all of its instances."""

    async def body(client: KVMClusterClient) -> None:
        removed = await client.delete_cluster(name)
        emit(
            ctx,
            {"name": name, "removed": removed},
            lambda: say(ctx, f"✓ Deleted cluster '{name}' ({len(removed)} instance(s))"),
        )

    run(ctx, body)


def _print_clusters(clusters: List[Cluster]) -> None:
    if not clusters:
        click.echo("No clusters found")
        return
    click.echo(f"{'Cluster':<16} {'Instance':<40} {'Role':<11} {'IP':<16}")
    click.echo("-" * 85)
    for item in clusters:
        for instance in item.instances:
            click.echo(
                f"{item.name:<16} {instance.name:<40} {instance.role.value:<11} "
                f"{instance.address or '-':<16}"
            )


@cluster.command("list")
@click.pass_context
def cluster_list(ctx: Any) -> None:
    """List clusters."""

    async def body(client: KVMClusterClient) -> None:
        clusters = await client.list_clusters()
        emit(ctx, [cluster_to_dict(c) for c in clusters], lambda: _print_clusters(clusters))

    run(ctx, body)


@cli.group()
def snapshot() -> None:
    """Snapshot and revert all instances of a cluster."""


def _print_snapshots(snapshots: List[Snapshot]) -> None:
    if not snapshots:
        click.echo("No snapshots found")
        return
    click.echo(f"{'Instance':<40} {'Snapshot Name':<24} {'Current':<7}")
    click.echo("-" * 73)
    for snap in snapshots:
        click.echo(f"{snap.instance:<40} {snap.name:<24} {str(snap.is_current):<7}")


@snapshot.command("create")
@click.argument("name")
@click.option("--snapshot-name", default=None, help="Snapshot name (default: timestamp)")
@click.pass_context
def snapshot_create(ctx: Any, name: str, snapshot_name: Optional[str]) -> None:
    """Snapshot every instance of a cluster."""

    async def body(client: KVMClusterClient) -> None:
        created = await client.create_snapshot(name, snapshot_name)
        emit(ctx, [snapshot_to_dict(s) for s in created], lambda: _print_snapshots(created))

    run(ctx, body)


@snapshot.command("list")
@click.argument("name")
@click.pass_context
def snapshot_list(ctx: Any, name: str) -> None:
    """List snapshots of a cluster."""

    async def body(client: KVMClusterClient) -> None:
        snapshots = await client.list_snapshots(name)
        emit(ctx, [snapshot_to_dict(s) for s in snapshots], lambda: _print_snapshots(snapshots))

    run(ctx, body)


@snapshot.command("revert")
@click.argument("name")
@click.option("--snapshot-name", default=None, help="Snapshot name (default: current)")
@click.pass_context
def snapshot_revert(ctx: Any, name: str, snapshot_name: Optional[str]) -> None:
    """Revert every instance of a cluster."""

    async def body(client: KVMClusterClient) -> None:
        reverted = await client.revert_snapshot(name, snapshot_name)
        emit(ctx, [snapshot_to_dict(s) for s in reverted], lambda: _print_snapshots(reverted))

    run(ctx, body)


@cli.group()
def image() -> None:
    """Manage distribution images."""


def _print_images(images: List[Image]) -> None:
    if not images:
        click.echo("No images found")
        return
    click.echo(f"{'Name':<20} {'Kind':<13} {'Owner':<40} {'Path'}")
    click.echo("-" * 100)
    for img in images:
        click.echo(f"{img.name:<20} {img.kind.value:<13} {img.owner:<40} {img.path or '-'}")


@image.command("create")
@click.argument("name")
@click.option("--url", "-u", default=None, help="Download location")
@click.option("--path", "-p", "path", default=None, help="Local image file")
@click.option("--distribution", "-d", default="ubuntu", help="Distribution name")
@click.pass_context
def image_create(ctx: Any, name: str, url: Optional[str], path: Optional[str], distribution: str) -> None:
    """Create a distribution image from a URL or a local file."""

    async def body(client: KVMClusterClient) -> None:
        created = await client.create_image(name, distribution, url=url, path=path)
        emit(ctx, image_to_dict(created), lambda: say(ctx, f"✓ Image '{created.name}' at {created.path}"))

    run(ctx, body)


@image.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include per-instance images")
@click.pass_context
def image_list(ctx: Any, show_all: bool) -> None:
    """List images."""

    async def body(client: KVMClusterClient) -> None:
        images = await client.list_images(None if show_all else ImageKind.DISTRIBUTION)
        emit(ctx, [image_to_dict(i) for i in images], lambda: _print_images(images))

    run(ctx, body)


@image.command("delete")
@click.argument("name")
@click.option("--distribution", "-d", required=True, help="Distribution name")
@click.pass_context
def image_delete(ctx: Any, name: str, distribution: str) -> None:
    """Delete a distribution image."""

    async def body(client: KVMClusterClient) -> None:
        await client.delete_image(name, distribution)
        emit(ctx, {"name": name, "deleted": True}, lambda: say(ctx, f"✓ Deleted image '{name}'"))

    run(ctx, body)


@cli.group()
def network() -> None:
    """Manage virtual networks."""


def _print_networks(networks: List[Network]) -> None:
    if not networks:
        click.echo("No networks found")
        return
    click.echo(f"{'Name':<16} {'Subnet':<18} {'Gateway':<16} {'DNS':<16} {'DHCP':<5} {'Type':<6}")
    click.echo("-" * 82)
    for net in networks:
        click.echo(
            f"{net.name:<16} {str(net.subnet):<18} {str(net.gateway):<16} "
            f"{str(net.dns_server):<16} {str(net.dhcp):<5} {net.type.value:<6}"
        )


@network.command("create")
@click.argument("name")
@click.option("--subnet", "-s", required=True, help="Subnet in CIDR notation")
@click.option("--gateway", "-g", default=None, help="Gateway (default: first host address)")
@click.option("--dnsserver", "-n", default=None, help="DNS server (default: gateway)")
@click.option("--dhcp/--no-dhcp", default=True, help="Serve DHCP")
@click.option("--type", "-t", "network_type", type=click.Choice(["bridge", "ovs"]), default="bridge")
@click.pass_context
def network_create(
    ctx: Any,
    name: str,
    subnet: str,
    gateway: Optional[str],
    dnsserver: Optional[str],
    dhcp: bool,
    network_type: str,
) -> None:
    """Create a managed network."""

    async def body(client: KVMClusterClient) -> None:
        created = await client.create_network(name, subnet, gateway, dnsserver, dhcp, network_type)
        emit(ctx, network_to_dict(created), lambda: say(ctx, f"✓ Network '{created.name}' ({created.subnet})"))

    run(ctx, body)


@network.command("list")
@click.pass_context
def network_list(ctx: Any) -> None:
    """List managed networks."""

    async def body(client: KVMClusterClient) -> None:
        networks = await client.list_networks()
        emit(ctx, [network_to_dict(n) for n in networks], lambda: _print_networks(networks))

    run(ctx, body)


@network.command("delete")
@click.argument("name")
@click.pass_context
def network_delete(ctx: Any, name: str) -> None:
    """Delete a managed network."""

    async def body(client: KVMClusterClient) -> None:
        await client.delete_network(name)
        emit(ctx, {"name": name, "deleted": True}, lambda: say(ctx, f"✓ Deleted network '{name}'"))

    run(ctx, body)


@cli.group()
def config() -> None:
    """Manage configuration settings."""


@config.command("show")
@click.pass_context
def config_show(ctx: Any) -> None:
    """Display the effective configuration."""
    data = ctx.obj["config"].model_dump()
    if ctx.obj.get("output_format") == "json":
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


@config.command("init")
@click.option(
    "--path", "path", default=ConfigLoader.DEFAULT_PATHS[0], help="Configuration file to write"
)
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init(path: str, force: bool) -> None:
    """Write a configuration file with default values."""
    try:
        ConfigLoader().write_default(path, overwrite=force)
    except ConfigurationError as e:
        click.echo(f"✗ Error: {e}", err=True)
        sys.exit(e.error_code)
    click.echo(f"Configuration initialized at {path}")


if __name__ == "__main__":
    cli()
