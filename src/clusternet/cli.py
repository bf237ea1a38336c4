import functools
import logging
from dataclasses import asdict

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from clusternet import __version__
from clusternet.config import (
    SUBNET_SEARCH_STEP,
    SUBNET_SEARCH_TRIES,
    ConfigError,
    default_config,
)
from clusternet.controller import NetworkController
from clusternet.docker_manager import DockerError
from clusternet.kube import KubeError
from clusternet.loadbalancer import AllocationError, AllocationLedger, LoadBalancerAllocator
from clusternet.network import NetworkError, calculate_subnet_parameters, find_free_subnet
from clusternet.ports import PortError, control_plane_port, registry_port
from clusternet.project_state import StateError
from clusternet.virt_network import LibvirtSubnetProber

console = Console()
controller = NetworkController()


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def handle_errors(fn):
    """Decorator to catch and display common errors."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (
            ConfigError,
            StateError,
            NetworkError,
            PortError,
            AllocationError,
            DockerError,
            KubeError,
        ) as e:
            console.print(f"[bold red]Error:[/bold red] {e}")
            raise SystemExit(1)

    return wrapper


def collect_overrides(**options) -> dict:
    return {k: v for k, v in options.items() if v is not None}


@click.group()
@click.version_option(version=__version__, prog_name="clusternet")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose):
    """clusternet - Allocate networks, ports and load-balancer pools for local clusters."""
    setup_logging(verbose)


@cli.command()
@click.argument("project")
@click.option("-c", "--config", "config_file", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Project config YAML file")
@click.option("-d", "--driver", type=click.Choice(["kind", "minikube"]), default=None, help="Cluster provisioner")
@click.option("-n", "--num-clusters", type=int, default=None, help="Number of clusters (1-3)")
@click.option("--subnet", default=None, help="Subnet CIDR for the cluster network")
@click.option("--gateway", default=None, help="Gateway IP for the container network")
@click.option("--bridge", default=None, help="Bridge name for the libvirt network")
@handle_errors
def prepare(project, config_file, driver, num_clusters, subnet, gateway, bridge):
    """Allocate the network, registry port and control-plane ports for a project."""
    overrides = collect_overrides(
        driver=driver,
        num_clusters=num_clusters,
        subnet_cidr=subnet,
        gateway_ip=gateway,
        bridge=bridge,
    )
    plan = controller.prepare(project, overrides=overrides, config_file=config_file)

    table = Table(title=f"Network Plan - {project}")
    table.add_column("Cluster", style="cyan")
    table.add_column("Context", style="green")
    table.add_column("API Port")
    table.add_column("Service CIDR")
    for ref in plan.clusters:
        table.add_row(ref.name, ref.context, str(ref.control_plane_port or "-"), ref.service_cidr or "-")
    console.print(table)
    if plan.registry_port:
        console.print(f"[bold]Registry port:[/bold] {plan.registry_port}")


@cli.command()
@click.argument("project")
@click.option("--no-apply", is_flag=True, help="Record the pools without applying them to the clusters")
@handle_errors
def loadbalancer(project, no_apply):
    """Allocate and apply load-balancer pools for every cluster in a project."""
    controller.configure_load_balancers(project, apply=not no_apply)


@cli.command()
@click.argument("project")
@click.option("--cluster", "cluster_name", required=True, help="Cluster name recorded in the ledger")
@click.option("--node-ip", required=True, help="An address of the cluster's node network")
@click.option("--ordinal", type=int, required=True, help="Position of the cluster (starting at 1)")
@click.option("--total", type=int, required=True, help="Number of clusters in the project")
@click.option("--node-octet", "node_octets", type=int, multiple=True, help="Last octet of a node IP to avoid")
@handle_errors
def allocate(project, cluster_name, node_ip, ordinal, total, node_octets):
    """Reserve a load-balancer range for one cluster without touching it."""
    options = controller.resolve_options(project)
    ledger = AllocationLedger.initialize_tracking(controller.store, project)
    allocator = LoadBalancerAllocator(ledger, options["lb_min_octet"], options["lb_max_octet"])
    ip_range, _ = allocator.allocate(cluster_name, node_ip, ordinal, total, node_ips=set(node_octets))
    console.print(ip_range)


@cli.command()
@click.argument("cidr")
@handle_errors
def params(cidr):
    """Show gateway, netmask and DHCP range derived from a CIDR."""
    table = Table(title=f"Subnet Parameters - {cidr}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key, value in asdict(calculate_subnet_parameters(cidr)).items():
        table.add_row(key, str(value))
    console.print(table)


@cli.command("find-subnet")
@click.argument("start", default=default_config()["subnet_cidr"])
@click.option("--step", type=int, default=SUBNET_SEARCH_STEP, show_default=True, help="Octet increment per try")
@click.option("--tries", type=int, default=SUBNET_SEARCH_TRIES, show_default=True, help="Maximum candidates")
@click.option("--fail-closed", is_flag=True, help="Fail instead of assuming free when libvirt is unreachable")
@handle_errors
def find_subnet(start, step, tries, fail_closed):
    """Find a subnet that does not overlap any libvirt network."""
    subnet = find_free_subnet(start, step, tries, LibvirtSubnetProber(), fail_open=not fail_closed)
    console.print(subnet)


@cli.command()
@click.option("-n", "--num-clusters", type=int, default=1, show_default=True, help="Number of clusters")
@handle_errors
def ports(num_clusters):
    """Show the registry and control-plane ports that would be chosen now."""
    reg = registry_port()
    taken = {reg}
    table = Table(title="Ports")
    table.add_column("Use", style="cyan")
    table.add_column("Port", style="green")
    table.add_row("registry", str(reg))
    for i in range(1, num_clusters + 1):
        port = control_plane_port(i, exclude=taken)
        taken.add(port)
        table.add_row(f"control-plane {i}", str(port))
    console.print(table)


@cli.command()
@click.argument("project")
@click.option("--force", is_flag=True, help="Also remove the project's libvirt network")
@handle_errors
def delete(project, force):
    """Forget a project's allocations."""
    controller.teardown(project, force=force)


@cli.command()
@click.argument("project")
@handle_errors
def status(project):
    """Show a project's network and load-balancer allocations."""
    controller.status(project)


@cli.command("list")
@handle_errors
def list_projects():
    """List all projects with saved allocations."""
    controller.list_projects()


@cli.command()
@click.argument("path")
@handle_errors
def init(path):
    """Scaffold a project config YAML file."""
    from pathlib import Path

    import yaml

    target = Path(path)
    if target.exists():
        console.print(f"[bold red]File already exists:[/bold red] {target}")
        raise SystemExit(1)

    scaffold = {"project": target.stem, **default_config()}

    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "w") as f:
        yaml.dump(scaffold, f, default_flow_style=False, sort_keys=False)

    console.print(f"[bold green]Created project config:[/bold green] {target}")
    console.print(f"Edit the file, then run: [bold]clusternet prepare {target.stem} -c {path}[/bold]")
