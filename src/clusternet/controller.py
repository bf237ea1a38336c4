import logging
from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console
from rich.table import Table

from clusternet.config import (
    KIND_NETWORK_NAME,
    KIND_REGISTRY_PORT,
    default_config,
    load_config,
    merge_configs,
    service_cidr,
    validate_config,
)
from clusternet.docker_manager import ContainerEngine, resolve_gateway
from clusternet.kube import KubeClient, KubeError
from clusternet.loadbalancer import (
    AllocationLedger,
    LBAllocation,
    LoadBalancerAllocator,
    render_pool_manifest,
)
from clusternet.network import calculate_subnet_parameters
from clusternet.ports import NoPortAvailable, control_plane_port, registry_port
from clusternet.project_state import ProjectStore, StateError
from clusternet.virt_network import VirshClient, VirtError, VirtNetworkManager

console = Console()
logger = logging.getLogger(__name__)

# settings that describe the project rather than the ledger
PLAN_FIELDS = (
    "driver",
    "num_clusters",
    "subnet_cidr",
    "gateway_ip",
    "bridge",
    "install_metallb",
    "lb_min_octet",
    "lb_max_octet",
)


@dataclass
class ClusterRef:
    ordinal: int
    name: str
    context: str
    control_plane_port: int | None = None
    service_cidr: str | None = None

    @property
    def node_container(self) -> str:
        return f"{self.name}-control-plane"


@dataclass
class NetworkPlan:
    project: str
    driver: str
    network_name: str
    subnet: str
    gateway: str
    registry_port: int | None
    clusters: list[ClusterRef] = field(default_factory=list)

    def to_record(self) -> dict:
        return {
            "network_name": self.network_name,
            "subnet_cidr": self.subnet,
            "gateway_ip": self.gateway,
            "registry_port": self.registry_port,
            "control_plane_ports": {
                c.context: c.control_plane_port for c in self.clusters if c.control_plane_port
            },
            "service_cidrs": {c.context: c.service_cidr for c in self.clusters if c.service_cidr},
        }


def cluster_refs(project: str, num_clusters: int, driver: str) -> list[ClusterRef]:
    """Name clusters the way the provisioners do.

    A single cluster keeps the bare project name as its context; several
    clusters get a numeric suffix. minikube clusters each get their own
    service CIDR.
    """
    refs = []
    for i in range(1, num_clusters + 1):
        context = project if num_clusters == 1 else f"{project}-{i}"
        if driver == "kind":
            refs.append(ClusterRef(ordinal=i, name=f"kind{i}", context=context))
        else:
            refs.append(ClusterRef(ordinal=i, name=context, context=context, service_cidr=service_cidr(i)))
    return refs


def libvirt_network_name(project: str) -> str:
    return f"{project}-net"


class NetworkController:
    """Orchestrates network, port and load-balancer allocation for a project."""

    def __init__(
        self,
        store: ProjectStore | None = None,
        virsh: VirshClient | None = None,
        engine_factory=ContainerEngine,
        kube_factory=KubeClient,
    ):
        self.store = store or ProjectStore()
        self.virsh = virsh
        self.engine_factory = engine_factory
        self.kube_factory = kube_factory

    def resolve_options(
        self,
        project: str,
        overrides: dict | None = None,
        config_file: Path | None = None,
    ) -> dict:
        """Defaults, then the saved project record, then a config file, then overrides."""
        options = default_config()
        saved = self.store.load(project)
        if saved:
            options = merge_configs(options, {k: saved.get(k) for k in PLAN_FIELDS})
        if config_file:
            options = merge_configs(options, load_config(config_file))
        if overrides:
            options = merge_configs(options, overrides)
        validate_config(options)
        return options

    def prepare(
        self,
        project: str,
        overrides: dict | None = None,
        config_file: Path | None = None,
    ) -> NetworkPlan:
        """Allocate the network and ports shared by all of a project's clusters."""
        options = self.resolve_options(project, overrides, config_file)
        driver = options["driver"]
        clusters = cluster_refs(project, options["num_clusters"], driver)
        console.print(f"[bold]Project:[/bold] {project} ({driver}, {len(clusters)} cluster(s))")

        if driver == "minikube":
            manager = VirtNetworkManager(
                libvirt_network_name(project),
                options["bridge"],
                options["subnet_cidr"],
                client=self.virsh,
            )
            subnet = manager.ensure_network()
            network_name = manager.name
            gateway = calculate_subnet_parameters(subnet).gateway
            reg_port = None
        else:
            subnet = options["subnet_cidr"]
            gateway = resolve_gateway(options["gateway_ip"], subnet)
            network_name = KIND_NETWORK_NAME
            self.engine_factory().create_network(network_name, gateway, subnet)
            reg_port = self._registry_port()

            taken = {reg_port}
            for ref in clusters:
                ref.control_plane_port = control_plane_port(ref.ordinal, exclude=taken)
                taken.add(ref.control_plane_port)

        plan = NetworkPlan(
            project=project,
            driver=driver,
            network_name=network_name,
            subnet=subnet,
            gateway=gateway,
            registry_port=reg_port,
            clusters=clusters,
        )
        console.print(f"[bold]Network:[/bold] {network_name} {subnet} (gateway {gateway})")

        record = {k: options[k] for k in PLAN_FIELDS}
        record.update(plan.to_record())
        self.store.update(project, **record)
        return plan

    def _registry_port(self) -> int:
        try:
            port = registry_port()
        except NoPortAvailable as e:
            logger.warning("failed to find available registry port: %s, using default %d", e, KIND_REGISTRY_PORT)
            return KIND_REGISTRY_PORT
        logger.debug("using registry port %d for all clusters", port)
        return port

    def configure_load_balancers(
        self,
        project: str,
        overrides: dict | None = None,
        apply: bool = True,
    ) -> list[LBAllocation]:
        """Give every running cluster in the project its load-balancer pool."""
        options = self.resolve_options(project, overrides)
        clusters = cluster_refs(project, options["num_clusters"], options["driver"])
        ledger = AllocationLedger.initialize_tracking(self.store, project)
        allocator = LoadBalancerAllocator(ledger, options["lb_min_octet"], options["lb_max_octet"])
        if not options["install_metallb"]:
            logger.info("MetalLB is disabled for project %s, recording pools without applying them", project)
            apply = False

        allocations = []
        for ref in clusters:
            node_ip = self._observed_node_ip(ref, options["driver"])
            allocations.append(
                self.configure_load_balancer(allocator, ref, node_ip, len(clusters), apply=apply)
            )
        return allocations

    def configure_load_balancer(
        self,
        allocator: LoadBalancerAllocator,
        ref: ClusterRef,
        node_ip: str,
        total_clusters: int,
        apply: bool = True,
    ) -> LBAllocation:
        """Allocate, apply and record one cluster's pool, in that order."""
        kube = self.kube_factory(ref.context)
        try:
            node_ips = kube.node_ip_octets()
        except KubeError as e:
            logger.warning("failed to get node IPs, continuing without overlap check: %s", e)
            node_ips = None

        ip_range, allocation = allocator.allocate(
            ref.context, node_ip, ref.ordinal, total_clusters, node_ips=node_ips, persist=False
        )
        if apply:
            kube.apply_manifest(render_pool_manifest(ip_range))
        allocator.persist(allocation)
        console.print(f"[bold]Load balancer:[/bold] {ref.context} -> {ip_range}")
        return allocation

    def _observed_node_ip(self, ref: ClusterRef, driver: str) -> str:
        if driver == "kind":
            return self.engine_factory().container_ip(ref.node_container)
        addresses = self.kube_factory(ref.context).node_addresses()
        if not addresses:
            raise KubeError(f"No node addresses reported for context {ref.context}")
        return addresses[0]

    def teardown(self, project: str, force: bool = False) -> None:
        """Forget a project's allocations; with ``force`` also remove its libvirt network."""
        record = self.store.load(project)
        if record is None:
            console.print(f"Project {project} has no saved allocations.")
            return

        if force and record.get("driver") == "minikube":
            manager = VirtNetworkManager(
                record.get("network_name") or libvirt_network_name(project),
                record.get("bridge", ""),
                record.get("subnet_cidr", ""),
                client=self.virsh,
            )
            try:
                manager.delete_network()
            except VirtError as e:
                logger.warning("failed to cleanup network: %s", e)

        self.store.delete(project)
        console.print(f"[bold green]Deleted project configuration: {project}[/bold green]")

    def status(self, project: str) -> None:
        """Show a project's network settings and load-balancer pools."""
        record = self.store.load(project)
        if record is None:
            raise StateError(f"Project '{project}' not found")

        console.print(f"[bold]Project:[/bold] {project}")
        console.print(f"[bold]Driver:[/bold] {record.get('driver', '?')}")
        console.print(f"[bold]Network:[/bold] {record.get('network_name', '?')} {record.get('subnet_cidr', '?')}")
        console.print(f"[bold]Gateway:[/bold] {record.get('gateway_ip', '?')}")
        if record.get("registry_port"):
            console.print(f"[bold]Registry port:[/bold] {record['registry_port']}")
        console.print()

        ledger = AllocationLedger.initialize_tracking(self.store, project)
        if not ledger.allocations:
            console.print("No load-balancer pools allocated.")
            return

        ports = record.get("control_plane_ports") or {}
        table = Table(title=f"Load-Balancer Pools - {project}")
        table.add_column("Cluster", style="cyan")
        table.add_column("Range", style="green")
        table.add_column("Node IPs")
        table.add_column("API Port")

        for allocation in ledger.allocations:
            table.add_row(
                allocation.cluster_name,
                allocation.ip_range,
                ", ".join(str(o) for o in allocation.node_ips) or "-",
                str(ports.get(allocation.cluster_name, "-")),
            )
        console.print(table)

    def list_projects(self) -> None:
        """List all projects with saved allocations."""
        records = self.store.list_all()
        if not records:
            console.print("No projects found. Run [bold]clusternet prepare <project>[/bold] to create one.")
            return

        table = Table(title="Projects")
        table.add_column("Project", style="cyan")
        table.add_column("Driver", style="green")
        table.add_column("Subnet")
        table.add_column("Pools")
        table.add_column("Updated")

        for record in records:
            table.add_row(
                record.get("project", "?"),
                record.get("driver", "?"),
                record.get("subnet_cidr", "?"),
                str(len(record.get("metallb_allocations") or [])),
                str(record.get("updated_at", "?"))[:19],
            )
        console.print(table)

