import logging
import subprocess
import tempfile
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

from tenacity import retry, retry_if_exception_type, stop_after_delay, wait_exponential

from clusternet.config import (
    LIBVIRT_CONNECTION_URI,
    MINIKUBE_LIBVIRT_PVT_NETWORK_NAME,
    NETWORK_TEMPLATE,
    SUBNET_SEARCH_STEP,
    SUBNET_SEARCH_TRIES,
)
from clusternet.network import (
    InvalidCIDR,
    NetworkError,
    ProbeResult,
    SubnetParameters,
    calculate_subnet_parameters,
    find_free_subnet,
    networks_overlap,
    parse_network,
)

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = 24
CREATE_TIMEOUT = 30
DELETE_TIMEOUT = 10


class VirtError(NetworkError):
    pass


@dataclass
class VirtualNetwork:
    name: str
    subnets: list[str] = field(default_factory=list)


class VirshClient:
    """Thin wrapper around virsh subprocess calls."""

    def __init__(self, connection_uri: str = LIBVIRT_CONNECTION_URI):
        self.connection_uri = connection_uri

    def _run(self, args: list[str]) -> str:
        cmd = ["virsh", "--connect", self.connection_uri] + args
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.strip() if e.stderr else ""
            raise VirtError(f"Command failed: {' '.join(cmd)}\n{stderr}") from e
        except FileNotFoundError:
            raise VirtError("virsh is not installed or not in PATH. Install libvirt clients.")
        return result.stdout

    def list_networks(self) -> list[str]:
        output = self._run(["net-list", "--all", "--name"])
        return [line.strip() for line in output.splitlines() if line.strip()]

    def dump_xml(self, name: str) -> str:
        return self._run(["net-dumpxml", name])

    def info(self, name: str) -> dict:
        """Parse ``net-info`` into a lowercase key/value dict."""
        info = {}
        for line in self._run(["net-info", name]).splitlines():
            if ":" in line:
                key, value = line.split(":", 1)
                info[key.strip().lower()] = value.strip().lower()
        return info

    def define(self, network_xml: str) -> None:
        with tempfile.NamedTemporaryFile("w", suffix=".xml") as f:
            f.write(network_xml)
            f.flush()
            self._run(["net-define", f.name])

    def start(self, name: str) -> None:
        self._run(["net-start", name])

    def set_autostart(self, name: str) -> None:
        self._run(["net-autostart", name])

    def destroy(self, name: str) -> None:
        self._run(["net-destroy", name])

    def undefine(self, name: str) -> None:
        self._run(["net-undefine", name])


def _ip_prefix_length(ip_elem: ET.Element) -> int | None:
    prefix = ip_elem.get("prefix")
    netmask = ip_elem.get("netmask")
    if prefix:
        try:
            length = int(prefix)
        except ValueError:
            logger.debug("failed to parse prefix %s", prefix)
            return None
    elif netmask:
        try:
            length = parse_network(f"0.0.0.0/{netmask}").prefixlen
        except InvalidCIDR:
            logger.debug("failed to parse netmask %s", netmask)
            return None
    else:
        length = DEFAULT_PREFIX
    return length or DEFAULT_PREFIX


def parse_network_xml(xml_desc: str) -> VirtualNetwork:
    """Extract the name and address ranges from a libvirt network definition."""
    root = ET.fromstring(xml_desc)
    network = VirtualNetwork(name=root.findtext("name", default="").strip())

    for ip_elem in root.findall("ip"):
        address = ip_elem.get("address", "")
        if not address:
            continue
        length = _ip_prefix_length(ip_elem)
        if length is None:
            continue
        try:
            network.subnets.append(str(parse_network(f"{address}/{length}")))
        except InvalidCIDR as e:
            logger.debug("skipping address %s/%s: %s", address, length, e)
    return network


class LibvirtSubnetProber:
    """Test candidate subnets against every network libvirt knows about."""

    def __init__(self, client: VirshClient | None = None):
        self.client = client or VirshClient()

    def networks(self) -> list[VirtualNetwork]:
        networks = []
        for name in self.client.list_networks():
            try:
                networks.append(parse_network_xml(self.client.dump_xml(name)))
            except VirtError as e:
                logger.debug("failed to get network XML for %s: %s", name, e)
            except ET.ParseError as e:
                logger.debug("failed to parse network XML for %s: %s", name, e)
        return networks

    def probe(self, candidate: str) -> ProbeResult:
        try:
            networks = self.networks()
        except VirtError as e:
            return ProbeResult.unknown(f"failed to list libvirt networks: {e}")

        for network in networks:
            for existing in network.subnets:
                if networks_overlap(candidate, existing):
                    return ProbeResult.overlap(
                        f"subnet {candidate} overlaps with existing libvirt network "
                        f"{network.name} ({existing})"
                    )
        return ProbeResult.free()


def render_network_xml(name: str, bridge: str, params: SubnetParameters) -> str:
    return NETWORK_TEMPLATE.format(
        name=name,
        bridge=bridge,
        gateway=params.gateway,
        netmask=params.netmask,
        client_min=params.client_min,
        client_max=params.client_max,
    )


def _retrying(timeout: int):
    return retry(
        stop=stop_after_delay(timeout),
        wait=wait_exponential(multiplier=0.5, max=5),
        retry=retry_if_exception_type(VirtError),
        reraise=True,
    )


class VirtNetworkManager:
    """Create, activate and remove the per-project libvirt network."""

    def __init__(self, name: str, bridge: str, subnet: str, client: VirshClient | None = None):
        self.name = name
        self.bridge = bridge
        self.subnet = subnet
        self.client = client or VirshClient()

    def exists(self) -> bool:
        return self.name in self.client.list_networks()

    def ensure_network(self) -> str:
        """Create the network if missing and make sure it is active.

        Returns the subnet in use, which may differ from the requested one
        when that was already taken.
        """
        if self.exists():
            self.subnet = self._existing_subnet()
        else:
            logger.debug("network %s does not exist, creating it", self.name)
            self.create_network()
        self._setup()
        return self.subnet

    def _existing_subnet(self) -> str:
        try:
            subnets = parse_network_xml(self.client.dump_xml(self.name)).subnets
        except ET.ParseError as e:
            raise VirtError(f"Failed to parse definition of network {self.name}: {e}") from e
        if not subnets:
            logger.warning("network %s has no IPv4 address, assuming subnet %s", self.name, self.subnet)
            return self.subnet
        if subnets[0] != self.subnet:
            logger.info("network %s already exists with subnet %s", self.name, subnets[0])
        return subnets[0]

    def create_network(self) -> SubnetParameters | None:
        if self.name == MINIKUBE_LIBVIRT_PVT_NETWORK_NAME:
            raise VirtError(
                f"Network can't be named {self.name}. This is the name of the "
                "private network created by minikube by default"
            )
        if self.exists():
            logger.warning("found existing %s network, skipping creation", self.name)
            return None

        requested = self.subnet
        self.subnet = find_free_subnet(
            requested,
            SUBNET_SEARCH_STEP,
            SUBNET_SEARCH_TRIES,
            LibvirtSubnetProber(self.client),
            fail_open=True,
        )
        if self.subnet != requested:
            logger.info("subnet %s is in use, using free subnet %s instead", requested, self.subnet)

        params = calculate_subnet_parameters(self.subnet)
        network_xml = render_network_xml(self.name, self.bridge, params)
        logger.debug("generated network definition:\n%s", network_xml)

        @_retrying(CREATE_TIMEOUT)
        def _create():
            if self.name not in self.client.list_networks():
                self.client.define(network_xml)
            self.client.start(self.name)

        _create()

        if not self.exists():
            raise VirtError(f"Network {self.name} was not created successfully")
        logger.debug("network %s %s created", self.name, params.cidr)
        return params

    def delete_network(self) -> bool:
        """Remove the network. Returns False if it did not exist."""
        if not self.exists():
            logger.debug("network %s does not exist, skipping deletion", self.name)
            return False

        @_retrying(DELETE_TIMEOUT)
        def _delete():
            if self.client.info(self.name).get("active") == "yes":
                logger.debug("destroying active network %s", self.name)
                self.client.destroy(self.name)
            self.client.undefine(self.name)

        _delete()
        logger.debug("network %s deleted", self.name)
        return True

    def _setup(self) -> None:
        info = self.client.info(self.name)
        if info.get("autostart") != "yes":
            self.client.set_autostart(self.name)
        if info.get("active") != "yes":
            logger.debug("network %s is not active, starting it", self.name)
            self.client.start(self.name)
