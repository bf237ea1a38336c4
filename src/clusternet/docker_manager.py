import logging
import subprocess

from clusternet.config import DEFAULT_SUBNET_CIDR
from clusternet.network import NetworkError, gateway_ip

logger = logging.getLogger(__name__)

ENGINES = ("docker", "podman")


class DockerError(Exception):
    pass


def detect_engine(preferred: str | None = None) -> str:
    """Return the first container engine that answers ``version``."""
    candidates = [preferred] if preferred else []
    candidates += [e for e in ENGINES if e != preferred]
    for engine in candidates:
        try:
            subprocess.run([engine, "version"], capture_output=True, check=True)
        except (subprocess.CalledProcessError, FileNotFoundError):
            continue
        return engine
    raise DockerError("Neither Docker nor Podman is available")


def resolve_gateway(gateway: str, subnet: str, default_subnet: str = DEFAULT_SUBNET_CIDR) -> str:
    """Keep the gateway inside ``subnet`` when it was changed from the default."""
    if subnet == default_subnet:
        return gateway
    try:
        derived = gateway_ip(subnet)
    except NetworkError as e:
        logger.warning(
            "failed to generate gateway IP from subnet %s: %s, using provided gateway IP %s",
            subnet, e, gateway,
        )
        return gateway
    if derived != gateway:
        logger.debug("generated gateway IP %s from subnet %s", derived, subnet)
    return derived


class ContainerEngine:
    """Thin wrapper around docker/podman network and inspect calls."""

    def __init__(self, engine: str | None = None):
        self.engine = engine or detect_engine()

    def _run(self, args: list[str]) -> str:
        cmd = [self.engine] + args
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.strip() if e.stderr else ""
            raise DockerError(f"Command failed: {' '.join(cmd)}\n{stderr}") from e
        except FileNotFoundError:
            raise DockerError(
                f"{self.engine} is not installed or not in PATH. "
                "Install Docker: https://docs.docker.com/get-docker/"
            )
        return result.stdout

    def list_networks(self) -> list[str]:
        output = self._run(["network", "ls", "--format", "{{.Name}}"])
        return [line.strip() for line in output.splitlines() if line.strip()]

    def create_network(self, name: str, gateway: str, subnet: str) -> bool:
        """Create the network unless it exists. Returns True if it was created."""
        if name in self.list_networks():
            logger.info("network %s already exists", name)
            return False
        self._run(["network", "create", name, f"--gateway={gateway}", f"--subnet={subnet}"])
        logger.info("network '%s' created with gateway %s and subnet %s", name, gateway, subnet)
        return True

    def container_ip(self, container: str) -> str:
        """Return the first IP address of a running node container."""
        output = self._run([
            "inspect", "-f",
            "{{range .NetworkSettings.Networks}}{{.IPAddress}} {{end}}",
            container,
        ])
        addresses = output.split()
        if not addresses:
            raise DockerError(f"Empty IP address returned for container {container}")
        logger.debug("container %s has IP %s", container, addresses[0])
        return addresses[0]
