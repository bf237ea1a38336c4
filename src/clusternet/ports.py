import logging
import socket

from clusternet.config import (
    CONTROL_PLANE_FALLBACK_PORTS,
    KIND_CONTROL_PLANE_PORT,
    KIND_REGISTRY_PORT,
    REGISTRY_FALLBACK_PORTS,
)
from clusternet.network import deadline_expired

logger = logging.getLogger(__name__)


class PortError(Exception):
    pass


class NoPortAvailable(PortError):
    pass


def is_port_available(port: int) -> bool:
    """Try binding ``port`` on all interfaces to see if it is free right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("", port))
        except OSError:
            return False
    return True


def scan_ports(
    first: int,
    last: int,
    exclude: set[int] = frozenset(),
    deadline: float | None = None,
) -> int:
    """Return the first bindable port in ``first..last`` inclusive, skipping ``exclude``."""
    for port in range(first, last + 1):
        if port in exclude:
            continue
        if deadline_expired(deadline):
            raise NoPortAvailable(f"Deadline reached scanning ports {first} - {last} at {port}")
        if is_port_available(port):
            return port
    raise NoPortAvailable(f"No available ports found in range {first} - {last}")


def control_plane_port(
    cluster_index: int,
    base_port: int = KIND_CONTROL_PLANE_PORT,
    fallback: tuple[int, int] = CONTROL_PLANE_FALLBACK_PORTS,
    exclude: set[int] = frozenset(),
    deadline: float | None = None,
) -> int:
    """Pick the API server host port for one cluster.

    Prefers ``base_port + cluster_index`` and otherwise scans the fallback
    window for the first bindable port. Ports in ``exclude`` were already handed
    out in this operation and are skipped.
    """
    preferred = base_port + cluster_index
    if preferred not in exclude and is_port_available(preferred):
        return preferred
    logger.debug("control-plane port %d is taken, scanning %d - %d", preferred, *fallback)
    return scan_ports(fallback[0], fallback[1], exclude=exclude, deadline=deadline)


def registry_port(
    preferred: int = KIND_REGISTRY_PORT,
    fallback: tuple[int, int] = REGISTRY_FALLBACK_PORTS,
    exclude: set[int] = frozenset(),
    deadline: float | None = None,
) -> int:
    """Pick the host port for the shared local registry.

    Chosen once per operation; every cluster's containerd mirror points at it.
    """
    if preferred not in exclude and is_port_available(preferred):
        return preferred
    logger.debug("registry port %d is taken, scanning from %d", preferred, fallback[0])
    return scan_ports(fallback[0], fallback[1], exclude=exclude, deadline=deadline)
