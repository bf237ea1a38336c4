import enum
import ipaddress
import logging
import time
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


PRIVATE_NETWORKS = (
    ipaddress.IPv4Network("10.0.0.0/8"),
    ipaddress.IPv4Network("172.16.0.0/12"),
    ipaddress.IPv4Network("192.168.0.0/16"),
)

MAX_IPV4 = 2**32 - 1


class NetworkError(Exception):
    pass


class InvalidCIDR(NetworkError):
    pass


class NoFreeSubnet(NetworkError):
    pass


@dataclass(frozen=True)
class SubnetParameters:
    """Addressing derived from a single CIDR.

    The last client address before broadcast is held back for a future HA
    control-plane VIP, so ``client_max`` is ``broadcast - 2``.
    """

    ip: str
    netmask: str
    prefix: int
    cidr: str
    gateway: str
    client_min: str
    client_max: str
    broadcast: str
    is_private: bool


class ProbeStatus(enum.Enum):
    FREE = "free"
    OVERLAP = "overlap"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ProbeResult:
    status: ProbeStatus
    reason: str = ""

    @classmethod
    def free(cls) -> "ProbeResult":
        return cls(ProbeStatus.FREE)

    @classmethod
    def overlap(cls, reason: str) -> "ProbeResult":
        return cls(ProbeStatus.OVERLAP, reason)

    @classmethod
    def unknown(cls, reason: str) -> "ProbeResult":
        return cls(ProbeStatus.UNKNOWN, reason)


class SubnetProber(Protocol):
    def probe(self, candidate: str) -> ProbeResult: ...


def parse_network(cidr: str) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
    try:
        return ipaddress.ip_network(cidr.strip(), strict=False)
    except (ValueError, AttributeError) as e:
        raise InvalidCIDR(f"Invalid CIDR '{cidr}': {e}") from e


def is_private_ip(ip: str | ipaddress.IPv4Address) -> bool:
    """Return True if the address is in one of the RFC 1918 ranges."""
    addr = ipaddress.ip_address(ip)
    if addr.version != 4:
        return False
    return any(addr in net for net in PRIVATE_NETWORKS)


def calculate_subnet_parameters(cidr: str) -> SubnetParameters:
    """Derive gateway, netmask, broadcast and DHCP client range from a CIDR."""
    net = parse_network(cidr)

    if net.version != 4:
        # IPv6 passes through without host arithmetic
        return SubnetParameters(
            ip=str(net.network_address),
            netmask=str(net.netmask),
            prefix=net.prefixlen,
            cidr=str(net),
            gateway="",
            client_min="",
            client_max="",
            broadcast="",
            is_private=False,
        )

    gateway = net.network_address + 1
    broadcast = net.broadcast_address
    return SubnetParameters(
        ip=str(net.network_address),
        netmask=str(net.netmask),
        prefix=net.prefixlen,
        cidr=str(net),
        gateway=str(gateway),
        client_min=str(gateway + 1),
        client_max=str(broadcast - 2),
        broadcast=str(broadcast),
        is_private=is_private_ip(net.network_address),
    )


def gateway_ip(subnet: str) -> str:
    """Return the gateway IP (first usable address) for a subnet."""
    net = parse_network(subnet)
    return str(net.network_address + 1)


def networks_overlap(a: str, b: str) -> bool:
    """Symmetric containment check between two networks."""
    net_a = parse_network(a)
    net_b = parse_network(b)
    if net_a.version != net_b.version:
        return False
    return net_a.network_address in net_b or net_b.network_address in net_a


def next_subnet(cidr: str, step: int) -> str:
    """Advance a subnet by ``step`` in the second octet (prefix <= 16) or the third.

    When the network is wider than one unit of that octet (a /20 or a /8, say)
    each step moves by a whole block instead, so the candidate always lands on
    the next network of the same size.
    """
    net = parse_network(cidr)
    if net.version != 4:
        raise InvalidCIDR(f"Invalid IPv4 subnet: {cidr}")

    index = 1 if net.prefixlen <= 16 else 2
    octet_unit = 256 ** (3 - index)
    start = int(net.network_address)
    value = start + step * max(octet_unit, net.num_addresses)

    # stepping must not carry into the octets above the one being stepped
    fixed_bits = min(8 * index, 8 * ((net.prefixlen - 1) // 8))
    if not 0 <= value <= MAX_IPV4 or value >> (32 - fixed_bits) != start >> (32 - fixed_bits):
        raise NoFreeSubnet(f"Subnet search ran past the address space at {cidr}")

    return str(ipaddress.IPv4Network((value, net.prefixlen)))


def deadline_expired(deadline: float | None) -> bool:
    return deadline is not None and time.monotonic() >= deadline


def find_free_subnet(
    start: str,
    step: int,
    max_tries: int,
    prober: SubnetProber,
    fail_open: bool = True,
    deadline: float | None = None,
) -> str:
    """Probe candidate subnets from ``start`` until one does not overlap.

    ``fail_open`` decides what an UNKNOWN probe means: when set, a backend
    that cannot be queried is treated as having the candidate free.
    ``deadline`` is a ``time.monotonic()`` timestamp after which the scan
    gives up.
    """
    candidate = str(parse_network(start))

    for attempt in range(max_tries):
        if deadline_expired(deadline):
            raise NoFreeSubnet(
                f"Deadline reached after {attempt} tries searching from {start}"
            )

        result = prober.probe(candidate)
        if result.status is ProbeStatus.FREE:
            logger.debug("found free subnet %s", candidate)
            return candidate

        if result.status is ProbeStatus.UNKNOWN:
            if fail_open:
                logger.debug("could not check subnet %s, assuming free: %s", candidate, result.reason)
                return candidate
            raise NetworkError(f"Could not check subnet {candidate}: {result.reason}")

        logger.debug("subnet %s is taken: %s", candidate, result.reason)
        candidate = next_subnet(candidate, step)

    raise NoFreeSubnet(f"No free subnet found after {max_tries} tries starting from {start}")
