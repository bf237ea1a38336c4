"""MetalLB address pools for a fleet of local clusters sharing one node network."""

import logging
from dataclasses import asdict, dataclass, field

import yaml

from clusternet.config import LB_RANGE_MAX_OCTET, LB_RANGE_MIN_OCTET
from clusternet.project_state import ProjectStore, StateError

logger = logging.getLogger(__name__)

IPS_PER_CLUSTER = 20
RANGE_SEARCH_ATTEMPTS = 100
NODE_SHIFT_ATTEMPTS = 10
RESOLVE_ROUNDS = 3

POOL_NAME = "default-pool"
METALLB_NAMESPACE = "metallb-system"


class AllocationError(Exception):
    pass


class InvalidAddress(AllocationError):
    pass


class CapacityExceeded(AllocationError):
    pass


def range_key(ip_prefix: str, start_octet: int, end_octet: int) -> str:
    return f"{ip_prefix}.{start_octet}-{end_octet}"


def parse_range_key(key: str) -> tuple[str, int, int]:
    prefix, span = key.rsplit(".", 1)
    start, end = span.split("-", 1)
    return prefix, int(start), int(end)


def ip_prefix(address: str) -> str:
    """Return the first three octets of a dotted address."""
    parts = address.strip().split(".")
    if len(parts) < 3:
        raise InvalidAddress(f"Invalid node IP format: {address}")
    return ".".join(parts[:3])


@dataclass
class LBAllocation:
    cluster_name: str
    ip_prefix: str
    start_octet: int
    end_octet: int
    node_ips: list[int] = field(default_factory=list)
    ip_range: str = ""

    def __post_init__(self):
        if not self.ip_range:
            self.ip_range = (
                f"{self.ip_prefix}.{self.start_octet}-{self.ip_prefix}.{self.end_octet}"
            )

    @property
    def key(self) -> str:
        return range_key(self.ip_prefix, self.start_octet, self.end_octet)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LBAllocation":
        return cls(
            cluster_name=data["cluster_name"],
            ip_prefix=data["ip_prefix"],
            start_octet=int(data["start_octet"]),
            end_octet=int(data["end_octet"]),
            node_ips=[int(o) for o in data.get("node_ips") or []],
            ip_range=data.get("ip_range", ""),
        )


@dataclass
class AllocationIndex:
    """Lookup sets derived from the ledger's allocations."""

    used_ranges: set[str] = field(default_factory=set)
    all_node_ips: set[int] = field(default_factory=set)

    @classmethod
    def from_allocations(cls, allocations) -> "AllocationIndex":
        index = cls()
        for allocation in allocations:
            index.record(allocation)
        return index

    def record(self, allocation: LBAllocation) -> None:
        self.used_ranges.add(allocation.key)
        self.all_node_ips.update(allocation.node_ips)

    def conflicts(self, prefix: str, start: int, end: int, ignore: set[str] = frozenset()) -> bool:
        """Return True if ``[start, end]`` intersects a used range on ``prefix``."""
        for key in self.used_ranges:
            if key in ignore:
                continue
            used_prefix, used_start, used_end = parse_range_key(key)
            if used_prefix == prefix and start <= used_end and used_start <= end:
                return True
        return False


class AllocationLedger:
    """In-memory mirror of one project's persisted load-balancer allocations."""

    def __init__(self, store: ProjectStore, project: str, allocations: list[LBAllocation]):
        self.store = store
        self.project = project
        self._allocations = {a.cluster_name: a for a in allocations}
        self.index = AllocationIndex.from_allocations(allocations)

    @classmethod
    def initialize_tracking(cls, store: ProjectStore, project: str) -> "AllocationLedger":
        """Load the project's allocations and build a fresh index from them."""
        record = store.load(project) or {}
        allocations = cls._parse(record)
        for allocation in allocations:
            logger.debug(
                "loaded existing load-balancer allocation for cluster %s: %s",
                allocation.cluster_name, allocation.ip_range,
            )
        return cls(store, project, allocations)

    @staticmethod
    def _parse(record: dict) -> list[LBAllocation]:
        allocations = []
        for entry in record.get("metallb_allocations") or []:
            try:
                allocations.append(LBAllocation.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                raise StateError(f"Invalid load-balancer allocation entry {entry!r}: {e}") from e
        return allocations

    @property
    def allocations(self) -> list[LBAllocation]:
        return list(self._allocations.values())

    def get(self, cluster_name: str) -> LBAllocation | None:
        return self._allocations.get(cluster_name)

    def save_allocation(self, allocation: LBAllocation) -> None:
        """Upsert by cluster name, rewrite the project record, then reindex."""
        with self.store.lock(self.project):
            record = self.store.load(self.project) or {"project": self.project}
            allocations = self._parse(record)

            for i, existing in enumerate(allocations):
                if existing.cluster_name == allocation.cluster_name:
                    allocations[i] = allocation
                    break
            else:
                allocations.append(allocation)

            record["metallb_allocations"] = [a.to_dict() for a in allocations]
            self.store.save(self.project, record)

        self._allocations = {a.cluster_name: a for a in allocations}
        self.index = AllocationIndex.from_allocations(allocations)
        logger.debug(
            "saved load-balancer allocation for cluster %s: %s",
            allocation.cluster_name, allocation.ip_range,
        )


class LoadBalancerAllocator:
    """Partition the load-balancer octet window between clusters."""

    def __init__(
        self,
        ledger: AllocationLedger,
        min_octet: int = LB_RANGE_MIN_OCTET,
        max_octet: int = LB_RANGE_MAX_OCTET,
        ips_per_cluster: int = IPS_PER_CLUSTER,
    ):
        if not 0 < min_octet <= max_octet <= 255:
            raise AllocationError(f"Invalid octet window {min_octet}-{max_octet}")
        self.ledger = ledger
        self.min_octet = min_octet
        self.max_octet = max_octet
        self.ips_per_cluster = ips_per_cluster

    @property
    def max_clusters(self) -> int:
        return (self.max_octet - self.min_octet + 1) // self.ips_per_cluster

    def allocate(
        self,
        cluster_name: str,
        observed_node_ip: str,
        cluster_ordinal: int,
        total_clusters: int,
        node_ips: set[int] | None = None,
        persist: bool = True,
    ) -> tuple[str, LBAllocation]:
        """Compute the pool range for one cluster.

        ``node_ips`` are the last octets of the cluster's live node addresses;
        ``None`` means they could not be read and only ledger node IPs are
        avoided. With ``persist`` the allocation is written to the ledger
        before returning.
        """
        prefix = ip_prefix(observed_node_ip)

        if total_clusters > self.max_clusters:
            raise CapacityExceeded(
                f"Not enough IPs available: need {total_clusters} clusters but only "
                f"{self.max_clusters} can fit in range {self.min_octet}-{self.max_octet} "
                f"({self.ips_per_cluster} IPs per cluster)"
            )
        if cluster_ordinal < 1:
            raise AllocationError(f"Cluster ordinal must start at 1, got {cluster_ordinal}")

        current_node_ips = set(node_ips or ())
        combined_node_ips = self.ledger.index.all_node_ips | current_node_ips

        # a re-provisioned cluster replaces its own previous slice
        previous = self.ledger.get(cluster_name)
        ignore = {previous.key} if previous else set()

        start = self.min_octet + (cluster_ordinal - 1) * self.ips_per_cluster
        end = min(start + self.ips_per_cluster - 1, self.max_octet)

        for _ in range(RESOLVE_ROUNDS):
            if self._range_used(prefix, start, end, ignore):
                start, end = self._find_next_available_range(prefix, start, end, combined_node_ips, ignore)
            start, end = self._adjust_for_node_ips(prefix, start, end, combined_node_ips)
            if not self._range_used(prefix, start, end, ignore):
                break
        else:
            logger.warning(
                "range %s still overlaps a recorded allocation, using it anyway",
                range_key(prefix, start, end),
            )

        allocation = LBAllocation(
            cluster_name=cluster_name,
            ip_prefix=prefix,
            start_octet=start,
            end_octet=end,
            node_ips=sorted(current_node_ips),
        )
        logger.debug(
            "generated load-balancer range for cluster %s (number %d/%d): %s "
            "(avoided %d node IPs, %d previously used ranges)",
            cluster_name, cluster_ordinal, total_clusters, allocation.ip_range,
            len(combined_node_ips), len(self.ledger.index.used_ranges),
        )

        if persist:
            self.persist(allocation)
        return allocation.ip_range, allocation

    def persist(self, allocation: LBAllocation) -> bool:
        """Save to the ledger; a failure is logged and reported, not raised."""
        try:
            self.ledger.save_allocation(allocation)
        except StateError as e:
            logger.warning("failed to save load-balancer allocation to config: %s", e)
            return False
        return True

    def _range_used(self, prefix: str, start: int, end: int, ignore: set[str]) -> bool:
        return self.ledger.index.conflicts(prefix, start, end, ignore)

    def _advance(self, start: int, size: int) -> tuple[int, int]:
        start += 1
        end = start + size - 1
        if end > self.max_octet:
            start = self.min_octet
            end = start + size - 1
        return start, end

    def _find_next_available_range(
        self, prefix: str, start: int, end: int, node_ips: set[int], ignore: set[str]
    ) -> tuple[int, int]:
        attempts = 0
        while attempts < RANGE_SEARCH_ATTEMPTS:
            if not self._range_used(prefix, start, end, ignore) and not _contains_any(start, end, node_ips):
                return start, end
            start, end = self._advance(start, self.ips_per_cluster)
            attempts += 1

        logger.warning(
            "could not find completely free range after %d attempts, using %s",
            attempts, range_key(prefix, start, end),
        )
        return start, end

    def _adjust_for_node_ips(
        self, prefix: str, start: int, end: int, node_ips: set[int]
    ) -> tuple[int, int]:
        if not _contains_any(start, end, node_ips):
            return start, end

        logger.debug("node IP found in %s, adjusting range", range_key(prefix, start, end))
        size = end - start + 1
        new_start, new_end = start, end
        for _ in range(NODE_SHIFT_ATTEMPTS):
            if new_end <= self.max_octet and not _contains_any(new_start, new_end, node_ips):
                return new_start, new_end
            new_start, new_end = self._advance(new_start, size)

        logger.warning("could not find a range free of node IPs, using original range with potential overlap")
        return start, end


def _contains_any(start: int, end: int, octets: set[int]) -> bool:
    return any(start <= octet <= end for octet in octets)


def render_pool_manifest(ip_range: str, pool_name: str = POOL_NAME) -> str:
    """Render the MetalLB IPAddressPool and L2Advertisement for ``ip_range``."""
    pool = {
        "apiVersion": "metallb.io/v1beta1",
        "kind": "IPAddressPool",
        "metadata": {"name": pool_name, "namespace": METALLB_NAMESPACE},
        "spec": {"addresses": [ip_range]},
    }
    advertisement = {
        "apiVersion": "metallb.io/v1beta1",
        "kind": "L2Advertisement",
        "metadata": {"name": "default-l2", "namespace": METALLB_NAMESPACE},
        "spec": {"ipAddressPools": [pool_name]},
    }
    return yaml.dump_all([pool, advertisement], default_flow_style=False, sort_keys=False)
