import os
from pathlib import Path

import yaml

from clusternet.network import InvalidCIDR, parse_network


APP_NAME = "clusternet"

DEFAULT_SUBNET_CIDR = "10.89.0.0/16"
DEFAULT_NUM_CLUSTERS = 1
MAX_CLUSTERS = 3

DRIVERS = ("kind", "minikube")
DEFAULT_DRIVER = "kind"

KIND_NETWORK_NAME = "kind"
KIND_NETWORK_GATEWAY_IP = "10.89.0.1"
KIND_REGISTRY_PORT = 5000
KIND_CONTROL_PLANE_PORT = 7000

CONTROL_PLANE_FALLBACK_PORTS = (29000, 30100)
REGISTRY_FALLBACK_PORTS = (30000, 65535)

MINIKUBE_LIBVIRT_PVT_NETWORK_NAME = "minikube-net"
MINIKUBE_DEFAULT_BRIDGE = "virbr50"
LIBVIRT_CONNECTION_URI = "qemu:///system"
MINIKUBE_SERVICE_CIDR_BASE = "10.255"

SUBNET_SEARCH_STEP = 1
SUBNET_SEARCH_TRIES = 50

LB_RANGE_MIN_OCTET = 200
LB_RANGE_MAX_OCTET = 254

NETWORK_TEMPLATE = """\
<network>
  <name>{name}</name>
  <dns enable='no'/>
  <bridge name='{bridge}' stp='on' delay='0'/>
  <ip address='{gateway}' netmask='{netmask}'>
    <dhcp>
      <range start='{client_min}' end='{client_max}'/>
    </dhcp>
  </ip>
</network>
"""

# Keys a user config file may set, with the type each must parse as.
CONFIG_FIELDS = {
    "project": str,
    "driver": str,
    "num_clusters": int,
    "subnet_cidr": str,
    "gateway_ip": str,
    "bridge": str,
    "install_metallb": bool,
    "lb_min_octet": int,
    "lb_max_octet": int,
}


class ConfigError(Exception):
    pass


def config_dir() -> Path:
    """Directory holding per-project records (``CLUSTERNET_HOME`` overrides)."""
    env_dir = os.environ.get("CLUSTERNET_HOME")
    if env_dir:
        return Path(env_dir)
    return Path.home() / f".{APP_NAME}"


def default_config() -> dict:
    return {
        "driver": DEFAULT_DRIVER,
        "num_clusters": DEFAULT_NUM_CLUSTERS,
        "subnet_cidr": DEFAULT_SUBNET_CIDR,
        "gateway_ip": KIND_NETWORK_GATEWAY_IP,
        "bridge": MINIKUBE_DEFAULT_BRIDGE,
        "install_metallb": True,
        "lb_min_octet": LB_RANGE_MIN_OCTET,
        "lb_max_octet": LB_RANGE_MAX_OCTET,
    }


def load_config(path: Path) -> dict:
    """Load and parse a user YAML config file."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file does not exist: {path}")
    try:
        with open(path) as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(config, dict):
        raise ConfigError(f"Invalid config file: {path}")
    return config


def validate_config(config: dict) -> None:
    """Validate field types and values in a project config."""
    for key, value in config.items():
        expected = CONFIG_FIELDS.get(key)
        if expected is None or value is None:
            continue
        # bool is a subclass of int; keep the two apart
        if expected is int and isinstance(value, bool):
            raise ConfigError(f"Config field '{key}' must be an integer")
        if not isinstance(value, expected):
            raise ConfigError(f"Config field '{key}' must be of type {expected.__name__}")

    driver = config.get("driver")
    if driver is not None and driver not in DRIVERS:
        raise ConfigError(f"Unsupported driver '{driver}'. Choose one of: {', '.join(DRIVERS)}")

    num_clusters = config.get("num_clusters")
    if num_clusters is not None and not 1 <= num_clusters <= MAX_CLUSTERS:
        raise ConfigError(f"num_clusters must be between 1 and {MAX_CLUSTERS}, got {num_clusters}")

    subnet = config.get("subnet_cidr")
    if subnet:
        try:
            parse_network(subnet)
        except InvalidCIDR as e:
            raise ConfigError(str(e)) from e

    lb_min = config.get("lb_min_octet") or LB_RANGE_MIN_OCTET
    lb_max = config.get("lb_max_octet") or LB_RANGE_MAX_OCTET
    if not 1 <= lb_min <= lb_max <= 254:
        raise ConfigError(f"Invalid load-balancer octet window {lb_min}-{lb_max}")


def merge_configs(base: dict, override: dict) -> dict:
    """Merge two configs; non-empty values in ``override`` win."""
    merged = dict(base)
    for key, value in override.items():
        if value is None or value == "":
            continue
        if isinstance(value, int) and not isinstance(value, bool) and value <= 0:
            continue
        merged[key] = value
    return merged


def service_cidr(cluster_index: int) -> str:
    """Service cluster IP range for one minikube cluster, ``10.255.<index>.0/24``."""
    if not 0 <= cluster_index <= 255:
        raise ConfigError(f"Cluster index {cluster_index} has no service CIDR")
    return f"{MINIKUBE_SERVICE_CIDR_BASE}.{cluster_index}.0/24"
