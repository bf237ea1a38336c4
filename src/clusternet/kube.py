import ipaddress
import json
import logging
import subprocess

logger = logging.getLogger(__name__)

NODE_ADDRESS_TYPES = ("InternalIP", "ExternalIP")


class KubeError(Exception):
    pass


class KubeClient:
    """kubectl calls scoped to one kubeconfig context."""

    def __init__(self, context: str):
        self.context = context

    def _run(self, args: list[str], stdin: str | None = None) -> str:
        cmd = ["kubectl", "--context", self.context] + args
        try:
            result = subprocess.run(cmd, input=stdin, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.strip() if e.stderr else ""
            raise KubeError(f"Command failed: {' '.join(cmd)}\n{stderr}") from e
        except FileNotFoundError:
            raise KubeError("kubectl is not installed or not in PATH")
        return result.stdout

    def node_addresses(self) -> list[str]:
        """IPv4 internal and external addresses of every node."""
        output = self._run(["get", "nodes", "-o", "json"])
        try:
            nodes = json.loads(output).get("items", [])
        except json.JSONDecodeError as e:
            raise KubeError(f"Failed to parse node list for context {self.context}: {e}") from e

        addresses = []
        for node in nodes:
            for addr in node.get("status", {}).get("addresses", []):
                if addr.get("type") not in NODE_ADDRESS_TYPES:
                    continue
                try:
                    ip = ipaddress.ip_address(addr.get("address", ""))
                except ValueError:
                    continue
                if ip.version == 4:
                    logger.debug("found node IP %s", ip)
                    addresses.append(str(ip))
        return addresses

    def node_ip_octets(self) -> set[int]:
        return {int(address.rsplit(".", 1)[1]) for address in self.node_addresses()}

    def apply_manifest(self, manifest: str) -> None:
        self._run(["apply", "-f", "-"], stdin=manifest)
