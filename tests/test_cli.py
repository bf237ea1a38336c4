"""
Tests for CLI functionality
"""
from unittest.mock import Mock, patch

import pytest
import yaml
from click.testing import CliRunner

from clusternet import __version__
from clusternet.cli import cli
from clusternet.controller import NetworkController
from clusternet.loadbalancer import AllocationLedger
from clusternet.network import ProbeResult
from clusternet.project_state import ProjectStore


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def store(tmp_path):
    return ProjectStore(directory=tmp_path / "state")


@pytest.fixture(autouse=True)
def controller(store):
    controller = NetworkController(store=store, engine_factory=Mock(), kube_factory=Mock())
    with patch("clusternet.cli.controller", controller):
        yield controller


class TestCLI:
    """Test the clusternet command group"""

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_params(self, runner):
        result = runner.invoke(cli, ["params", "10.89.0.0/16"])

        assert result.exit_code == 0
        assert "10.89.0.1" in result.output
        assert "255.255.0.0" in result.output

    def test_params_invalid(self, runner):
        result = runner.invoke(cli, ["params", "10.89.0.0/40"])

        assert result.exit_code == 1
        assert "Error" in result.output

    def test_allocate(self, runner, store):
        result = runner.invoke(cli, [
            "allocate", "demo", "--cluster", "c1", "--node-ip", "192.168.102.50",
            "--ordinal", "1", "--total", "2", "--node-octet", "50",
        ])

        assert result.exit_code == 0, result.output
        assert "192.168.102.200-192.168.102.219" in result.output
        assert AllocationLedger.initialize_tracking(store, "demo").get("c1").node_ips == [50]

    def test_allocate_over_capacity(self, runner, store):
        result = runner.invoke(cli, [
            "allocate", "demo", "--cluster", "c3", "--node-ip", "192.168.102.50",
            "--ordinal", "3", "--total", "3",
        ])

        assert result.exit_code == 1
        assert "Not enough IPs" in result.output
        assert store.load("demo") is None

    def test_find_subnet(self, runner):
        prober = Mock()
        prober.probe.side_effect = [ProbeResult.overlap("taken"), ProbeResult.free()]
        with patch("clusternet.cli.LibvirtSubnetProber", return_value=prober):
            result = runner.invoke(cli, ["find-subnet", "192.168.39.0/24"])

        assert result.exit_code == 0
        assert "192.168.40.0/24" in result.output

    def test_find_subnet_fail_closed(self, runner):
        prober = Mock()
        prober.probe.return_value = ProbeResult.unknown("libvirt unreachable")
        with patch("clusternet.cli.LibvirtSubnetProber", return_value=prober):
            result = runner.invoke(cli, ["find-subnet", "192.168.39.0/24", "--fail-closed"])

        assert result.exit_code == 1
        assert "libvirt unreachable" in result.output

    def test_ports(self, runner):
        with patch("clusternet.ports.is_port_available", return_value=True):
            result = runner.invoke(cli, ["ports", "-n", "2"])

        assert result.exit_code == 0
        assert "5000" in result.output
        assert "7002" in result.output

    def test_status_missing(self, runner):
        result = runner.invoke(cli, ["status", "demo"])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_list_empty(self, runner):
        result = runner.invoke(cli, ["list"])

        assert result.exit_code == 0
        assert "No projects found" in result.output

    def test_delete(self, runner, store):
        store.save("demo", {"driver": "kind"})

        result = runner.invoke(cli, ["delete", "demo"])

        assert result.exit_code == 0
        assert store.load("demo") is None

    def test_init(self, runner, tmp_path):
        path = tmp_path / "demo.yaml"

        result = runner.invoke(cli, ["init", str(path)])

        assert result.exit_code == 0
        with open(path) as f:
            config = yaml.safe_load(f)
        assert config["project"] == "demo"
        assert config["subnet_cidr"] == "10.89.0.0/16"

    def test_init_existing(self, runner, tmp_path):
        path = tmp_path / "demo.yaml"
        path.write_text("project: demo\n")

        result = runner.invoke(cli, ["init", str(path)])

        assert result.exit_code == 1
        assert path.read_text() == "project: demo\n"

    def test_prepare_rejects_unknown_driver(self, runner):
        result = runner.invoke(cli, ["prepare", "demo", "--driver", "docker-desktop"])

        assert result.exit_code == 2
