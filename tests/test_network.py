"""
Tests for CIDR arithmetic and the free-subnet search
"""
import time

import pytest

from clusternet.network import (
    InvalidCIDR,
    NetworkError,
    NoFreeSubnet,
    ProbeResult,
    ProbeStatus,
    calculate_subnet_parameters,
    gateway_ip,
    is_private_ip,
    find_free_subnet,
    networks_overlap,
    next_subnet,
)


class ScriptedProber:
    """Return queued probe results and record every candidate asked about"""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def probe(self, candidate):
        self.calls.append(candidate)
        return self.results.pop(0)


class TestSubnetParameters:
    """Test calculate_subnet_parameters"""

    def test_default_kind_subnet(self):
        """Test the parameters of the default /16"""
        params = calculate_subnet_parameters("10.89.0.0/16")

        assert params.ip == "10.89.0.0"
        assert params.netmask == "255.255.0.0"
        assert params.prefix == 16
        assert params.cidr == "10.89.0.0/16"
        assert params.gateway == "10.89.0.1"
        assert params.client_min == "10.89.0.2"
        assert params.client_max == "10.89.255.253"
        assert params.broadcast == "10.89.255.255"
        assert params.is_private is True

    def test_slash_24(self):
        """Test the last client address keeps one address back before broadcast"""
        params = calculate_subnet_parameters("192.168.39.0/24")

        assert params.gateway == "192.168.39.1"
        assert params.client_min == "192.168.39.2"
        assert params.client_max == "192.168.39.253"
        assert params.broadcast == "192.168.39.255"

    def test_host_bits_are_masked(self):
        """Test an address with host bits set is normalized to its network"""
        params = calculate_subnet_parameters("192.168.39.77/24")

        assert params.ip == "192.168.39.0"
        assert params.cidr == "192.168.39.0/24"

    def test_public_subnet_is_not_private(self):
        """Test public ranges are flagged as such"""
        assert calculate_subnet_parameters("8.8.8.0/24").is_private is False

    def test_ipv6_passes_through(self):
        """Test IPv6 input yields addressing without host arithmetic"""
        params = calculate_subnet_parameters("fd00::/64")

        assert params.cidr == "fd00::/64"
        assert params.prefix == 64
        assert params.gateway == ""
        assert params.broadcast == ""
        assert params.is_private is False

    @pytest.mark.parametrize("cidr", ["", "not-a-cidr", "10.0.0.0/33", "300.1.1.0/24"])
    def test_invalid_cidr(self, cidr):
        """Test malformed input raises InvalidCIDR"""
        with pytest.raises(InvalidCIDR):
            calculate_subnet_parameters(cidr)


class TestHelpers:
    """Test small address helpers"""

    def test_gateway_ip(self):
        assert gateway_ip("172.20.0.0/16") == "172.20.0.1"
        assert gateway_ip("172.20.5.9/24") == "172.20.5.1"

    def test_gateway_ip_invalid(self):
        with pytest.raises(NetworkError):
            gateway_ip("bogus")

    def test_is_private_ip(self):
        assert is_private_ip("10.1.2.3")
        assert is_private_ip("172.31.255.1")
        assert is_private_ip("192.168.0.1")
        assert not is_private_ip("172.32.0.1")
        assert not is_private_ip("fd00::1")

    def test_networks_overlap_is_symmetric(self):
        """Test containment is checked both ways"""
        assert networks_overlap("10.89.0.0/16", "10.89.3.0/24")
        assert networks_overlap("10.89.3.0/24", "10.89.0.0/16")
        assert not networks_overlap("10.89.0.0/16", "10.90.0.0/16")

    def test_next_subnet_steps_second_octet_for_wide_prefixes(self):
        assert next_subnet("10.89.0.0/16", 1) == "10.90.0.0/16"

    def test_next_subnet_steps_third_octet_for_narrow_prefixes(self):
        assert next_subnet("192.168.39.0/24", 1) == "192.168.40.0/24"
        assert next_subnet("192.168.39.0/24", 10) == "192.168.49.0/24"

    @pytest.mark.parametrize("cidr,expected", [
        ("10.89.0.0/20", "10.89.16.0/20"),
        ("10.16.0.0/12", "10.32.0.0/12"),
        ("10.0.0.0/8", "11.0.0.0/8"),
        ("192.168.39.16/28", "192.168.40.16/28"),
    ])
    def test_next_subnet_moves_by_whole_blocks(self, cidr, expected):
        """Test prefixes off an octet boundary still advance to a new network"""
        assert next_subnet(cidr, 1) == expected

    def test_next_subnet_slash_20_does_not_carry(self):
        with pytest.raises(NoFreeSubnet):
            next_subnet("10.89.240.0/20", 1)

    def test_next_subnet_does_not_wrap(self):
        """Test stepping past the last octet value is an error"""
        with pytest.raises(NoFreeSubnet):
            next_subnet("192.168.255.0/24", 1)


class TestFindFreeSubnet:
    """Test find_free_subnet"""

    def test_first_candidate_free(self):
        """Test the start subnet is returned after a single probe when free"""
        prober = ScriptedProber(ProbeResult.free())

        assert find_free_subnet("192.168.39.0/24", 1, 50, prober) == "192.168.39.0/24"
        assert prober.calls == ["192.168.39.0/24"]

    def test_skips_overlapping_candidates(self):
        """Test overlapping candidates are stepped over"""
        prober = ScriptedProber(
            ProbeResult.overlap("in use"),
            ProbeResult.overlap("in use"),
            ProbeResult.free(),
        )

        assert find_free_subnet("192.168.39.0/24", 1, 50, prober) == "192.168.41.0/24"
        assert prober.calls == ["192.168.39.0/24", "192.168.40.0/24", "192.168.41.0/24"]

    def test_slash_20_candidates_advance(self):
        """Test every candidate of a /20 search is a different network"""
        prober = ScriptedProber(*[ProbeResult.overlap("in use")] * 3)

        with pytest.raises(NoFreeSubnet):
            find_free_subnet("10.89.0.0/20", 1, 3, prober)
        assert prober.calls == ["10.89.0.0/20", "10.89.16.0/20", "10.89.32.0/20"]

    def test_exhausted_tries(self):
        """Test the search stops after max_tries overlapping candidates"""
        prober = ScriptedProber(*[ProbeResult.overlap("in use")] * 3)

        with pytest.raises(NoFreeSubnet):
            find_free_subnet("192.168.39.0/24", 1, 3, prober)
        assert len(prober.calls) == 3

    def test_unknown_fail_open(self):
        """Test an unreachable backend counts as free when failing open"""
        prober = ScriptedProber(ProbeResult.unknown("no libvirt"))

        assert find_free_subnet("192.168.39.0/24", 1, 50, prober, fail_open=True) == "192.168.39.0/24"

    def test_unknown_fail_closed(self):
        """Test an unreachable backend is an error when failing closed"""
        prober = ScriptedProber(ProbeResult.unknown("no libvirt"))

        with pytest.raises(NetworkError, match="no libvirt"):
            find_free_subnet("192.168.39.0/24", 1, 50, prober, fail_open=False)

    def test_expired_deadline(self):
        """Test a deadline in the past stops the search before probing"""
        prober = ScriptedProber(ProbeResult.free())

        with pytest.raises(NoFreeSubnet, match="Deadline"):
            find_free_subnet("192.168.39.0/24", 1, 50, prober, deadline=time.monotonic() - 1)
        assert prober.calls == []

    def test_overflow_ends_search(self):
        """Test running past the address space ends the search"""
        prober = ScriptedProber(ProbeResult.overlap("in use"))

        with pytest.raises(NoFreeSubnet):
            find_free_subnet("192.168.255.0/24", 1, 50, prober)

    def test_probe_result_constructors(self):
        assert ProbeResult.free().status is ProbeStatus.FREE
        assert ProbeResult.overlap("x").reason == "x"
        assert ProbeResult.unknown("y").status is ProbeStatus.UNKNOWN
