"""Tests for network.py."""

from __future__ import annotations

import socket
from collections import namedtuple
from unittest import mock

import pytest

import network
from network import AddressResolutionError
from network import PortAllocationError


snicaddr = namedtuple("snicaddr", ["family", "address", "netmask", "broadcast", "ptp"])
snicstats = namedtuple("snicstats", ["isup", "duplex", "speed", "mtu", "flags"])


def addr(family: int, address: str) -> snicaddr:
    return snicaddr(family, address, None, None, None)


INTERFACES = {
    "lo": [addr(socket.AF_INET, "127.0.0.1"), addr(socket.AF_INET6, "::1")],
    "eth0": [
        addr(socket.AF_PACKET, "00:11:22:33:44:55"),
        addr(socket.AF_INET6, "fe80::211:22ff:fe33:4455%eth0"),
        addr(socket.AF_INET, "192.168.1.10"),
        addr(socket.AF_INET6, "2001:db8::10"),
    ],
    "wlan0": [addr(socket.AF_INET6, "2001:db8::20")],
    "docker0": [addr(socket.AF_INET6, "fe80::1%docker0")],
}


@pytest.fixture
def interfaces():
    with mock.patch.object(network.psutil, "net_if_addrs", return_value=INTERFACES):
        yield


class TestGetIpAddress:
    def test_prefers_requested_family(self, interfaces):
        assert network.get_ip_address(False, "eth0") == "192.168.1.10"
        assert network.get_ip_address(True, "eth0") == "2001:db8::10"

    def test_falls_back_to_other_family(self, interfaces):
        assert network.get_ip_address(False, "wlan0") == "2001:db8::20"

    def test_internal_only_interface_fails(self, interfaces):
        with pytest.raises(AddressResolutionError, match="lo"):
            network.get_ip_address(False, "lo")

    def test_link_local_only_interface_fails(self, interfaces):
        with pytest.raises(AddressResolutionError):
            network.get_ip_address(True, "docker0")

    def test_unknown_interface_fails(self, interfaces):
        with pytest.raises(AddressResolutionError, match="eth9"):
            network.get_ip_address(False, "eth9")

    def test_uses_default_interface_when_unset(self, interfaces):
        with mock.patch.object(network, "default_interface", return_value="eth0") as m:
            assert network.get_ip_address(False) == "192.168.1.10"
        m.assert_called_once()


class TestDefaultInterface:
    def test_matches_route_source_address(self, interfaces):
        with mock.patch.object(network, "_route_source_address", return_value="192.168.1.10"):
            assert network.default_interface() == "eth0"

    def test_falls_back_to_first_usable_interface(self, interfaces):
        stats = {
            "lo": snicstats(True, 0, 0, 65536, ""),
            "eth0": snicstats(False, 0, 0, 1500, ""),
            "wlan0": snicstats(True, 0, 0, 1500, ""),
        }
        with (
            mock.patch.object(network, "_route_source_address", return_value=None),
            mock.patch.object(network.psutil, "net_if_stats", return_value=stats),
        ):
            assert network.default_interface() == "wlan0"

    def test_no_interface_raises(self):
        with (
            mock.patch.object(network.psutil, "net_if_addrs", return_value={"lo": INTERFACES["lo"]}),
            mock.patch.object(network.psutil, "net_if_stats", return_value={}),
            mock.patch.object(network, "_route_source_address", return_value=None),
        ):
            with pytest.raises(AddressResolutionError):
                network.default_interface()


class TestPortAllocation:
    def test_allocated_ports_are_reserved_and_distinct(self):
        ports = [network.allocate_port() for _ in range(10)]
        try:
            assert len(set(ports)) == 10
            assert set(ports) <= network.reserved_ports()
        finally:
            for port in ports:
                network.release_port(port)
        assert not set(ports) & network.reserved_ports()

    def test_release_twice_is_noop(self):
        port = network.allocate_port()
        network.release_port(port)
        network.release_port(port)
        assert port not in network.reserved_ports()

    def test_skips_reserved_port(self):
        taken = network.allocate_port()
        sockets = []
        for port in (taken, taken + 1 if taken < 65535 else taken - 1):
            sock = mock.MagicMock()
            sock.__enter__.return_value.getsockname.return_value = ("0.0.0.0", port)
            sockets.append(sock)
        try:
            with mock.patch.object(network.socket, "socket", side_effect=sockets):
                port = network.allocate_port()
            assert port != taken
            network.release_port(port)
        finally:
            network.release_port(taken)

    def test_bind_failure_raises(self):
        with mock.patch.object(network.socket, "socket", side_effect=OSError("no ports")):
            with pytest.raises(PortAllocationError, match="no ports"):
                network.allocate_port()

    def test_exhaustion_raises(self):
        taken = network.allocate_port()
        sock = mock.MagicMock()
        sock.__enter__.return_value.getsockname.return_value = ("0.0.0.0", taken)
        try:
            with mock.patch.object(network.socket, "socket", return_value=sock):
                with pytest.raises(PortAllocationError, match="unreserved"):
                    network.allocate_port()
        finally:
            network.release_port(taken)
