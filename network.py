"""Local address discovery and UDP return-port allocation."""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading

import psutil


log = logging.getLogger(__name__)

# Probe targets for default-route discovery (connect() on UDP sends nothing)
_PROBE_HOSTS = {
    socket.AF_INET: ("8.8.8.8", 80),
    socket.AF_INET6: ("2001:4860:4860::8888", 80),
}
_MAX_PORT_ATTEMPTS = 20

_reserved_ports: set[int] = set()
_port_lock = threading.Lock()


class AddressResolutionError(OSError):
    """Raised when no usable local address exists for an interface."""


class PortAllocationError(OSError):
    """Raised when no ephemeral UDP port could be allocated."""


def _is_external(family: int, address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return False
    if ip.is_loopback:
        return False
    return not (family == socket.AF_INET6 and ip.is_link_local)


def _external_addresses(interface_name: str) -> list[tuple[int, str]]:
    """Return (family, address) pairs for an interface, loopback/link-local excluded."""
    addrs = psutil.net_if_addrs().get(interface_name, [])
    return [
        (a.family, a.address.split("%", 1)[0])
        for a in addrs
        if a.family in (socket.AF_INET, socket.AF_INET6) and _is_external(a.family, a.address)
    ]


def _route_source_address(family: int) -> str | None:
    try:
        with socket.socket(family, socket.SOCK_DGRAM) as probe:
            probe.connect(_PROBE_HOSTS[family])
            return str(probe.getsockname()[0]).split("%", 1)[0]
    except OSError:
        return None


def default_interface() -> str:
    """Name of the interface carrying the default route."""
    all_addrs = psutil.net_if_addrs()
    for family in (socket.AF_INET, socket.AF_INET6):
        source = _route_source_address(family)
        if not source:
            continue
        for name, addrs in all_addrs.items():
            if any(a.address.split("%", 1)[0] == source for a in addrs):
                return name

    # No route (offline host): first interface that is up with a usable address
    stats = psutil.net_if_stats()
    for name in all_addrs:
        if name in stats and not stats[name].isup:
            continue
        if _external_addresses(name):
            return name
    raise AddressResolutionError("Unable to determine default network interface!")


def get_ip_address(ipv6: bool, interface_name: str | None = None) -> str:
    """Pick the address to advertise for the given family and interface.

    Falls back to the first external address of any family when the
    interface has none of the requested family.
    """
    if not interface_name:
        interface_name = default_interface()
    addresses = _external_addresses(interface_name)
    preferred = socket.AF_INET6 if ipv6 else socket.AF_INET
    for family, address in addresses:
        if family == preferred:
            return address
    if addresses:
        return addresses[0][1]
    raise AddressResolutionError(f'Unable to get network address for "{interface_name}"!')


def allocate_port(ipv6: bool = False) -> int:
    """Reserve a free UDP port for the lifetime of one session."""
    family = socket.AF_INET6 if ipv6 else socket.AF_INET
    host = "::" if ipv6 else "0.0.0.0"
    for _ in range(_MAX_PORT_ATTEMPTS):
        try:
            with socket.socket(family, socket.SOCK_DGRAM) as sock:
                sock.bind((host, 0))
                port = int(sock.getsockname()[1])
        except OSError as e:
            raise PortAllocationError(f"Unable to allocate UDP port: {e}") from e
        with _port_lock:
            if port not in _reserved_ports:
                _reserved_ports.add(port)
                return port
    raise PortAllocationError("Unable to allocate an unreserved UDP port")


def release_port(port: int) -> None:
    with _port_lock:
        _reserved_ports.discard(port)


def reserved_ports() -> set[int]:
    with _port_lock:
        return set(_reserved_ports)
