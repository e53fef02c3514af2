"""Local address detection and subnet enumeration."""

import ipaddress
import logging
import socket

import psutil

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_IP = "192.168.1.100"

_PRIVATE_NETWORKS = (
    ipaddress.IPv4Network("10.0.0.0/8"),
    ipaddress.IPv4Network("172.16.0.0/12"),
    ipaddress.IPv4Network("192.168.0.0/16"),
)


def is_private_ipv4(address: str) -> bool:
    """Return True if address is an IPv4 address in an RFC1918 range."""
    try:
        ip = ipaddress.IPv4Address(address)
    except ValueError:
        return False
    return any(ip in network for network in _PRIVATE_NETWORKS)


def _from_interfaces() -> str | None:
    for name, addresses in psutil.net_if_addrs().items():
        for addr in addresses:
            if addr.family == socket.AF_INET and is_private_ipv4(addr.address):
                logger.debug(f"Local address {addr.address} found on {name}")
                return addr.address
    return None


def _from_hostname() -> str | None:
    _, _, addresses = socket.gethostbyname_ex(socket.gethostname())
    for address in addresses:
        if is_private_ipv4(address):
            return address
    return None


def _from_udp_route() -> str | None:
    # connect() on a UDP socket sends nothing; it only selects the route
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.connect(("8.8.8.8", 65530))
        address = sock.getsockname()[0]
    return address if is_private_ipv4(address) else None


def detect_local_ipv4(fallback: str = DEFAULT_LOCAL_IP) -> str:
    """
    Find the first private IPv4 address of this host.

    Network interfaces are tried first, then resolution of the local hostname,
    then the address the kernel would route public traffic from. If none of
    them yields an RFC1918 address, fallback is returned.
    """
    for strategy in (_from_interfaces, _from_hostname, _from_udp_route):
        try:
            address = strategy()
        except (OSError, psutil.Error) as e:
            logger.debug(f"Local address lookup {strategy.__name__} failed: {e}")
            continue
        if address:
            return address

    logger.warning(f"Could not determine local IP address, using {fallback}")
    return fallback


def subnet_prefix(local_ip: str) -> str:
    """Return the first three octets of a dotted IPv4 address."""
    return ".".join(local_ip.split(".")[:3])


def subnet_hosts(local_ip: str) -> list[str]:
    """All host addresses .1 to .254 of the /24 containing local_ip."""
    prefix = subnet_prefix(local_ip)
    return [f"{prefix}.{host}" for host in range(1, 255)]
