"""IP address helpers for known-sender matching and enrichment"""
import ipaddress
from typing import Optional, Union


def parse_ip_range(ip_range: str) -> Optional[Union[ipaddress.IPv4Network, ipaddress.IPv6Network]]:
    """
    Parse CIDR notation to IP network object

    Args:
        ip_range: CIDR notation string (e.g., "192.168.1.0/24")

    Returns:
        IPv4Network or IPv6Network object, or None if invalid
    """
    try:
        return ipaddress.ip_network(ip_range.strip(), strict=False)
    except (ValueError, AttributeError):
        return None


def ip_in_range(ip: str, ip_range: str) -> bool:
    """True if ``ip`` falls inside the CIDR ``ip_range``; invalid input is never a match"""
    network = parse_ip_range(ip_range)
    if network is None:
        return False
    try:
        return ipaddress.ip_address(ip.strip()) in network
    except ValueError:
        return False


def is_private_ip(ip: str) -> bool:
    """
    Private, reserved, loopback, link-local or otherwise non-routable.

    Unparseable addresses are treated as private so they never reach an
    external lookup.
    """
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return True
    return (
        addr.is_private
        or addr.is_reserved
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_multicast
        or addr.is_unspecified
    )
