"""IP address validation and normalisation."""

import ipaddress
import re
from typing import Optional, Union

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

_IPV4_WITH_PORT = re.compile(r'^(\d{1,3}(?:\.\d{1,3}){3}):\d+$')
_IPV6_BRACKETED = re.compile(r'^\[([0-9A-Fa-f:.]+)\](?::\d+)?$')


def is_valid_ip(ip: str) -> bool:
    """Validate IP address (IPv4 or IPv6) to prevent injection attacks."""
    if not ip or not isinstance(ip, str):
        return False
    try:
        ipaddress.ip_address(ip.strip())
        return True
    except ValueError:
        return False


def normalize_address(candidate: Optional[str]) -> Optional[str]:
    """
    Turn a captured address into a canonical literal, or None if unusable.

    Strips an IPv4-mapped ``::ffff:`` prefix, a ``:port`` suffix on IPv4
    literals and ``[v6]:port`` brackets. Loopback and unspecified addresses
    are rejected: nothing should ever block them.

    Args:
        candidate: Raw text captured from a log line

    Returns:
        Compressed address string or None
    """
    if not candidate or not isinstance(candidate, str):
        return None

    text = candidate.strip()
    if text.lower().startswith("::ffff:") and "." in text:
        text = text[7:]

    match = _IPV4_WITH_PORT.match(text)
    if match:
        text = match.group(1)
    else:
        match = _IPV6_BRACKETED.match(text)
        if match:
            text = match.group(1)

    try:
        addr = ipaddress.ip_address(text)
    except ValueError:
        return None

    if addr.version == 6 and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    if addr.is_loopback or addr.is_unspecified:
        return None
    return addr.compressed


def parse_network(text: str) -> Optional[IPNetwork]:
    """Parse an address or CIDR into a network, None if invalid.

    Host bits set in a CIDR ("10.0.0.5/8") are tolerated and masked off.
    """
    if not text:
        return None
    try:
        return ipaddress.ip_network(text.strip(), strict=False)
    except ValueError:
        return None


def address_in(address: str, network: IPNetwork) -> bool:
    """Check whether address lies inside network (False across families)."""
    try:
        addr = ipaddress.ip_address(address)
    except ValueError:
        return False
    if addr.version != network.version:
        return False
    return addr in network


def ip_version(address: str) -> int:
    """Return 4 or 6 for a literal address or CIDR."""
    return ipaddress.ip_network(address, strict=False).version
