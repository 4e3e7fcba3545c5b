"""Absolute paths of the firewall tools the applier shells out to.

iptables lives in an sbin directory that is often missing from the PATH of
service managers and unprivileged shells, so lookups fall back to the usual
sbin locations instead of relying on PATH resolution (bandit B607).
"""

import os
import shutil
from typing import Dict, Optional

_binary_cache: Dict[str, Optional[str]] = {}

# Searched in order when shutil.which finds nothing
_SBIN_DIRS = ("/usr/sbin", "/sbin", "/usr/local/sbin")

# Firewall tools are assumed to be in the first sbin dir when not installed yet
_FIREWALL_TOOLS = ("iptables", "ip6tables")


def _search_sbin(name: str) -> Optional[str]:
    for directory in _SBIN_DIRS:
        candidate = os.path.join(directory, name)
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
    return None


def get_binary(name: str) -> Optional[str]:
    """Get absolute path to a binary.

    Args:
        name: The binary name (e.g., 'iptables')

    Returns:
        Absolute path to the binary, or None if not found
    """
    if name in _binary_cache:
        return _binary_cache[name]

    path = shutil.which(name) or _search_sbin(name)
    if path is None and name in _FIREWALL_TOOLS:
        path = os.path.join(_SBIN_DIRS[0], name)

    _binary_cache[name] = path
    return path


def get_binary_or_raise(name: str) -> str:
    """Like get_binary, raising FileNotFoundError when nothing is found."""
    path = get_binary(name)
    if path is None:
        raise FileNotFoundError(f"Binary not found: {name}")
    return path


def firewall_binary(version: int) -> str:
    """iptables for IPv4, ip6tables for IPv6."""
    return get_binary_or_raise("ip6tables" if version == 6 else "iptables")


IPTABLES = firewall_binary(4)
IP6TABLES = firewall_binary(6)
