"""Address helpers: parsing, family checks and name resolution."""

from __future__ import annotations

import ipaddress
import logging
import secrets
import socket

log = logging.getLogger(__name__)

_FAMILY_MODES = ("ipv4", "ipv6", "dual")


def _parse(address):
    if not isinstance(address, str) or "%" in address:
        return None
    try:
        return ipaddress.ip_address(address)
    except ValueError:
        return None


def is_ip(address):
    """Return True if ``address`` is a literal IPv4 or IPv6 address."""
    return _parse(address) is not None


def is_ipv4(address):
    """Return True only for IPv4 addresses, including IPv4-mapped IPv6 ones."""
    ip = _parse(address)
    if ip is None:
        return False
    return ip.version == 4 or ip.ipv4_mapped is not None


def is_ipv6(address):
    """Return True only for IPv6 addresses that do not map an IPv4 address."""
    ip = _parse(address)
    if ip is None:
        return False
    return ip.version == 6 and ip.ipv4_mapped is None


def get_full_mask(address):
    """Return the host prefix for ``address``: "/32" or "/128"."""
    if is_ipv4(address):
        return "/32"
    if is_ipv6(address):
        return "/128"
    raise ValueError(f"failed to parse {address} as either IPv4 or IPv6")


def _select_by_family(addresses, mode):
    checkers = []
    if mode in ("dual", "ipv4"):
        checkers.append(("IPv4", is_ipv4))
    if mode in ("dual", "ipv6"):
        checkers.append(("IPv6", is_ipv6))

    selected = []
    for label, check in checkers:
        found = next((addr for addr in addresses if check(addr)), None)
        if found is None:
            raise LookupError(f"error getting {label} address: address not found")
        selected.append(found)
    return selected


def lookup_host(dns_name, dns_mode):
    """Resolve ``dns_name``.

    With mode "ipv4", "ipv6" or "dual" the first address of each requested
    family is returned; any other mode returns only the first address.
    """
    try:
        infos = socket.getaddrinfo(dns_name, None, type=socket.SOCK_STREAM)
    except socket.gaierror as err:
        raise LookupError(f"lookup {dns_name}: {err}") from err

    result = list(dict.fromkeys(info[4][0] for info in infos))
    if not result:
        raise LookupError(f"empty address for {dns_name}")

    if dns_mode in _FAMILY_MODES:
        return _select_by_family(result, dns_mode)
    return [result[0]]


def get_host_name(dns_name):
    """Return the first label of a fully qualified name."""
    if not dns_name:
        return ""
    return dns_name.split(".")[0]


def generate_mac():
    """Return a random MAC address under a fixed manufacturer prefix."""
    tail = secrets.token_bytes(3)
    mac = "00:00:6C:" + ":".join(f"{octet:02x}" for octet in tail)
    log.info("Generated mac: %s", mac)
    return mac


def get_ips(vip):
    """Split a comma separated list of addresses, trimming whitespace."""
    return [part.strip() for part in vip.split(",")]