"""Unsolicited IPv6 neighbor advertisements for virtual addresses."""

from __future__ import annotations

import ipaddress
import logging
import socket
import struct
from pathlib import Path

from .arp import parse_mac

log = logging.getLogger(__name__)

_NEIGHBOR_ADVERTISEMENT = 136
_FLAG_SOLICITED = 0x40
_FLAG_OVERRIDE = 0x20
_OPTION_TARGET_LINK_LAYER = 2
_ALL_NODES = "ff02::1"
_HOP_LIMIT = 255


def _hardware_bytes(hardware_addr):
    data = parse_mac(hardware_addr) if isinstance(hardware_addr, str) else bytes(hardware_addr)
    if len(data) != 6:
        raise ValueError(f"{hardware_addr!r} is not an Ethernet MAC address")
    return data


def neighbor_advertisement(target, hardware_addr, gratuitous):
    """Build an ICMPv6 neighbor advertisement with a target link-layer option.

    The checksum field is left zero; the kernel fills it for raw ICMPv6 sockets.
    """
    try:
        addr = ipaddress.IPv6Address(target)
    except ValueError:
        raise ValueError(f"{target!r} must be an IPv6 address") from None
    mac = _hardware_bytes(hardware_addr)

    flags = _FLAG_OVERRIDE if gratuitous else _FLAG_SOLICITED
    header = struct.pack("!BBHB3x", _NEIGHBOR_ADVERTISEMENT, 0, 0, flags)
    option = struct.pack("!BB", _OPTION_TARGET_LINK_LAYER, 1) + mac
    return header + addr.packed + option


def _interface_mac(iface_name):
    try:
        text = Path("/sys/class/net", iface_name, "address").read_text().strip()
    except OSError as err:
        raise OSError(f"failed to get interface {iface_name!r}: {err}") from err
    return parse_mac(text)


def _link_local_address(iface_name):
    try:
        lines = Path("/proc/net/if_inet6").read_text().splitlines()
    except OSError as err:
        raise OSError(f"no IPv6 addresses for {iface_name!r}: {err}") from err
    for line in lines:
        fields = line.split()
        if len(fields) < 6 or fields[5] != iface_name:
            continue
        addr = ipaddress.IPv6Address(int(fields[0], 16))
        if addr.is_link_local:
            return addr
    raise OSError(f"no link-local address on {iface_name!r}")


class NdpResponder:
    """Sends NDP updates from the link-local address of one interface."""

    def __init__(self, iface_name):
        if not iface_name or "/" in iface_name:
            raise OSError(f"failed to get interface {iface_name!r}")
        try:
            self._index = socket.if_nametoindex(iface_name)
        except OSError as err:
            raise OSError(f"failed to get interface {iface_name!r}: {err}") from err
        self.interface = iface_name
        self.hardware_addr = _interface_mac(iface_name)

        try:
            source = _link_local_address(iface_name)
            sock = socket.socket(socket.AF_INET6, socket.SOCK_RAW, socket.IPPROTO_ICMPV6)
        except OSError as err:
            raise OSError(f"creating NDP responder for {iface_name!r}: {err}") from err
        try:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_MULTICAST_HOPS, _HOP_LIMIT)
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_UNICAST_HOPS, _HOP_LIMIT)
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_MULTICAST_IF, self._index)
            sock.bind((str(source), 0, 0, self._index))
        except OSError as err:
            sock.close()
            raise OSError(f"creating NDP responder for {iface_name!r}: {err}") from err
        self._sock = sock

    def close(self):
        """Close the underlying socket."""
        self._sock.close()

    def send_gratuitous(self, address):
        """Multicast an unsolicited advertisement for ``address`` to all nodes."""
        try:
            ip = ipaddress.ip_address(address)
        except ValueError:
            raise ValueError(f"failed to parse address {address}") from None
        log.info(
            "Broadcasting NDP update for %s (%s) via %s",
            address,
            self.hardware_addr.hex(":"),
            self.interface,
        )
        message = neighbor_advertisement(ip, self.hardware_addr, gratuitous=True)
        self._sock.sendto(message, (_ALL_NODES, 0, 0, self._index))

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()