"""Gratuitous ARP announcements for IPv4 virtual addresses."""

from __future__ import annotations

import ipaddress
import logging
import socket
import struct
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger(__name__)

OP_REQUEST = 1
OP_REPLY = 2
HW_LEN = 6
ETH_P_ARP = 0x0806
ETHERNET_BROADCAST = b"\xff" * HW_LEN

_HEADER = struct.Struct("!HHBBH")


@dataclass(frozen=True)
class ArpMessage:
    """An Ethernet/IPv4 ARP message."""

    opcode: int
    sender_hardware_address: bytes
    sender_protocol_address: bytes
    target_hardware_address: bytes
    target_protocol_address: bytes
    hardware_type: int = 1
    protocol_type: int = 0x0800
    hardware_address_length: int = HW_LEN
    protocol_address_length: int = 4

    def to_bytes(self):
        """Return the wire representation of the message."""
        header = _HEADER.pack(
            self.hardware_type,
            self.protocol_type,
            self.hardware_address_length,
            self.protocol_address_length,
            self.opcode,
        )
        return b"".join(
            (
                header,
                self.sender_hardware_address,
                self.sender_protocol_address,
                self.target_hardware_address,
                self.target_protocol_address,
            )
        )


def parse_mac(mac):
    """Parse "aa:bb:cc:dd:ee:ff" (or dash separated) into six bytes."""
    parts = mac.replace("-", ":").split(":")
    if len(parts) != HW_LEN or any(len(p) != 2 for p in parts):
        raise ValueError(f"{mac!r} is not an Ethernet MAC address")
    try:
        return bytes(int(p, 16) for p in parts)
    except ValueError:
        raise ValueError(f"{mac!r} is not an Ethernet MAC address") from None


def _ipv4_bytes(ip):
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        raise ValueError(f"{str(ip)!r} is not an IPv4 address") from None
    if addr.version == 6:
        if addr.ipv4_mapped is None:
            raise ValueError(f"{str(ip)!r} is not an IPv4 address")
        addr = addr.ipv4_mapped
    return addr.packed


def gratuitous_arp(ip, mac, request):
    """Build a gratuitous ARP request or reply announcing ``ip`` at ``mac``."""
    protocol_address = _ipv4_bytes(ip)
    hardware_address = parse_mac(mac) if isinstance(mac, str) else bytes(mac)
    if len(hardware_address) != HW_LEN:
        raise ValueError(f"{hardware_address.hex(':')!r} is not an Ethernet MAC address")

    # The target hardware address is unused in a request, so it is broadcast.
    return ArpMessage(
        opcode=OP_REQUEST if request else OP_REPLY,
        sender_hardware_address=hardware_address,
        sender_protocol_address=protocol_address,
        target_hardware_address=ETHERNET_BROADCAST if request else hardware_address,
        target_protocol_address=protocol_address,
    )


def send_arp(iface_name, message):
    """Broadcast ``message`` on the named interface."""
    if not hasattr(socket, "AF_PACKET"):
        raise OSError("unsupported on this OS")

    try:
        sock = socket.socket(socket.AF_PACKET, socket.SOCK_DGRAM, socket.htons(ETH_P_ARP))
    except OSError as err:
        raise OSError(f"failed to get raw socket: {err}") from err

    with sock:
        bind_to_device = getattr(socket, "SO_BINDTODEVICE", 25)
        try:
            sock.setsockopt(socket.SOL_SOCKET, bind_to_device, iface_name.encode())
        except OSError as err:
            raise OSError(f"failed to bind to device: {err}") from err

        link_address = (iface_name, ETH_P_ARP, 0, message.hardware_type, ETHERNET_BROADCAST)
        payload = message.to_bytes()
        try:
            sock.bind(link_address)
        except OSError as err:
            raise OSError(f"failed to bind: {err}") from err
        try:
            sock.sendto(payload, link_address)
        except OSError as err:
            raise OSError(f"failed to send: {err}") from err


def _interface_mac(iface_name):
    if not iface_name or "/" in iface_name or iface_name in (".", ".."):
        raise OSError(f"failed to get interface {iface_name!r}")
    try:
        text = Path("/sys/class/net", iface_name, "address").read_text().strip()
    except OSError as err:
        raise OSError(f"failed to get interface {iface_name!r}: {err}") from err
    return parse_mac(text)


class ArpAnnouncer:
    """Sends gratuitous ARP, alternating between replies and requests.

    Devices differ in which of the two they honour, so both are used in turn.
    """

    def __init__(self):
        self._request = True

    def message(self, ip, mac):
        """Return the next announcement, flipping between reply and request."""
        self._request = not self._request
        return gratuitous_arp(ip, mac, self._request)

    def send(self, address, iface_name):
        """Announce ``address`` on ``iface_name``."""
        mac = _interface_mac(iface_name)
        try:
            ip = ipaddress.ip_address(address)
        except ValueError:
            raise ValueError(f"failed to parse address {address}") from None
        send_arp(iface_name, self.message(ip, mac))