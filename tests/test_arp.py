import ipaddress

import pytest

from vipnet.arp import (
    ETHERNET_BROADCAST,
    OP_REPLY,
    OP_REQUEST,
    ArpAnnouncer,
    ArpMessage,
    gratuitous_arp,
    parse_mac,
    send_arp,
)

MAC = "02:00:00:00:00:01"
MAC_BYTES = bytes.fromhex(MAC.replace(":", ""))
IP = "192.0.2.10"


def test_reply_wire_format():
    wire = gratuitous_arp(IP, MAC, request=False).to_bytes()
    assert wire == bytes.fromhex(
        "0001" "0800" "06" "04" "0002" "020000000001" "c000020a" "020000000001" "c000020a"
    )


def test_reply_fields():
    msg = gratuitous_arp(IP, MAC, request=False)
    assert msg.opcode == OP_REPLY
    assert msg.sender_hardware_address == MAC_BYTES
    assert msg.target_hardware_address == MAC_BYTES
    assert msg.sender_protocol_address == ipaddress.IPv4Address(IP).packed
    assert msg.target_protocol_address == msg.sender_protocol_address


def test_request_uses_broadcast_target():
    msg = gratuitous_arp(IP, MAC_BYTES, request=True)
    assert msg.opcode == OP_REQUEST
    assert msg.target_hardware_address == ETHERNET_BROADCAST
    assert msg.sender_hardware_address == MAC_BYTES


def test_wire_length_matches_header():
    msg = gratuitous_arp(IP, MAC, request=True)
    wire = msg.to_bytes()
    expected = 8 + 2 * (msg.hardware_address_length + msg.protocol_address_length)
    assert len(wire) == expected
    assert wire[8:14] == MAC_BYTES


def test_mapped_ipv4_accepted():
    msg = gratuitous_arp("::ffff:" + IP, MAC, request=False)
    assert msg.sender_protocol_address == ipaddress.IPv4Address(IP).packed


def test_ipv6_rejected():
    with pytest.raises(ValueError, match="not an IPv4 address"):
        gratuitous_arp("2001:db8::1", MAC, request=False)


def test_short_mac_rejected():
    with pytest.raises(ValueError, match="MAC"):
        gratuitous_arp(IP, b"\x02\x00\x00", request=False)


def test_parse_mac_separators():
    assert parse_mac(MAC) == MAC_BYTES
    assert parse_mac(MAC.replace(":", "-")) == MAC_BYTES


@pytest.mark.parametrize("bad", ["02:00:00:00:00", "zz:00:00:00:00:01", "0200.0000.0001", ""])
def test_parse_mac_invalid(bad):
    with pytest.raises(ValueError):
        parse_mac(bad)


def test_announcer_alternates():
    announcer = ArpAnnouncer()
    opcodes = [announcer.message(IP, MAC).opcode for _ in range(4)]
    assert opcodes == [OP_REPLY, OP_REQUEST, OP_REPLY, OP_REQUEST]


def test_announcer_unknown_interface():
    with pytest.raises(OSError):
        ArpAnnouncer().send(IP, "nosuchif0")


def test_send_arp_unknown_interface():
    msg = ArpMessage(
        opcode=OP_REPLY,
        sender_hardware_address=MAC_BYTES,
        sender_protocol_address=ipaddress.IPv4Address(IP).packed,
        target_hardware_address=MAC_BYTES,
        target_protocol_address=ipaddress.IPv4Address(IP).packed,
    )
    with pytest.raises(OSError):
        send_arp("nosuchif0", msg)