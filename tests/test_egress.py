import pytest

from vipnet.const import IPProtocol
from vipnet.egress import (
    COMMENT,
    MANGLE_CHAIN_NAME,
    ConnTracker,
    Egress,
    IPTablesClient,
    IPTablesError,
    Session,
    delete_existing_sessions,
    parse_port_protocols,
)


@pytest.fixture
def egress():
    return Egress(IPTablesClient(), "default")


def test_find_rules_source_case(egress):
    comment = COMMENT + "-" + "default"
    assert egress.comment == comment
    rules = [
        '-A PREROUTING -m comment --comment "cali:6gwbT8clXdHdC1b1" -j cali-PREROUTING',
        f'-A KUBE-VIP-EGRESS -s 172.17.88.190/32 -m comment --comment "{comment}" -j MARK --set-xmark 0x40/0x40',
        f'-A POSTROUTING -m comment --comment "{comment}" -j RETURN',
    ]
    want = [
        ["-A", "KUBE-VIP-EGRESS", "-s", "172.17.88.190/32", "-m", "comment", "--comment",
         comment, "-j", "MARK", "--set-xmark", "0x40/0x40"],
        ["-A", "POSTROUTING", "-m", "comment", "--comment", comment, "-j", "RETURN"],
    ]
    assert egress.find_rules(rules) == want


def test_find_rules_other_namespace_not_matched(egress):
    other = Egress(IPTablesClient(), "other")
    rules = [f'-A POSTROUTING -m comment --comment "{other.comment}" -j RETURN']
    assert egress.find_rules(rules) == []


def test_find_existing_vip(egress):
    rules = [
        "-P POSTROUTING ACCEPT",
        "-A POSTROUTING -j SNAT --to-source 192.0.2.10",
        "-A POSTROUTING -j SNAT --to-source 192.0.2.11",
    ]
    assert egress.find_existing_vip(rules, "192.0.2.10") == [
        ["-A", "POSTROUTING", "-j", "SNAT", "--to-source", "192.0.2.10"]
    ]


def test_insert_source_nat_is_unique_and_listed(egress):
    egress.insert_source_nat("192.0.2.10", "10.1.1.1")
    egress.insert_source_nat("192.0.2.10", "10.1.1.1")
    rules = egress.client.list("nat", "POSTROUTING")
    assert rules[0] == "-P POSTROUTING ACCEPT"
    assert len(rules) == 2
    found = egress.find_rules(rules)
    assert len(found) == 1
    assert "192.0.2.10" in found[0]
    assert "10.1.1.1/32" in found[0]


def test_delete_source_nat_round_trip(egress):
    egress.insert_source_nat("192.0.2.10", "10.1.1.1")
    egress.delete_source_nat("10.1.1.1", "192.0.2.10")
    assert egress.client.list("nat", "POSTROUTING") == ["-P POSTROUTING ACCEPT"]
    with pytest.raises(LookupError):
        egress.delete_source_nat("10.1.1.1", "192.0.2.10")


def test_delete_source_nat_for_destination_port(egress):
    egress.insert_source_nat_for_destination_port("192.0.2.10", "10.1.1.1", "443", "tcp")
    with pytest.raises(LookupError):
        egress.delete_source_nat_for_destination_port("10.1.1.1", "192.0.2.10", "80", "tcp")
    egress.delete_source_nat_for_destination_port("10.1.1.1", "192.0.2.10", "443", "tcp")
    assert egress.find_rules(egress.client.list("nat", "POSTROUTING")) == []


def test_mangle_chain_lifecycle(egress):
    assert egress.check_mangle_chain(MANGLE_CHAIN_NAME) is False
    egress.create_mangle_chain(MANGLE_CHAIN_NAME)
    assert egress.check_mangle_chain(MANGLE_CHAIN_NAME) is True
    with pytest.raises(IPTablesError):
        egress.create_mangle_chain(MANGLE_CHAIN_NAME)
    egress.delete_mangle_chain(MANGLE_CHAIN_NAME)
    assert egress.check_mangle_chain(MANGLE_CHAIN_NAME) is False


def test_append_rules_are_idempotent(egress):
    egress.create_mangle_chain(MANGLE_CHAIN_NAME)
    for _ in range(2):
        egress.append_return_rules_for_destination_subnet(MANGLE_CHAIN_NAME, "10.96.0.0/12")
        egress.append_return_rules_for_marking(MANGLE_CHAIN_NAME, "10.1.1.1")
    rules = egress.dump_chain(MANGLE_CHAIN_NAME)
    assert rules[0] == f"-N {MANGLE_CHAIN_NAME}"
    assert len(rules) == 3
    assert "RETURN" in rules[1]
    assert "MARK" in rules[2]


def test_delete_mangle_marking(egress):
    egress.create_mangle_chain(MANGLE_CHAIN_NAME)
    with pytest.raises(LookupError):
        egress.delete_mangle_marking("10.1.1.1", MANGLE_CHAIN_NAME)
    egress.append_return_rules_for_marking(MANGLE_CHAIN_NAME, "10.1.1.1")
    egress.delete_mangle_marking("10.1.1.1", MANGLE_CHAIN_NAME)
    assert egress.dump_chain(MANGLE_CHAIN_NAME) == [f"-N {MANGLE_CHAIN_NAME}"]


def test_prerouting_jump_stays_first_and_unique(egress):
    egress.create_mangle_chain(MANGLE_CHAIN_NAME)
    egress.client.append("mangle", "PREROUTING", "-j", "OTHER")
    egress.insert_mangle_table_into_prerouting(MANGLE_CHAIN_NAME)
    egress.insert_mangle_table_into_prerouting(MANGLE_CHAIN_NAME)
    rules = egress.client.list("mangle", "PREROUTING")
    assert len(rules) == 3
    assert rules[1].startswith(f"-A PREROUTING -j {MANGLE_CHAIN_NAME}")
    with pytest.raises(IPTablesError):
        egress.delete_mangle_chain(MANGLE_CHAIN_NAME)


def test_clean_iptables_keeps_foreign_rules(egress):
    egress.create_mangle_chain(MANGLE_CHAIN_NAME)
    egress.append_return_rules_for_marking(MANGLE_CHAIN_NAME, "10.1.1.1")
    egress.client.append("mangle", MANGLE_CHAIN_NAME, "-s", "10.9.9.9", "-j", "ACCEPT")
    egress.insert_source_nat("192.0.2.10", "10.1.1.1")
    egress.client.append("nat", "POSTROUTING", "-j", "MASQUERADE")
    egress.clean_iptables()
    assert egress.client.list("nat", "POSTROUTING") == [
        "-P POSTROUTING ACCEPT",
        "-A POSTROUTING -j MASQUERADE",
    ]
    assert egress.dump_chain(MANGLE_CHAIN_NAME) == [
        f"-N {MANGLE_CHAIN_NAME}",
        f"-A {MANGLE_CHAIN_NAME} -s 10.9.9.9 -j ACCEPT",
    ]


def test_client_insert_position_checked():
    client = IPTablesClient()
    with pytest.raises(IPTablesError):
        client.insert("filter", "INPUT", 2, "-j", "DROP")
    client.insert("filter", "INPUT", 1, "-j", "DROP")
    client.insert("filter", "INPUT", 1, "-j", "ACCEPT")
    assert client.list("filter", "INPUT")[1:] == ["-A INPUT -j ACCEPT", "-A INPUT -j DROP"]


def test_client_delete_if_exists_and_unknown_table():
    client = IPTablesClient()
    client.delete_if_exists("filter", "INPUT", "-j", "DROP")
    client.insert_unique("filter", "INPUT", 1, "-j", "DROP")
    client.insert_unique("filter", "INPUT", 1, "-j", "DROP")
    assert client.list("filter", "INPUT") == ["-P INPUT ACCEPT", "-A INPUT -j DROP"]
    client.delete_if_exists("filter", "INPUT", "-j", "DROP")
    assert client.exists("filter", "INPUT", "-j", "DROP") is False
    with pytest.raises(IPTablesError):
        client.list("bogus", "INPUT")
    with pytest.raises(IPTablesError):
        client.clear_and_delete_chain("filter", "INPUT")


def test_parse_port_protocols():
    assert parse_port_protocols("tcp:80,udp:53,sctp:9") == {
        80: IPProtocol.TCP,
        53: IPProtocol.UDP,
        9: IPProtocol.SCTP,
    }
    assert parse_port_protocols("TCP:80") == {}
    assert parse_port_protocols("") == {}


@pytest.mark.parametrize("spec", ["tcp:abc", "tcp:70000", "tcp"])
def test_parse_port_protocols_errors(spec):
    with pytest.raises(ValueError):
        parse_port_protocols(spec)


def _sessions():
    return [
        Session("10.1.1.1", "192.0.2.50", IPProtocol.TCP, 443),
        Session("10.1.1.1", "192.0.2.50", IPProtocol.UDP, 443),
        Session("10.1.1.1", "192.0.2.51", IPProtocol.TCP, 80),
        Session("10.1.1.2", "10.1.1.1", IPProtocol.TCP, 8080),
    ]


def test_delete_sessions_by_source_without_ports():
    sessions = _sessions()
    tracker = ConnTracker(sessions)
    removed = delete_existing_sessions(tracker, "10.1.1.1", False, "", "")
    assert removed == sessions[:3]
    assert tracker.dump() == sessions[3:]


def test_delete_sessions_by_source_with_ports():
    sessions = _sessions()
    tracker = ConnTracker(sessions)
    removed = delete_existing_sessions(tracker, "10.1.1.1", False, "tcp:443", "")
    assert removed == [sessions[0]]
    assert len(tracker.dump()) == 3


def test_delete_sessions_by_destination():
    sessions = _sessions()
    tracker = ConnTracker(sessions)
    assert delete_existing_sessions(tracker, "10.1.1.1", True, "", "udp:8080") == []
    removed = delete_existing_sessions(tracker, "10.1.1.1", True, "", "tcp:8080")
    assert removed == [sessions[3]]


def test_delete_sessions_bad_spec():
    tracker = ConnTracker(_sessions())
    with pytest.raises(ValueError):
        delete_existing_sessions(tracker, "10.1.1.1", False, "tcp:x", "")
    assert len(tracker.dump()) == 4


def test_conntracker_delete_unknown():
    tracker = ConnTracker()
    with pytest.raises(LookupError):
        tracker.delete(Session("10.1.1.1", "10.1.1.2", IPProtocol.TCP, 1))