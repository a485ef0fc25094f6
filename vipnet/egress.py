"""Source NAT of pod traffic so that it leaves the node from a virtual IP.

The rules are kept in mangle and nat tables:

1. a dedicated chain in the mangle table,
2. RETURN for traffic going to service or pod networks,
3. MARK for traffic coming from a pod,
4. a jump from mangle PREROUTING to the dedicated chain,
5. SNAT of marked packets in nat POSTROUTING.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .const import IPProtocol

log = logging.getLogger(__name__)

MANGLE_CHAIN_NAME = "KUBE-VIP-EGRESS"
COMMENT = "a3ViZS12aXAK=kube-vip"

_MARK = "64/64"

_BUILTIN_CHAINS = {
    "filter": ("INPUT", "FORWARD", "OUTPUT"),
    "nat": ("PREROUTING", "INPUT", "OUTPUT", "POSTROUTING"),
    "mangle": ("PREROUTING", "INPUT", "FORWARD", "OUTPUT", "POSTROUTING"),
    "raw": ("PREROUTING", "OUTPUT"),
}

_SUPPORTED_PROTOCOLS = {
    "udp": IPProtocol.UDP,
    "tcp": IPProtocol.TCP,
    "sctp": IPProtocol.SCTP,
}


class IPTablesError(RuntimeError):
    """A rule or chain operation was rejected."""


def _render(args):
    tokens = []
    previous = None
    for arg in args:
        if previous == "--comment" or any(ch.isspace() for ch in arg):
            tokens.append(f'"{arg}"')
        else:
            tokens.append(arg)
        previous = arg
    return " ".join(tokens)


class IPTablesClient:
    """A packet filter rule set held in memory, organised by table and chain.

    Rules are the argument lists that follow the table and chain, matched
    exactly. ``list`` renders a chain in the ``iptables -S`` format.
    """

    def __init__(self, nftables=False, ipv6=False):
        self.nftables = nftables
        self.ipv6 = ipv6
        self._tables = {
            table: {chain: [] for chain in chains} for table, chains in _BUILTIN_CHAINS.items()
        }

    def _table(self, table):
        try:
            return self._tables[table]
        except KeyError:
            raise IPTablesError(f"table {table!r} does not exist") from None

    def _chain(self, table, chain):
        chains = self._table(table)
        try:
            return chains[chain]
        except KeyError:
            raise IPTablesError(f"chain {chain!r} does not exist in table {table!r}") from None

    def exists(self, table, chain, *args):
        """Return True if the exact rule is present in the chain."""
        chains = self._table(table)
        return tuple(args) in chains.get(chain, ())

    def insert(self, table, chain, pos, *args):
        """Insert a rule at the 1-based position ``pos``."""
        rules = self._chain(table, chain)
        if pos < 1 or pos > len(rules) + 1:
            raise IPTablesError(f"index of insertion too big: {pos}")
        rules.insert(pos - 1, tuple(args))

    def insert_unique(self, table, chain, pos, *args):
        """Insert a rule unless it is already present."""
        if not self.exists(table, chain, *args):
            self.insert(table, chain, pos, *args)

    def append(self, table, chain, *args):
        """Append a rule to the end of the chain."""
        self._chain(table, chain).append(tuple(args))

    def delete(self, table, chain, *args):
        """Delete the first matching rule; raise if there is none."""
        rules = self._chain(table, chain)
        try:
            rules.remove(tuple(args))
        except ValueError:
            raise IPTablesError(
                "bad rule (does a matching rule exist in that chain?)"
            ) from None

    def delete_if_exists(self, table, chain, *args):
        """Delete a rule if it is present."""
        if self.exists(table, chain, *args):
            self.delete(table, chain, *args)

    def list(self, table, chain):
        """Return the chain's policy or declaration line followed by its rules."""
        rules = self._chain(table, chain)
        if chain in _BUILTIN_CHAINS.get(table, ()):
            lines = [f"-P {chain} ACCEPT"]
        else:
            lines = [f"-N {chain}"]
        for rule in rules:
            lines.append(f"-A {chain} {_render(rule)}".rstrip())
        return lines

    def chain_exists(self, table, chain):
        """Return True if the chain is present in the table."""
        return chain in self._table(table)

    def new_chain(self, table, chain):
        """Create an empty user chain."""
        chains = self._table(table)
        if chain in chains:
            raise IPTablesError(f"chain {chain!r} already exists in table {table!r}")
        chains[chain] = []

    def clear_and_delete_chain(self, table, chain):
        """Flush and remove a user chain; a missing chain is not an error."""
        chains = self._table(table)
        if chain in _BUILTIN_CHAINS.get(table, ()):
            raise IPTablesError(f"cannot delete built-in chain {chain!r}")
        if chain not in chains:
            return
        for owner, rules in chains.items():
            if owner == chain:
                continue
            for rule in rules:
                if any(a == "-j" and b == chain for a, b in zip(rule, rule[1:])):
                    raise IPTablesError(f"chain {chain!r} is still referenced from {owner!r}")
        del chains[chain]


@dataclass(frozen=True)
class Session:
    """A tracked connection as seen in its original direction."""

    src: str
    dst: str
    protocol: int
    dst_port: int


class ConnTracker:
    """A connection tracking table held in memory."""

    def __init__(self, sessions=()):
        self._sessions = list(sessions)

    def dump(self):
        """Return a snapshot of the tracked sessions."""
        return list(self._sessions)

    def delete(self, session):
        """Forget a session; raise LookupError if it is not tracked."""
        try:
            self._sessions.remove(session)
        except ValueError:
            raise LookupError(f"session {session} is not tracked") from None


class Egress:
    """Manages the egress rules of one namespace."""

    def __init__(self, client, namespace):
        log.info("[egress] Creating an iptables client, nftables mode [%s]", client.nftables)
        self.client = client
        self.comment = f"{COMMENT}-{namespace}"

    @property
    def _tag(self):
        return ("-m", "comment", "--comment", self.comment)

    def _snat(self, pod_ip, vip, *extra):
        return ("-s", f"{pod_ip}/32", "-m", "mark", "--mark", _MARK,
                "-j", "SNAT", "--to-source", vip, *extra, *self._tag)

    def _marking(self, subnet):
        return ("-s", subnet, "-j", "MARK", "--set-mark", _MARK, *self._tag)

    def check_mangle_chain(self, name):
        """Return True if the mangle chain exists."""
        log.info("[egress] Checking for Chain [%s]", name)
        return self.client.chain_exists("mangle", name)

    def delete_mangle_chain(self, name):
        """Flush and remove the mangle chain."""
        self.client.clear_and_delete_chain("mangle", name)

    def delete_mangle_prerouting(self, name):
        """Remove the plain jump from mangle PREROUTING to ``name``."""
        self.client.delete("mangle", "PREROUTING", "-j", name)

    def delete_mangle_marking(self, pod_ip, name):
        """Stop marking packets coming from ``pod_ip``."""
        log.info("[egress] Stopping marking packets on network [%s]", pod_ip)
        rule = self._marking(pod_ip)
        if not self.client.exists("mangle", name, *rule):
            raise LookupError(f"unable to find source Mangle rule for [{pod_ip}]")
        self.client.delete("mangle", name, *rule)

    def delete_source_nat(self, pod_ip, vip):
        """Remove the SNAT rule from ``pod_ip`` to ``vip``."""
        log.info("[egress] Removing source nat from [%s] => [%s]", pod_ip, vip)
        rule = self._snat(pod_ip, vip)
        if not self.client.exists("nat", "POSTROUTING", *rule):
            raise LookupError(f"unable to find source Nat rule for [{pod_ip}]")
        self.client.delete("nat", "POSTROUTING", *rule)

    def delete_source_nat_for_destination_port(self, pod_ip, vip, port, proto):
        """Remove the SNAT rule limited to one destination port."""
        log.info("[egress] Removing source nat from [%s] => [%s]", pod_ip, vip)
        rule = self._snat(pod_ip, vip, "-p", proto, "--dport", port)
        if not self.client.exists("nat", "POSTROUTING", *rule):
            raise LookupError(
                f"unable to find source Nat rule for [{pod_ip}], with destination port [{port}]"
            )
        self.client.delete("nat", "POSTROUTING", *rule)

    def create_mangle_chain(self, name):
        """Create the mangle chain."""
        log.info("[egress] Creating Chain [%s]", name)
        self.client.new_chain("mangle", name)

    def append_return_rules_for_destination_subnet(self, name, subnet):
        """Let traffic to ``subnet`` return from the chain untouched."""
        log.info("[egress] Adding jump for subnet [%s] to RETURN to previous chain/rules", subnet)
        rule = ("-d", subnet, "-j", "RETURN", *self._tag)
        if not self.client.exists("mangle", name, *rule):
            self.client.append("mangle", name, *rule)

    def append_return_rules_for_marking(self, name, subnet):
        """Mark packets coming from ``subnet``."""
        log.info("[egress] Marking packets on network [%s]", subnet)
        rule = self._marking(subnet)
        if not self.client.exists("mangle", name, *rule):
            self.client.append("mangle", name, *rule)

    def insert_mangle_table_into_prerouting(self, name):
        """Put the jump to ``name`` first in mangle PREROUTING."""
        log.info("[egress] Adding jump from mangle prerouting to [%s]", name)
        rule = ("-j", name, *self._tag)
        if self.client.exists("mangle", "PREROUTING", *rule):
            self.client.delete("mangle", "PREROUTING", *rule)
        self.client.insert("mangle", "PREROUTING", 1, *rule)

    def insert_source_nat(self, vip, pod_ip):
        """Put the SNAT rule from ``pod_ip`` to ``vip`` first in nat POSTROUTING."""
        log.info("[egress] Adding source nat from [%s] => [%s]", pod_ip, vip)
        rule = self._snat(pod_ip, vip)
        if self.client.exists("nat", "POSTROUTING", *rule):
            self.client.delete("nat", "POSTROUTING", *rule)
        self.client.insert("nat", "POSTROUTING", 1, *rule)

    def insert_source_nat_for_destination_port(self, vip, pod_ip, port, proto):
        """Replace every rule naming ``vip`` with a port-limited SNAT rule."""
        log.info(
            "[egress] Adding source nat from [%s] => [%s], with destination port [%s]",
            pod_ip, vip, port,
        )
        found = self.find_existing_vip(self.client.list("nat", "POSTROUTING"), vip)
        log.warning("[egress] Cleaning [%d] existing postrouting nat rules for vip [%s]", len(found), vip)
        for rule in found:
            try:
                self.client.delete("nat", "POSTROUTING", *rule[2:])
            except IPTablesError as err:
                log.error("[egress] Error removing rule [%s]", err)

        rule = self._snat(pod_ip, vip, "-p", proto, "--dport", port)
        if self.client.exists("nat", "POSTROUTING", *rule):
            self.client.delete("nat", "POSTROUTING", *rule)
        self.client.insert("nat", "POSTROUTING", 1, *rule)

    def dump_chain(self, name):
        """Log and return the rules of a mangle chain."""
        log.info("Dumping chain [%s]", name)
        rules = self.client.list("mangle", name)
        for rule in rules:
            log.info("Rule -> %s", rule)
        return rules

    def clean_iptables(self):
        """Remove every rule carrying this namespace's comment."""
        found = self.find_rules(self.client.list("nat", "POSTROUTING"))
        log.warning("[egress] Cleaning [%d] dangling postrouting nat rules", len(found))
        for rule in found:
            try:
                self.client.delete("nat", "POSTROUTING", *rule[2:])
            except IPTablesError as err:
                log.error("[egress] Error removing rule [%s]", err)

        try:
            exists = self.check_mangle_chain(MANGLE_CHAIN_NAME)
        except IPTablesError as err:
            log.debug("[egress] No Mangle chain exists [%s]", err)
            exists = False
        if not exists:
            log.warning("No existing mangle chain [%s] exists", MANGLE_CHAIN_NAME)
            return

        found = self.find_rules(self.client.list("mangle", MANGLE_CHAIN_NAME))
        log.warning("[egress] Cleaning [%d] dangling prerouting mangle rules", len(found))
        for rule in found:
            try:
                self.client.delete("mangle", MANGLE_CHAIN_NAME, *rule[2:])
            except IPTablesError as err:
                log.error("[egress] Error removing rule [%s]", err)

    def find_rules(self, rules):
        """Return the rules carrying this namespace's quoted comment, split into tokens."""
        quoted = f'"{self.comment}"'
        found = []
        for line in rules:
            tokens = line.split(" ")
            for pos, token in enumerate(tokens):
                if token == quoted:
                    tokens[pos] = token.strip('"')
                    found.append(tokens)
        return found

    def find_existing_vip(self, rules, vip):
        """Return the rules that mention ``vip``, split into tokens."""
        found = []
        for line in rules:
            tokens = line.split(" ")
            found.extend(tokens for token in tokens if token == vip)
        return found


def parse_port_protocols(spec):
    """Parse "proto:port,proto:port" into a mapping of port to protocol.

    Only lower-case udp, tcp and sctp are understood; others are logged and skipped.
    """
    result = {}
    if not spec:
        return result
    for entry in spec.split(","):
        fields = entry.split(":")
        try:
            port = int(fields[1])
        except (IndexError, ValueError):
            raise ValueError(f"[egress] error parsing annotaion [{spec}]") from None
        if not 0 <= port <= 0xFFFF:
            raise ValueError(f"[egress] error parsing annotaion [{spec}]")
        protocol = _SUPPORTED_PROTOCOLS.get(fields[0])
        if protocol is None:
            log.error("[egress] annotation protocol [%s] isn't supported", fields[0])
            continue
        result[port] = protocol
    return result


def delete_existing_sessions(tracker, session_ip, destination, destination_ports, src_ports):
    """Drop tracked connections of ``session_ip`` and return those removed.

    By default connections originating from the address are removed, filtered
    by ``destination_ports``; with ``destination`` set, connections going to it
    are removed instead, filtered by ``src_ports``.
    """
    sessions = tracker.dump()
    dest_protocols = parse_port_protocols(destination_ports)
    src_protocols = parse_port_protocols(src_ports)

    if destination:
        ports, protocols = src_ports, src_protocols
    else:
        ports, protocols = destination_ports, dest_protocols

    removed = []
    for session in sessions:
        address = session.dst if destination else session.src
        if address != session_ip:
            continue
        if ports and protocols.get(session.dst_port, 0) != session.protocol:
            continue
        if ports:
            log.info(
                "[egress] cleaning existing connection Source [%s] -> [%s:%d] proto: [%d]",
                session.src, session.dst, session.dst_port, session.protocol,
            )
        try:
            tracker.delete(session)
        except LookupError as err:
            log.error("could not delete sessions: %s", err)
            continue
        removed.append(session)
    return removed