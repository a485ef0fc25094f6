"""Virtual IP addresses on a network interface, with their routes and filter rules."""

from __future__ import annotations

import ipaddress
import itertools
import logging
import os
import shlex
import threading
from dataclasses import dataclass, field, replace

from .egress import IPTablesError
from .util import get_full_mask, get_host_name, is_ip, is_ipv6, lookup_host

log = logging.getLogger(__name__)

DEFAULT_VALID_LFT = 60
DHCP_CLIENT_PORT = "68"
IGNORE_SERVICE_SECURITY_ANNOTATION = "kube-vip.io/ignore-service-security"
IPTABLES_COMMENT = "{} kube-vip load balancer IP"

FAMILY_ALL = 0
FAMILY_V4 = 2
FAMILY_V6 = 10

RT_SCOPE_UNIVERSE = 0
RT_SCOPE_LINK = 253
RT_SCOPE_HOST = 254

RTN_UNICAST = 1
RTN_LOCAL = 2

RTPROT_BOOT = 3

IFA_F_DADFAILED = 0x08


class NetlinkError(OSError):
    """The kernel network configuration rejected an operation."""


class AddressError(RuntimeError):
    """Configuring a virtual IP failed."""


@dataclass
class Addr:
    """An address with its prefix, as assigned to an interface.

    Two addresses are equal when address and prefix length agree.
    """

    interface: ipaddress.IPv4Interface | ipaddress.IPv6Interface
    scope: int = field(default=RT_SCOPE_UNIVERSE, compare=False)
    valid_lft: int = field(default=0, compare=False)
    flags: int = field(default=0, compare=False)

    @property
    def ip(self):
        return self.interface.ip

    @property
    def network(self):
        return self.interface.network

    def __str__(self):
        return str(self.interface)


@dataclass(frozen=True)
class Route:
    """A route in one routing table."""

    dst: ipaddress.IPv4Network | ipaddress.IPv6Network
    link_index: int
    table: int = 0
    route_type: int = RTN_UNICAST
    protocol: int = 0
    scope: int = RT_SCOPE_UNIVERSE


@dataclass(frozen=True)
class Link:
    """A network interface."""

    name: str
    index: int
    hardware_addr: str = ""


@dataclass(frozen=True)
class ServicePort:
    """A port a load-balanced service exposes."""

    port: int
    protocol: str = "TCP"


@dataclass
class Service:
    """The parts of a load-balanced service that shape its filter rules."""

    name: str
    namespace: str = "default"
    ports: list = field(default_factory=list)
    annotations: dict = field(default_factory=dict)


def _family_of(addr):
    return FAMILY_V4 if addr.ip.version == 4 else FAMILY_V6


class NetlinkBackend:
    """Interfaces, addresses and routing tables held in memory."""

    def __init__(self):
        self._links = {}
        self._addresses = {}
        self._routes = []
        self._indexes = itertools.count(1)

    def add_link(self, name, hardware_addr=""):
        """Create an interface and return it."""
        if name in self._links:
            raise NetlinkError(f"link {name!r} already exists")
        link = Link(name=name, index=next(self._indexes), hardware_addr=hardware_addr)
        self._links[name] = link
        self._addresses[link.index] = []
        return link

    def link_by_name(self, name):
        """Return the interface called ``name``."""
        try:
            return self._links[name]
        except KeyError:
            raise NetlinkError("Link not found") from None

    def _addrs(self, link):
        try:
            return self._addresses[link.index]
        except KeyError:
            raise NetlinkError(f"no such device: {link.name}") from None

    def addr_replace(self, link, addr):
        """Assign ``addr`` to ``link``, replacing an equal address."""
        addrs = self._addrs(link)
        for pos, existing in enumerate(addrs):
            if existing == addr:
                addrs[pos] = replace(addr)
                return
        addrs.append(replace(addr))

    def addr_del(self, link, addr):
        """Remove ``addr`` from ``link``."""
        addrs = self._addrs(link)
        try:
            addrs.remove(addr)
        except ValueError:
            raise NetlinkError("cannot assign requested address") from None

    def addr_list(self, link, family):
        """Return the addresses of ``link`` (or every link when None) in ``family``."""
        if link is None:
            pools = list(self._addresses.values())
        else:
            pools = [self._addrs(link)]
        return [
            replace(addr)
            for pool in pools
            for addr in pool
            if family == FAMILY_ALL or _family_of(addr) == family
        ]

    def _find_route(self, route):
        for pos, existing in enumerate(self._routes):
            if existing.table == route.table and existing.dst == route.dst:
                return pos
        return None

    def route_add(self, route):
        """Add ``route``; a route to the same destination in the table is an error."""
        if self._find_route(route) is not None:
            raise NetlinkError("file exists")
        self._routes.append(route)

    def route_del(self, route):
        """Remove the route to ``route.dst`` from its table."""
        pos = self._find_route(route)
        if pos is None:
            raise NetlinkError("no such process")
        del self._routes[pos]

    def route_replace(self, route):
        """Add ``route`` or replace the route to the same destination."""
        pos = self._find_route(route)
        if pos is None:
            self._routes.append(route)
        else:
            self._routes[pos] = route

    def route_list(self, table, protocol, dst):
        """Return routes matching every filter given; table 0 or None matches any."""
        return [
            route
            for route in self._routes
            if (not table or route.table == table)
            and (protocol is None or route.protocol == protocol)
            and (dst is None or route.dst == dst)
        ]


def parse_addr(address):
    """Parse "ip/prefix" into an :class:`Addr`."""
    if "/" not in address:
        raise ValueError(f"invalid CIDR address: {address}")
    try:
        return Addr(ipaddress.ip_interface(address))
    except ValueError:
        raise ValueError(f"invalid CIDR address: {address}") from None


def _host_addr(ip):
    return parse_addr(ip + get_full_mask(ip))


def new_config(
    backend,
    address,
    iface,
    subnet="",
    is_ddns=False,
    table_id=0,
    table_type=0,
    routing_protocol=0,
    dns_mode="first",
    forward_method="",
    iptables_factory=None,
):
    """Return the networks for ``address``, an IP or a DNS name, on ``iface``."""
    try:
        link = backend.link_by_name(iface)
    except NetlinkError as err:
        raise AddressError(f"could not get link for interface '{iface}': {err}") from err

    def make(addr=None, dns_name=""):
        return Network(
            backend,
            link,
            addr,
            table_id=table_id,
            table_type=table_type,
            routing_protocol=routing_protocol,
            forward_method=forward_method,
            iptables_factory=iptables_factory,
            dns_name=dns_name,
            is_ddns=is_ddns,
        )

    if is_ip(address):
        try:
            addr = parse_addr(address + subnet) if subnet else _host_addr(address)
        except ValueError as err:
            raise AddressError(f"could not parse address '{address}': {err}") from err
        # Never put a global address on loopback.
        if iface == "lo":
            addr.scope = RT_SCOPE_HOST
        return [make(addr)]

    try:
        ips = lookup_host(address, dns_mode)
    except (LookupError, OSError):
        # A dynamic DNS name may have no address yet; it is obtained later over DHCP.
        if is_ddns:
            return [make(dns_name=address)]
        raise

    networks = []
    for ip in ips:
        addr = _host_addr(ip)
        # Let the address expire if the DNS entry changes; the DNS prober refreshes it.
        addr.valid_lft = DEFAULT_VALID_LFT
        networks.append(make(addr, dns_name=address))
    return networks


def list_routes(backend, table, protocol):
    """Return every route in ``table`` installed with ``protocol``."""
    try:
        return backend.route_list(table, protocol, None)
    except NetlinkError as err:
        raise AddressError(
            f"error getting routes from table [{table}] with protocol [{protocol}]: {err}"
        ) from err


def list_routes_by_dst(backend, table, dst):
    """Return every route in ``table`` to ``dst``."""
    try:
        return backend.route_list(table, None, dst)
    except NetlinkError as err:
        raise AddressError(
            f"error getting routes from table [{table}] with destination IP [{dst}]: {err}"
        ) from err


def garbage_collect(backend, adapter, address):
    """Remove ``address`` from ``adapter``; return True if it was there."""
    try:
        link = backend.link_by_name(adapter)
    except NetlinkError as err:
        raise AddressError(f"could not get link for interface '{adapter}': {err}") from err

    found = False
    for existing in backend.addr_list(link, FAMILY_ALL):
        if str(existing.ip) == address:
            found = True
            try:
                backend.addr_del(link, existing)
            except NetlinkError as err:
                raise AddressError(f"could not delete ip: {err}") from err
    return found


def _rule_option(spec, flag):
    for name, value in zip(spec, spec[1:]):
        if name == flag:
            return value
    return None


def _strip_host_mask(address):
    if address is None:
        return None
    for suffix in ("/32", "/128"):
        if address.endswith(suffix):
            return address[: -len(suffix)]
    return address


class Network:
    """One virtual IP on one interface."""

    def __init__(
        self,
        backend,
        link,
        address=None,
        table_id=0,
        table_type=0,
        routing_protocol=0,
        forward_method="",
        iptables_factory=None,
        dns_name="",
        is_ddns=False,
    ):
        self._lock = threading.Lock()
        self.backend = backend
        self.link = link
        self.address = address
        self.table_id = table_id
        self.table_type = table_type
        self.routing_protocol = routing_protocol
        self.forward_method = forward_method
        self.iptables_factory = iptables_factory
        self.dns_name = dns_name
        self.is_ddns = is_ddns
        self.ports = []
        self.service_name = ""
        self.ignore_security = False

    @property
    def ip(self):
        """The virtual IP as text."""
        with self._lock:
            return str(self.address.ip)

    @property
    def is_dns(self):
        """True when the virtual IP is named by DNS."""
        return self.dns_name != ""

    @property
    def ddns_host_name(self):
        """The host name requested over DHCP for dynamic DNS."""
        return get_host_name(self.dns_name)

    @property
    def interface(self):
        """The name of the interface."""
        return self.link.name

    def prepare_route(self):
        """Return the route that carries the virtual IP."""
        scope = RT_SCOPE_LINK if self.table_type == RTN_LOCAL else RT_SCOPE_UNIVERSE
        return Route(
            dst=self.address.network,
            link_index=self.link.index,
            table=self.table_id,
            route_type=self.table_type,
            protocol=self.routing_protocol,
            scope=scope,
        )

    def add_route(self):
        """Add the virtual IP's route."""
        self.backend.route_add(self.prepare_route())

    def delete_route(self):
        """Remove the virtual IP's route."""
        self.backend.route_del(self.prepare_route())

    def update_routes(self):
        """Take over boot-time routes to the virtual IP; return True if any changed."""
        target = self.prepare_route()
        try:
            routes = list_routes_by_dst(self.backend, self.table_id, target.dst)
        except AddressError as err:
            raise AddressError(f"error updating routes: {err}") from err

        updated = False
        for route in routes:
            if (
                route.protocol == RTPROT_BOOT
                and route.route_type in (target.route_type, RTN_UNICAST)
                and route.link_index == target.link_index
                and route.scope == target.scope
            ):
                try:
                    self.backend.route_replace(target)
                except NetlinkError as err:
                    raise AddressError(f"error replacing route: {err}") from err
                updated = True
        return updated

    def _service_security(self):
        return os.environ.get("enable_service_security") == "true" and not self.ignore_security

    def add_ip(self):
        """Assign the virtual IP and install its filter and masquerade rules."""
        try:
            self.backend.addr_replace(self.link, self.address)
        except NetlinkError as err:
            raise AddressError(f"could not add ip: {err}") from err

        if self._service_security():
            try:
                self._add_rules_to_limit_traffic_ports()
            except (AddressError, IPTablesError) as err:
                raise AddressError(
                    f"could not add iptables rules to limit traffic ports: {err}"
                ) from err

        if self.forward_method == "masquerade":
            try:
                self._masquerade(add=True)
            except (AddressError, IPTablesError) as err:
                raise AddressError(f"could not add iptables rules for masquerade: {err}") from err

    def delete_ip(self):
        """Remove the virtual IP and its rules; do nothing if it is not assigned."""
        try:
            present = self.is_set()
        except AddressError as err:
            raise AddressError(f"ip check in DeleteIP failed: {err}") from err
        if not present:
            return

        try:
            self.backend.addr_del(self.link, self.address)
        except NetlinkError as err:
            raise AddressError(f"could not delete ip: {err}") from err

        if self._service_security():
            try:
                self._remove_rules_to_limit_traffic_ports()
            except (AddressError, IPTablesError) as err:
                raise AddressError(
                    f"could not remove iptables rules to limit traffic ports: {err}"
                ) from err

        if self.forward_method == "masquerade":
            try:
                self._masquerade(add=False)
            except (AddressError, IPTablesError) as err:
                raise AddressError(f"could not remove iptables masquerade rules: {err}") from err

    def _iptables(self):
        if self.iptables_factory is None:
            raise AddressError("could not create iptables client")
        try:
            return self.iptables_factory()
        except (IPTablesError, OSError) as err:
            raise AddressError(f"could not create iptables client: {err}") from err

    def _common_rules(self, vip, comment):
        tag = ("-m", "comment", "--comment", comment)
        dhcp = ("-d", vip, "-p", "UDP", "--dport", DHCP_CLIENT_PORT, *tag, "-j", "ACCEPT")
        drop = ("-d", vip, *tag, "-j", "DROP")
        return dhcp, drop

    def _port_rule(self, vip, port, comment):
        return ("-d", vip, "-p", port.protocol, "--dport", str(port.port),
                "-m", "comment", "--comment", comment, "-j", "ACCEPT")

    def _add_rules_to_limit_traffic_ports(self):
        ipt = self._iptables()
        vip = str(self.address.ip)
        comment = IPTABLES_COMMENT.format(self.service_name)

        dhcp, drop = self._common_rules(vip, comment)
        try:
            ipt.insert_unique("filter", "INPUT", 1, *dhcp)
        except IPTablesError as err:
            raise AddressError(
                f"could not add iptables rule to accept the traffic to VIP {vip} "
                f"for DHCP client port: {err}"
            ) from err
        try:
            ipt.insert_unique("filter", "INPUT", 2, *drop)
        except IPTablesError as err:
            raise AddressError(
                f"could not add iptables rule to drop the traffic to VIP {vip}: {err}"
            ) from err

        log.debug("add iptables rules, vip: %s, ports: %s", vip, self.ports)
        self._sync_service_port_rules(ipt, vip, comment)

    def _sync_service_port_rules(self, ipt, vip, comment):
        present = [False] * len(self.ports)

        for line in ipt.list("filter", "INPUT"):
            tokens = shlex.split(line)
            if not tokens or tokens[0] != "-A":
                continue
            spec = tokens[2:]
            if _rule_option(spec, "--comment") != comment:
                continue
            if _strip_host_mask(_rule_option(spec, "-d")) != vip:
                ipt.delete("filter", "INPUT", *spec)
                continue

            protocol = _rule_option(spec, "-p")
            port = _rule_option(spec, "--dport")
            if protocol is None or port is None:
                continue  # the common DROP rule
            if protocol == "UDP" and port == DHCP_CLIENT_PORT:
                continue

            keep = False
            for pos, service_port in enumerate(self.ports):
                if service_port.protocol == protocol and str(service_port.port) == port:
                    keep = True
                    present[pos] = True
            if not keep:
                ipt.delete("filter", "INPUT", *spec)

        for service_port, exists in zip(self.ports, present):
            if exists:
                continue
            try:
                ipt.insert_unique("filter", "INPUT", 1, *self._port_rule(vip, service_port, comment))
            except IPTablesError as err:
                raise AddressError(
                    f"could not add iptables rule to accept the traffic to VIP {vip} "
                    f"for allowed port {service_port.port}: {err}"
                ) from err

    def _remove_rules_to_limit_traffic_ports(self):
        ipt = self._iptables()
        vip = str(self.address.ip)
        comment = IPTABLES_COMMENT.format(self.service_name)

        for rule in self._common_rules(vip, comment):
            ipt.delete_if_exists("filter", "INPUT", *rule)

        log.debug("remove iptables rules, vip: %s, ports: %s", vip, self.ports)
        for service_port in self.ports:
            ipt.delete_if_exists("filter", "INPUT", *self._port_rule(vip, service_port, comment))

    def _masquerade(self, add):
        ipt = self._iptables()
        vip = str(self.address.ip)
        comment = IPTABLES_COMMENT.format(vip)
        rule = ("-m", "ipvs", "--vaddr", vip, "-j", "MASQUERADE", "-m", "comment", "--comment", comment)
        try:
            if add:
                ipt.insert_unique("nat", "POSTROUTING", 1, *rule)
            else:
                ipt.delete_if_exists("nat", "POSTROUTING", *rule)
        except IPTablesError as err:
            verb = "add" if add else "del"
            raise AddressError(f"could not {verb} masquerade rule for VIP {vip}: {err}") from err

    def is_dadfail(self):
        """True if the virtual IP is IPv6 and duplicate address detection failed."""
        if self.address is None or not is_ipv6(str(self.address.ip)):
            return False
        try:
            addresses = self.backend.addr_list(self.link, FAMILY_V6)
        except NetlinkError:
            return False
        return any(
            addr.ip == self.address.ip and addr.flags & IFA_F_DADFAILED for addr in addresses
        )

    def is_set(self):
        """True if the virtual IP is assigned to the interface."""
        if self.address is None:
            return False
        try:
            addresses = self.backend.addr_list(self.link, FAMILY_ALL)
        except NetlinkError as err:
            raise AddressError(f"could not list addresses: {err}") from err
        return any(addr == self.address for addr in addresses)

    def set_ip(self, ip):
        """Change the virtual IP."""
        with self._lock:
            addr = _host_addr(ip)
            if self.address is not None and self.is_dns:
                addr.valid_lft = DEFAULT_VALID_LFT
            self.address = addr

    def set_service_ports(self, service):
        """Take the ports, name and security setting from ``service``."""
        with self._lock:
            self.ports = list(service.ports)
            self.service_name = f"{service.namespace}/{service.name}"
            self.ignore_security = (
                service.annotations.get(IGNORE_SERVICE_SECURITY_ANNOTATION) == "true"
            )