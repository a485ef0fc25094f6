# vipnet

Helpers for managing a virtual IP (VIP) on a Linux host: modelling the
address on an interface and its route in a routing table, announcing it with
gratuitous ARP or unsolicited IPv6 neighbour advertisements, following a DNS
name as its address changes, and building the mangle/SNAT rules that make pod
egress traffic leave from the VIP.

No third-party libraries are required. Sending ARP and NDP packets needs
Linux and the privileges to open raw sockets; everything else runs anywhere.

## Installation

```
pip install vipnet
```

## Modules

- `vipnet.const` – `IPProtocol`, an `IntEnum` of the IANA IP protocol
  numbers, with `IPProtocol.from_name("tcp")` (case, dashes and underscores
  are ignored; unknown names raise `ValueError`).
- `vipnet.util` – address helpers: `is_ip`, `is_ipv4`, `is_ipv6`,
  `get_full_mask` (`"/32"` or `"/128"`), `get_host_name` (first label of a
  name), `get_ips` (split a comma separated list), `generate_mac` (a random
  MAC under the `00:00:6C` prefix) and `lookup_host(dns_name, dns_mode)`. With
  mode `"ipv4"`, `"ipv6"` or `"dual"` it returns the first address of each
  requested family; any other mode returns just the first answer. Failures
  raise `LookupError`.
- `vipnet.arp` – `ArpMessage` (with `to_bytes()`), `parse_mac`,
  `gratuitous_arp(ip, mac, request)`, `send_arp(iface_name, message)` and
  `ArpAnnouncer`, which alternates between gratuitous ARP replies and
  requests on each call to `message()` or `send()`.
- `vipnet.ndp` – `neighbor_advertisement(target, hardware_addr, gratuitous)`
  builds an ICMPv6 neighbour advertisement; `NdpResponder` is a context
  manager bound to an interface's link-local address whose
  `send_gratuitous(address)` multicasts an advertisement to all nodes.
- `vipnet.egress` – `Egress` creates and removes the mangle chain, marking,
  RETURN and SNAT rules of one namespace, tagged with a per-namespace comment.
  It works through an `IPTablesClient`, a rule set kept in memory by table
  and chain whose `list()` renders chains in the `iptables -S` format.
  `parse_port_protocols` reads `"tcp:80,udp:53"` style annotations, and
  `delete_existing_sessions` drops matching `Session` entries from a
  `ConnTracker`, returning the ones removed.
- `vipnet.dns` – `IPUpdater` re-resolves a VIP's DNS name with
  `update_once()`, or repeatedly in a daemon thread with `run(stop_event)`,
  and re-applies the address (renewing the current one if lookup fails).
- `vipnet.address` – `Network` (one VIP on one interface: `add_ip`,
  `delete_ip`, `is_set`, `is_dadfail`, `set_ip`, `set_service_ports`,
  `prepare_route`, `add_route`, `delete_route`, `update_routes`),
  `new_config`, `parse_addr`, `list_routes`, `list_routes_by_dst` and
  `garbage_collect`. These work against a `NetlinkBackend`, which holds
  interfaces, addresses and routes in memory. When the
  `enable_service_security` environment variable is `"true"`, or the forward
  method is `"masquerade"`, filter rules are written to the client returned
  by the `iptables_factory` you pass in.

## Examples

```python
from vipnet.util import get_full_mask, get_ips

get_full_mask("192.168.0.1")        # "/32"
get_ips("10.0.0.1, fd00::1")        # ["10.0.0.1", "fd00::1"]
```

```python
from vipnet.arp import ArpAnnouncer

announcer = ArpAnnouncer()
message = announcer.message("192.168.0.1", "02:00:00:00:00:01")  # a reply, then a request
announcer.send("192.168.0.1", "eth0")
```

```python
from vipnet.ndp import NdpResponder

with NdpResponder("eth0") as responder:
    responder.send_gratuitous("fd00::10")
```

```python
from vipnet.egress import Egress, IPTablesClient

client = IPTablesClient()
egress = Egress(client, "default")
egress.insert_source_nat("192.168.0.1", "10.244.1.5")
print(client.list("nat", "POSTROUTING"))
```

```python
from vipnet.address import NetlinkBackend, new_config

backend = NetlinkBackend()
backend.add_link("eth0")
network = new_config(backend, "192.168.0.10", "eth0")[0]
network.add_ip()
network.is_set()                    # True
network.add_route()
```

## What it does not do

The packet filter (`IPTablesClient`), connection tracking table
(`ConnTracker`) and interface/route store (`NetlinkBackend`) are kept in
memory; the package does not program the kernel's firewall, conntrack or
netlink state. There is no DHCP client or dynamic-DNS lease handling, no
WireGuard setup and no command-line program.

## Running the tests

```
pip install -e ".[test]"
pytest
```