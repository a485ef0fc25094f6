"""Virtual IP helpers: addresses and routes, ARP/NDP announcements, DNS updates and egress rules."""

__version__ = "0.8.2"

__all__ = ["address", "arp", "const", "dns", "egress", "ndp", "util"]