"""Keeps a DNS-named virtual IP in step with what the name resolves to."""

from __future__ import annotations

import logging
import threading

from .util import is_ipv6, lookup_host

log = logging.getLogger(__name__)

DEFAULT_INTERVAL = 3.0


class IPUpdater:
    """Periodically re-resolves a virtual IP's DNS name and re-applies the address.

    ``vip`` needs ``ip`` and ``dns_name`` attributes and ``set_ip`` and
    ``add_ip`` methods.
    """

    def __init__(self, vip, interval=DEFAULT_INTERVAL):
        self.vip = vip
        self.interval = interval

    def update_once(self):
        """Resolve once, apply the first address and return it.

        When the name cannot be resolved the current address is renewed.
        """
        mode = "ipv6" if is_ipv6(self.vip.ip) else "ipv4"
        try:
            ips = lookup_host(self.vip.dns_name, mode)
        except (LookupError, OSError) as err:
            log.warning("cannot lookup %s: %s", self.vip.dns_name, err)
            ips = [self.vip.ip]

        ip = ips[0]
        log.info("setting %s as an IP", ips)
        try:
            self.vip.set_ip(ip)
        except Exception as err:  # keep the updater running whatever the address layer raises
            log.error("setting %s as an IP: %s", ips, err)

        try:
            self.vip.add_ip()
        except Exception as err:  # keep the updater running whatever the address layer raises
            log.error("error adding virtual IP: %s", err)
        return ip

    def _loop(self, stop_event):
        while not stop_event.is_set():
            self.update_once()
            stop_event.wait(self.interval)
        log.info("stop ipUpdater")

    def run(self, stop_event):
        """Start updating in a daemon thread until ``stop_event`` is set; return the thread."""
        thread = threading.Thread(target=self._loop, args=(stop_event,), daemon=True)
        thread.start()
        return thread