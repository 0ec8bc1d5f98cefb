"""Traffic manager that programs the kernel through iptables and ip6tables."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from typing import Optional

from trafficmngr.base import IPTablesRule, IPv4Like, IPv6Like, Lease, TrafficManager, network_str
from trafficmngr.iptables_cmd import IPTables
from trafficmngr.iptables_restore import IPTablesRestore, Protocol, new_iptables_restore
from trafficmngr.iptables_rules import (
    FORWARD_CHAIN,
    POSTROUTING_CHAIN,
    bootstrap,
    ensure_rules,
    forward_rules,
    masq_ip6_rules,
    masq_rules,
    teardown_rules,
)

log = logging.getLogger(__name__)

IPTablesFactory = Callable[[Protocol], IPTables]
RestoreFactory = Callable[[Protocol], IPTablesRestore]

_TOOL_LABELS = {Protocol.IPV4: "IPTables", Protocol.IPV6: "IP6Tables"}


class IPTablesManager(TrafficManager):
    """Installs forwarding and masquerading rules and keeps them in place.

    The factories build the iptables and iptables-restore wrappers for a
    protocol; they default to the real command-line tools.
    """

    def __init__(
        self,
        iptables_factory: IPTablesFactory = IPTables,
        restore_factory: RestoreFactory = new_iptables_restore,
    ) -> None:
        self._iptables_factory = iptables_factory
        self._restore_factory = restore_factory
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self.ipv4_rules: list[IPTablesRule] = []
        self.ipv6_rules: list[IPTablesRule] = []

    def init(self) -> None:
        """Reset the record of installed rules."""
        log.info("Starting flannel in iptables mode...")
        with self._lock:
            self.ipv4_rules = []
            self.ipv6_rules = []

    def clean_up(self) -> None:
        """Flush and delete the flannel chains for both protocols."""
        log.info("Cleaning-up iptables rules...")
        for protocol, label, binary in (
            (Protocol.IPV4, "IPv4", "iptables"),
            (Protocol.IPV6, "IPv6", "ip6tables"),
        ):
            try:
                ipt = self._iptables_factory(protocol)
            except Exception as exc:
                raise RuntimeError(
                    f"failed to setup IPTables. {binary} binary was not found: {exc}"
                ) from exc
            for chain in (POSTROUTING_CHAIN, FORWARD_CHAIN):
                try:
                    ipt.clear_and_delete_chain("nat", chain)
                except Exception as exc:
                    log.debug("could not clean-up %s (%s): %s", chain, label, exc)

    def setup_and_ensure_forward_rules(
        self,
        ipv4_network: Optional[IPv4Like],
        ipv6_network: Optional[IPv6Like],
        resync_period: int,
        stop: threading.Event,
    ) -> None:
        """Accept forwarded overlay traffic and keep the rules in place in the background."""
        if ipv4_network is not None:
            log.info("Changing default FORWARD chain policy to ACCEPT")
            self.create_ip4_chain("filter", FORWARD_CHAIN)
            self._start(Protocol.IPV4, forward_rules(network_str(ipv4_network)), resync_period, stop)
        if ipv6_network is not None:
            log.info("IPv6: Changing default FORWARD chain policy to ACCEPT")
            self.create_ip6_chain("filter", FORWARD_CHAIN)
            self._start(Protocol.IPV6, forward_rules(network_str(ipv6_network)), resync_period, stop)

    def setup_and_ensure_masq_rules(
        self,
        ipv4_network: Optional[IPv4Like],
        prev_subnet: Optional[IPv4Like],
        prev_network: Optional[IPv4Like],
        ipv6_network: Optional[IPv6Like],
        prev_ipv6_subnet: Optional[IPv6Like],
        prev_ipv6_network: Optional[IPv6Like],
        current_lease: Lease,
        resync_period: int,
        stop: threading.Event,
    ) -> None:
        """Masquerade outgoing overlay traffic, first removing rules for an old network or subnet."""
        if ipv4_network is not None:
            # Recycle old rules only when the network or the leased subnet changed.
            if not (ipv4_network == prev_network and prev_subnet == current_lease.subnet):
                log.info(
                    "Current network or subnet (%s, %s) is not equal to previous one (%s, %s), "
                    "trying to recycle old iptables rules",
                    ipv4_network, current_lease.subnet, prev_network, prev_subnet,
                )
                old = masq_rules(prev_network, Lease(subnet=prev_subnet), self._random_fully(Protocol.IPV4))
                self._delete_rules(Protocol.IPV4, old)
            log.info("Setting up masking rules")
            self.create_ip4_chain("nat", POSTROUTING_CHAIN)
            rules = masq_rules(ipv4_network, current_lease, self._random_fully(Protocol.IPV4))
            self._start(Protocol.IPV4, rules, resync_period, stop)
        if ipv6_network is not None:
            if not (ipv6_network == prev_ipv6_network and prev_ipv6_subnet == current_lease.ipv6_subnet):
                log.info(
                    "Current network or subnet (%s, %s) is not equal to previous one (%s, %s), "
                    "trying to recycle old iptables rules",
                    ipv6_network, current_lease.ipv6_subnet, prev_ipv6_network, prev_ipv6_subnet,
                )
                old = masq_ip6_rules(
                    prev_ipv6_network, Lease(ipv6_subnet=prev_ipv6_subnet), self._random_fully(Protocol.IPV6)
                )
                self._delete_rules(Protocol.IPV6, old)
            log.info("Setting up masking rules for IPv6")
            self.create_ip6_chain("nat", POSTROUTING_CHAIN)
            rules = masq_ip6_rules(ipv6_network, current_lease, self._random_fully(Protocol.IPV6))
            self._start(Protocol.IPV6, rules, resync_period, stop)

    def create_ip4_chain(self, table: str, chain: str) -> None:
        """Create or flush an IPv4 chain; failures are logged."""
        self._create_chain(Protocol.IPV4, table, chain)

    def create_ip6_chain(self, table: str, chain: str) -> None:
        """Create or flush an IPv6 chain; failures are logged."""
        self._create_chain(Protocol.IPV6, table, chain)

    def _create_chain(self, protocol: Protocol, table: str, chain: str) -> None:
        label = _TOOL_LABELS[protocol]
        try:
            ipt = self._iptables_factory(protocol)
        except Exception as exc:
            log.error("Failed to setup %s. iptables binary was not found: %s", label, exc)
            return
        try:
            ipt.clear_chain(table, chain)
        except Exception as exc:
            log.error("Failed to setup %s. Error on creating the chain: %s", label, exc)

    def _random_fully(self, protocol: Protocol) -> bool:
        try:
            return bool(self._iptables_factory(protocol).has_random_fully())
        except Exception:
            return False

    def _delete_rules(self, protocol: Protocol, rules: Sequence[IPTablesRule]) -> None:
        label = _TOOL_LABELS[protocol]
        try:
            ipt = self._iptables_factory(protocol)
        except Exception as exc:
            log.error("Failed to setup %s. iptables binary was not found: %s", label, exc)
            raise
        try:
            restore = self._restore_factory(protocol)
        except Exception as exc:
            log.error("Failed to setup iptables-restore: %s", exc)
            raise
        try:
            teardown_rules(ipt, restore, rules)
        except Exception as exc:
            log.error("Failed to teardown iptables: %s", exc)
            raise

    def _start(
        self,
        protocol: Protocol,
        rules: list[IPTablesRule],
        resync_period: int,
        stop: threading.Event,
    ) -> None:
        worker = threading.Thread(
            target=self._setup_and_ensure,
            args=(protocol, rules, resync_period, stop),
            name=f"iptables-{protocol.value}-resync",
            daemon=True,
        )
        self._threads.append(worker)
        worker.start()

    def _setup_and_ensure(
        self,
        protocol: Protocol,
        rules: list[IPTablesRule],
        resync_period: int,
        stop: threading.Event,
    ) -> None:
        label = _TOOL_LABELS[protocol]
        try:
            ipt = self._iptables_factory(protocol)
        except Exception as exc:
            log.error("Failed to setup %s. iptables binary was not found: %s", label, exc)
            return
        try:
            restore = self._restore_factory(protocol)
        except Exception as exc:
            log.error("Failed to setup %s. iptables-restore binary was not found: %s", label, exc)
            return
        try:
            bootstrap(ipt, restore, rules)
        except Exception as exc:
            log.error("Failed to bootstrap IPTables: %s", exc)
        with self._lock:
            target = self.ipv6_rules if protocol is Protocol.IPV6 else self.ipv4_rules
            target.extend(rules)
        while not stop.wait(resync_period):
            try:
                ensure_rules(ipt, restore, rules)
            except Exception as exc:
                log.error("Failed to ensure iptables rules: %s", exc)