"""Traffic manager that programs the kernel through nftables."""

from __future__ import annotations

import enum
import logging
import shutil
import subprocess
import threading
from collections.abc import Callable
from typing import Optional, Union

from trafficmngr.base import IPv4Like, IPv6Like, Lease, TrafficManager, network_str

log = logging.getLogger(__name__)

IPV4_TABLE = "flannel-ipv4"
IPV6_TABLE = "flannel-ipv6"
FORWARD_CHAIN = "forward"
POSTROUTING_CHAIN = "postrtg"
MASQUERADE_TEST_CHAIN = "masqueradeTest"

FILTER_TYPE = "filter"
NAT_TYPE = "nat"
FORWARD_HOOK = "forward"
POSTROUTING_HOOK = "postrouting"
FILTER_PRIORITY = "filter"
SNAT_PRIORITY = "srcnat"


class Family(str, enum.Enum):
    """nftables address family, as written in nft rules."""

    IPV4 = "ip"
    IPV6 = "ip6"

    def __str__(self) -> str:
        return self.value


def _concat(*args: Union[str, Family]) -> str:
    return " ".join(str(arg) for arg in args if str(arg))


def _quote(text: str) -> str:
    return '"' + text.replace('"', '\\"') + '"'


class NFTTransaction:
    """A batch of nft commands for one table, applied atomically."""

    def __init__(self, family: Family, table: str) -> None:
        self.family = family
        self.table = table
        self._lines: list[str] = []

    def __len__(self) -> int:
        return len(self._lines)

    @property
    def lines(self) -> list[str]:
        """The commands queued so far."""
        return list(self._lines)

    def _target(self) -> str:
        return f"{self.family} {self.table}"

    def add_table(self, comment: Optional[str] = None) -> None:
        """Create the table if it does not exist."""
        line = f"add table {self._target()}"
        if comment:
            line += f" {{ comment {_quote(comment)} ; }}"
        self._lines.append(line)

    def delete_table(self) -> None:
        """Delete the table and everything in it."""
        self._lines.append(f"delete table {self._target()}")

    def add_chain(
        self,
        name: str,
        comment: Optional[str] = None,
        chain_type: Optional[str] = None,
        hook: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> None:
        """Create a chain; with type, hook and priority it is a base chain."""
        body: list[str] = []
        if chain_type and hook and priority:
            body.append(f"type {chain_type} hook {hook} priority {priority} ;")
        elif chain_type or hook or priority:
            raise ValueError("a base chain needs a type, a hook and a priority")
        if comment:
            body.append(f"comment {_quote(comment)} ;")
        line = f"add chain {self._target()} {name}"
        if body:
            line += " { " + " ".join(body) + " }"
        self._lines.append(line)

    def flush_chain(self, name: str) -> None:
        """Remove every rule from a chain."""
        self._lines.append(f"flush chain {self._target()} {name}")

    def add_rule(self, chain: str, *args: Union[str, Family]) -> None:
        """Append a rule whose words are ``args`` joined by spaces."""
        rule = _concat(*args)
        if not rule:
            raise ValueError("empty rule")
        self._lines.append(f"add rule {self._target()} {chain} {rule}")

    def script(self) -> str:
        """The transaction as input for ``nft -f``."""
        return "".join(line + "\n" for line in self._lines)


class NFTables:
    """Runs transactions for one table through the nft binary."""

    def __init__(self, family: Family, table: str) -> None:
        self.family = family
        self.table = table
        path = shutil.which("nft")
        if path is None:
            raise FileNotFoundError("executable file not found in $PATH: nft")
        self.path = path

    def new_transaction(self) -> NFTTransaction:
        """An empty transaction for this table."""
        return NFTTransaction(self.family, self.table)

    def _execute(self, args: list[str], transaction: NFTTransaction) -> None:
        if not len(transaction):
            return
        try:
            result = subprocess.run(args, input=transaction.script(), capture_output=True, text=True)
        except OSError as exc:
            raise RuntimeError(f"unable to run nft: {exc}") from exc
        if result.returncode != 0:
            raise RuntimeError(f"nft exited with status {result.returncode}: {result.stderr.strip()}")

    def run(self, transaction: NFTTransaction) -> None:
        """Apply the transaction."""
        self._execute([self.path, "-f", "-"], transaction)

    def check(self, transaction: NFTTransaction) -> None:
        """Validate the transaction without applying it."""
        self._execute([self.path, "--check", "-f", "-"], transaction)


NFTablesFactory = Callable[[Family, str], NFTables]


class NFTablesManager(TrafficManager):
    """Installs forwarding and masquerading rules in flannel's own nftables tables."""

    def __init__(self, nftables_factory: NFTablesFactory = NFTables) -> None:
        self._factory = nftables_factory
        self.nftv4: Optional[NFTables] = None
        self.nftv6: Optional[NFTables] = None

    def _init_table(self, family: Family, name: str) -> NFTables:
        try:
            nft = self._factory(family, name)
        except Exception as exc:
            raise RuntimeError(f"no nftables support: {exc}") from exc
        tx = nft.new_transaction()
        tx.add_table(comment=f"rules for {name}")
        try:
            nft.run(tx)
        except Exception as exc:
            raise RuntimeError(f"nftables: couldn't initialise table {name}: {exc}") from exc
        return nft

    def init(self) -> None:
        """Create the IPv4 and IPv6 tables."""
        log.info("Starting flannel in nftables mode...")
        self.nftv4 = self._init_table(Family.IPV4, IPV4_TABLE)
        self.nftv6 = self._init_table(Family.IPV6, IPV6_TABLE)

    def _require(self, nft: Optional[NFTables]) -> NFTables:
        if nft is None:
            raise RuntimeError("nftables manager is not initialised")
        return nft

    def setup_and_ensure_forward_rules(
        self,
        ipv4_network: Optional[IPv4Like],
        ipv6_network: Optional[IPv6Like],
        resync_period: int,
        stop: Optional[threading.Event] = None,
    ) -> None:
        """Accept forwarded traffic to and from the overlay ranges; failures are logged.

        Never give the forward chain a drop policy: that cuts the node off.
        """
        for network, nft, match, suffix in (
            (ipv4_network, self.nftv4, "ip", ""),
            (ipv6_network, self.nftv6, "ip6", " (ipv6)"),
        ):
            if network is None:
                continue
            log.info("Changing default FORWARD chain policy to ACCEPT%s", suffix)
            nft = self._require(nft)
            tx = nft.new_transaction()
            tx.add_chain(
                FORWARD_CHAIN,
                comment="chain to accept flannel traffic",
                chain_type=FILTER_TYPE,
                hook=FORWARD_HOOK,
                priority=FILTER_PRIORITY,
            )
            tx.flush_chain(FORWARD_CHAIN)
            cidr = network_str(network)
            tx.add_rule(FORWARD_CHAIN, f"{match} saddr", cidr, "accept")
            tx.add_rule(FORWARD_CHAIN, f"{match} daddr", cidr, "accept")
            try:
                nft.run(tx)
            except Exception as exc:
                log.error("nftables: couldn't setup forward rules%s: %s", suffix, exc)

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
        stop: Optional[threading.Event] = None,
    ) -> None:
        """Masquerade outgoing overlay traffic.

        The chain is flushed before the rules are added, so old rules never
        need to be recycled.
        """
        for network, subnet, nft, family in (
            (ipv4_network, current_lease.subnet, self.nftv4, Family.IPV4),
            (ipv6_network, current_lease.ipv6_subnet, self.nftv6, Family.IPV6),
        ):
            if network is None:
                continue
            label = "ipv6" if family is Family.IPV6 else "ipv4"
            log.info("nftables: setting up masking rules (%s)", label)
            nft = self._require(nft)
            tx = nft.new_transaction()
            tx.add_chain(
                POSTROUTING_CHAIN,
                comment="chain to manage traffic masquerading by flannel",
                chain_type=NAT_TYPE,
                hook=POSTROUTING_HOOK,
                priority=SNAT_PRIORITY,
            )
            tx.flush_chain(POSTROUTING_CHAIN)
            self.add_masq_rules(tx, network_str(network), network_str(subnet), family)
            try:
                nft.run(tx)
            except Exception as exc:
                raise RuntimeError(f"nftables: couldn't setup masq rules: {exc}") from exc

    def add_masq_rules(
        self,
        transaction: NFTTransaction,
        cluster_cidr: str,
        pod_cidr: str,
        family: Family,
    ) -> None:
        """Queue the masquerading rules on ``transaction``."""
        masquerade = "masquerade fully-random" if self.check_random_fully() else "masquerade"
        multicast = "ff00::/8" if family is Family.IPV6 else "224.0.0.0/4"
        chain = POSTROUTING_CHAIN
        # Leave traffic marked by kube-proxy alone to avoid double NAT.
        transaction.add_rule(chain, "meta mark", "0x4000", "return")
        # No NAT within the overlay network.
        transaction.add_rule(chain, family, "saddr", pod_cidr, family, "daddr", cluster_cidr, "return")
        transaction.add_rule(chain, family, "saddr", cluster_cidr, family, "daddr", pod_cidr, "return")
        # No masquerade for external traffic arriving from the node owning the pod address.
        transaction.add_rule(chain, family, "saddr", "!=", pod_cidr, family, "daddr", cluster_cidr, "return")
        # NAT unless it is multicast traffic.
        transaction.add_rule(chain, family, "saddr", cluster_cidr, family, "daddr", "!=", multicast, masquerade)
        # Masquerade anything headed towards the overlay from the host.
        transaction.add_rule(chain, family, "saddr", "!=", cluster_cidr, family, "daddr", cluster_cidr, masquerade)

    def check_random_fully(self) -> bool:
        """True when the kernel accepts ``masquerade fully-random``."""
        nft = self._require(self.nftv4)
        tx = nft.new_transaction()
        tx.add_chain(
            MASQUERADE_TEST_CHAIN,
            comment="chain to test if masquerade random fully is supported",
            chain_type=NAT_TYPE,
            hook=POSTROUTING_HOOK,
            priority=SNAT_PRIORITY,
        )
        tx.flush_chain(MASQUERADE_TEST_CHAIN)
        tx.add_rule(MASQUERADE_TEST_CHAIN, "ip saddr", "!=", "127.0.0.1", "masquerade fully-random")
        try:
            nft.check(tx)
        except Exception:
            log.warning("nftables: random fully unsupported")
            return False
        return True

    def clean_up(self) -> None:
        """Delete the flannel tables; failures are logged."""
        log.info("Cleaning-up nftables rules...")
        for family, name, label in (
            (Family.IPV4, IPV4_TABLE, "nftables"),
            (Family.IPV6, IPV6_TABLE, "nftables (ipv6)"),
        ):
            try:
                nft = self._factory(family, name)
                tx = nft.new_transaction()
                tx.delete_table()
                nft.run(tx)
            except Exception as exc:
                log.debug("%s: couldn't delete table: %s", label, exc)