"""Common types shared by the iptables and nftables traffic managers."""

from __future__ import annotations

import abc
import ipaddress
import threading
from dataclasses import dataclass, field
from typing import Optional, Union

KUBE_PROXY_MARK = "0x4000/0x4000"

IPv4Like = Union[ipaddress.IPv4Network, ipaddress.IPv4Interface]
IPv6Like = Union[ipaddress.IPv6Network, ipaddress.IPv6Interface]
NetworkLike = Union[IPv4Like, IPv6Like, str]


class UnimplementedError(Exception):
    """Raised or reported when a platform does not support an operation."""

    def __init__(self, message: str = "unimplemented") -> None:
        super().__init__(message)


@dataclass
class IPTablesRule:
    """One iptables rule: table, action (such as ``-A``), chain and rule spec."""

    table: str
    action: str
    chain: str
    rulespec: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.rulespec = list(self.rulespec)


@dataclass
class Lease:
    """The subnets leased to this node; ``None`` means no lease for that family."""

    subnet: Optional[IPv4Like] = None
    ipv6_subnet: Optional[IPv6Like] = None


def network_str(network: Optional[NetworkLike]) -> str:
    """Return the CIDR text of a network, keeping host bits; empty for ``None``."""
    if network is None:
        return ""
    return str(network)


class TrafficManager(abc.ABC):
    """Installs the kernel rules that forward and masquerade overlay traffic.

    ``stop`` arguments are :class:`threading.Event` objects; background
    resync loops end once the event is set.
    """

    @abc.abstractmethod
    def init(self) -> None:
        """Prepare the manager for use."""

    @abc.abstractmethod
    def clean_up(self) -> None:
        """Remove the tables and rules this manager created."""

    @abc.abstractmethod
    def setup_and_ensure_forward_rules(
        self,
        ipv4_network: Optional[IPv4Like],
        ipv6_network: Optional[IPv6Like],
        resync_period: int,
        stop: threading.Event,
    ) -> None:
        """Accept forwarded traffic to and from the overlay network ranges."""

    @abc.abstractmethod
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
        """Masquerade traffic leaving the overlay network."""