"""Build, check, apply and remove the iptables rules of the overlay network."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Optional, Protocol as TypingProtocol

from trafficmngr.base import KUBE_PROXY_MARK, IPTablesRule, IPv4Like, IPv6Like, Lease, network_str

log = logging.getLogger(__name__)

FORWARD_CHAIN = "FLANNEL-FWD"
POSTROUTING_CHAIN = "FLANNEL-POSTRTG"

_MASQ_COMMENT = ["-m", "comment", "--comment", "flanneld masq"]
_FORWARD_COMMENT = ["-m", "comment", "--comment", "flanneld forward"]

RestoreRules = dict[str, list[list[str]]]


class RuleTable(TypingProtocol):
    """The iptables operations the rule helpers rely on."""

    def chain_exists(self, table: str, chain: str) -> bool: ...

    def clear_chain(self, table: str, chain: str) -> None: ...

    def exists(self, table: str, chain: str, *args: str) -> bool: ...


class RestoreRunner(TypingProtocol):
    """Anything that applies iptables-restore rules without flushing."""

    def apply_without_flush(self, rules: RestoreRules) -> None: ...


def _masq(cluster_cidr: str, pod_cidr: str, multicast_cidr: str, random_fully: bool) -> list[IPTablesRule]:
    masquerade = ["-j", "MASQUERADE", *(["--random-fully"] if random_fully else [])]
    ret = ["-j", "RETURN"]

    def rule(chain: str, *spec: str) -> IPTablesRule:
        return IPTablesRule("nat", "-A", chain, list(spec))

    return [
        # Run the flannel rules before any other rule on the node.
        rule("POSTROUTING", *_MASQ_COMMENT, "-j", POSTROUTING_CHAIN),
        # Leave traffic marked by kube-proxy alone to avoid double NAT.
        rule(POSTROUTING_CHAIN, "-m", "mark", "--mark", KUBE_PROXY_MARK, *_MASQ_COMMENT, *ret),
        # No NAT within the overlay network.
        rule(POSTROUTING_CHAIN, "-s", pod_cidr, "-d", cluster_cidr, *_MASQ_COMMENT, *ret),
        rule(POSTROUTING_CHAIN, "-s", cluster_cidr, "-d", pod_cidr, *_MASQ_COMMENT, *ret),
        # No masquerade for external traffic arriving from the node owning the pod address.
        rule(POSTROUTING_CHAIN, "!", "-s", cluster_cidr, "-d", pod_cidr, *_MASQ_COMMENT, *ret),
        # NAT unless it is multicast traffic.
        rule(POSTROUTING_CHAIN, "-s", cluster_cidr, "!", "-d", multicast_cidr, *_MASQ_COMMENT, *masquerade),
        # Masquerade anything headed towards the overlay from the host.
        rule(POSTROUTING_CHAIN, "!", "-s", cluster_cidr, "-d", cluster_cidr, *_MASQ_COMMENT, *masquerade),
    ]


def masq_rules(cluster_network: Optional[IPv4Like], lease: Lease, random_fully: bool) -> list[IPTablesRule]:
    """IPv4 masquerading rules for the cluster network and the leased subnet."""
    return _masq(network_str(cluster_network), network_str(lease.subnet), "224.0.0.0/4", random_fully)


def masq_ip6_rules(cluster_network: Optional[IPv6Like], lease: Lease, random_fully: bool) -> list[IPTablesRule]:
    """IPv6 masquerading rules for the cluster network and the leased subnet."""
    return _masq(network_str(cluster_network), network_str(lease.ipv6_subnet), "ff00::/8", random_fully)


def forward_rules(flannel_network: str) -> list[IPTablesRule]:
    """Rules accepting forwarded traffic to or from the overlay network."""
    return [
        IPTablesRule("filter", "-A", "FORWARD", [*_FORWARD_COMMENT, "-j", FORWARD_CHAIN]),
        IPTablesRule("filter", "-A", FORWARD_CHAIN, ["-s", flannel_network, *_FORWARD_COMMENT, "-j", "ACCEPT"]),
        IPTablesRule("filter", "-A", FORWARD_CHAIN, ["-d", flannel_network, *_FORWARD_COMMENT, "-j", "ACCEPT"]),
    ]


def _flannel_chain(rule: IPTablesRule) -> Optional[str]:
    """The flannel chain a rule lives in or jumps to, if any."""
    for name in (FORWARD_CHAIN, POSTROUTING_CHAIN):
        if rule.chain == name or rule.rulespec[-1:] == [name]:
            return name
    return None


def _chain_exists(ipt: RuleTable, table: str, chain: str) -> bool:
    try:
        return ipt.chain_exists(table, chain)
    except Exception as exc:
        raise RuntimeError(f"failed to check rule existence: {exc}") from exc


def _rule_exists(ipt: RuleTable, rule: IPTablesRule) -> bool:
    try:
        return ipt.exists(rule.table, rule.chain, *rule.rulespec)
    except Exception as exc:
        raise RuntimeError(f"failed to check rule existence: {exc}") from exc


def rules_exist(ipt: RuleTable, rules: Iterable[IPTablesRule]) -> bool:
    """True when every rule, and every flannel chain it needs, is present."""
    for rule in rules:
        chain = _flannel_chain(rule)
        if chain is not None and not _chain_exists(ipt, rule.table, chain):
            return False
        if not _rule_exists(ipt, rule):
            return False
    return True


def clean_and_build(ipt: RuleTable, rules: Iterable[IPTablesRule]) -> RestoreRules:
    """Build a restore transaction that deletes existing copies and re-adds every rule in order.

    Missing flannel chains are created on the way.
    """
    tables: RestoreRules = {}
    for rule in rules:
        chain = _flannel_chain(rule)
        if chain is not None and not _chain_exists(ipt, rule.table, chain):
            try:
                ipt.clear_chain(rule.table, chain)
            except Exception as exc:
                raise RuntimeError(f"failed to create rule chain: {exc}") from exc
        lines = tables.setdefault(rule.table, [])
        if _rule_exists(ipt, rule):
            # Deleting and re-creating keeps the rules together and ordered.
            lines.append(["-D", rule.chain, *rule.rulespec])
        lines.append([rule.action, rule.chain, *rule.rulespec])
    return tables


def bootstrap(ipt: RuleTable, restore: RestoreRunner, rules: Sequence[IPTablesRule]) -> None:
    """Install ``rules`` through iptables-restore, replacing copies already present."""
    try:
        tables = clean_and_build(ipt, rules)
    except RuntimeError as exc:
        raise RuntimeError(f"failed to setup iptables-restore payload: {exc}") from exc
    log.debug("trying to run iptables-restore < %r", tables)
    try:
        restore.apply_without_flush(tables)
    except Exception as exc:
        raise RuntimeError(f"failed to apply partial iptables-restore {exc}") from exc
    log.info("bootstrap done")


def ensure_rules(ipt: RuleTable, restore: RestoreRunner, rules: Sequence[IPTablesRule]) -> None:
    """Re-install all ``rules`` if any of them is missing."""
    try:
        if rules_exist(ipt, rules):
            return
    except RuntimeError as exc:
        raise RuntimeError(f"error checking rule existence: {exc}") from exc
    # Rule order matters, so every rule is rebuilt rather than only the missing ones.
    log.info("Some iptables rules are missing; deleting and recreating rules")
    try:
        bootstrap(ipt, restore, rules)
    except RuntimeError as exc:
        raise RuntimeError(f"error setting up rules: {exc}") from exc


def teardown_rules(ipt: RuleTable, restore: RestoreRunner, rules: Iterable[IPTablesRule]) -> None:
    """Delete those of ``rules`` that are present, in one restore transaction."""
    tables: RestoreRules = {}
    for rule in rules:
        chain = _flannel_chain(rule)
        if chain is not None and not _chain_exists(ipt, rule.table, chain):
            continue
        if _rule_exists(ipt, rule):
            tables.setdefault(rule.table, []).append(["-D", rule.chain, *rule.rulespec])
    try:
        restore.apply_without_flush(tables)
    except Exception as exc:
        raise RuntimeError(f"unable to teardown iptables: {exc}") from exc