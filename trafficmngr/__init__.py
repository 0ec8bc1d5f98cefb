"""Forwarding and masquerading rules for an overlay network, kept in place with iptables or nftables."""

__version__ = "0.1.0"