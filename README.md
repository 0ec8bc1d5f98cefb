# trafficmngr

Keeps the kernel packet-filter rules of an overlay network in place: rules
that let traffic to and from the network be forwarded, and rules that
masquerade traffic leaving it. Two back ends are provided, both following
the `TrafficManager` interface from `trafficmngr.base`:

- `trafficmngr.iptables_manager.IPTablesManager` drives `iptables` and
  `ip6tables`. Rules are loaded in order through
  `iptables-restore --noflush` (with `--wait` when the installed version,
  1.6.2 or later, supports it). For each rule set a background thread
  installs the rules and then, every resync period, checks that they are
  all present and rebuilds the whole set if any is missing. The thread ends
  when the `stop` event is set.
- `trafficmngr.nftables.NFTablesManager` keeps its rules in its own
  `flannel-ipv4` and `flannel-ipv6` tables and writes the `forward` and
  `postrtg` chains in one `nft -f` transaction each. The chains are flushed
  before the rules are added; there is no background resync, so the
  `resync_period` and `stop` arguments are accepted and not used.

## Installing

```
pip install .
```

The package has no Python dependencies. At run time it needs the
`iptables`, `ip6tables`, `iptables-restore` and `ip6tables-restore`
programs, or the `nft` program. Changing rules needs root rights.

## Using it

```python
import ipaddress
import threading

from trafficmngr.base import Lease
from trafficmngr.iptables_manager import IPTablesManager

network = ipaddress.ip_network("10.244.0.0/16")
subnet = ipaddress.ip_network("10.244.1.0/24")
lease = Lease(subnet=subnet)
stop = threading.Event()

manager = IPTablesManager()
manager.init()
manager.setup_and_ensure_forward_rules(network, None, 5, stop)
manager.setup_and_ensure_masq_rules(
    network, subnet, network,  # IPv4 network, previous subnet, previous network
    None, None, None,          # no IPv6
    lease, 5, stop,
)

# ... later, on shutdown:
stop.set()
manager.clean_up()
```

An IPv4 or IPv6 network given as `None` is skipped. When the current
network or leased subnet differs from the previous one passed in,
`IPTablesManager` first deletes the masquerading rules built for the
previous network and subnet, then installs the new ones.

`IPTablesManager.clean_up()` flushes and deletes the `FLANNEL-POSTRTG` and
`FLANNEL-FWD` chains of the `nat` table for both protocols; failures for a
single chain are logged. `NFTablesManager.clean_up()` deletes its two
tables.

`NFTablesManager.init()` must be called before rules are set up; it creates
the tables. Whether `masquerade fully-random` is used is decided by
`NFTablesManager.check_random_fully()`, which asks `nft --check` to accept a
test rule.

### Without touching the system

The rule builders in `trafficmngr.iptables_rules` (`masq_rules`,
`masq_ip6_rules`, `forward_rules`), the payload builder
`trafficmngr.iptables_restore.build_restore_payload` and
`trafficmngr.nftables.NFTTransaction.script()` only build text, so they can
be used to see what would be loaded:

```python
from trafficmngr.iptables_restore import build_restore_payload

print(build_restore_payload({"nat": [["-A", "POSTROUTING", "-j", "RETURN"]]}))
```

```python
from trafficmngr.nftables import Family, NFTTransaction

tx = NFTTransaction(Family.IPV4, "flannel-ipv4")
tx.add_rule("forward", "ip saddr", "10.244.0.0/16", "accept")
print(tx.script())
```

The helpers `rules_exist`, `clean_and_build`, `bootstrap`, `ensure_rules`
and `teardown_rules` in `trafficmngr.iptables_rules` take any object with
`chain_exists`, `clear_chain` and `exists` methods and any object with an
`apply_without_flush` method, so they work with stand-ins as well as with
`trafficmngr.iptables_cmd.IPTables` and
`trafficmngr.iptables_restore.IPTablesRestore`. `IPTablesManager` and
`NFTablesManager` likewise accept factories for these objects.

## What it does not do

This is a library only: there is no command-line program and no daemon.
It does not obtain leases or choose subnets; the caller passes in the
networks and the `Lease` to use.

## Running the tests

```
pip install .[test]
pytest
```