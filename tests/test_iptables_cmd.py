import os
import sys

import pytest

from trafficmngr.iptables_cmd import IPTables, IPTablesError
from trafficmngr.iptables_restore import Protocol

_FAKE = r'''
import json, os, sys
here = os.path.dirname(os.path.abspath(__file__))
state_path = os.path.join(here, "state.json")
with open(os.path.join(here, "calls.log"), "a") as fh:
    fh.write(" ".join(sys.argv[1:]) + "\n")
args = [a for a in sys.argv[1:] if a != "--wait"]
if args == ["--version"]:
    print(os.environ.get("FAKE_IPTABLES_VERSION", "iptables v1.8.7 (legacy)"))
    sys.exit(0)
BUILTIN = {"nat": ["PREROUTING", "INPUT", "OUTPUT", "POSTROUTING"], "filter": ["INPUT", "FORWARD", "OUTPUT"]}
if os.path.exists(state_path):
    with open(state_path) as fh:
        state = json.load(fh)
else:
    state = {t: {c: [] for c in cs} for t, cs in BUILTIN.items()}
table, op, rest = args[1], args[2], args[3:]
chains = state.setdefault(table, {})


def fail(msg):
    sys.stderr.write("iptables: " + msg + "\n")
    sys.exit(1)


if op == "-S":
    for name in chains:
        if name in BUILTIN.get(table, []):
            print("-P " + name + " ACCEPT")
        else:
            print("-N " + name)
    for name, rules in chains.items():
        for r in rules:
            print("-A " + name + " " + " ".join(r))
    sys.exit(0)
chain, spec = rest[0], rest[1:]
if op == "-N":
    if chain in chains:
        fail("Chain already exists.")
    chains[chain] = []
elif chain not in chains:
    fail("No chain/target/match by that name.")
elif op == "-F":
    chains[chain] = []
elif op == "-X":
    if chains[chain]:
        fail("Directory not empty.")
    del chains[chain]
elif op == "-A":
    chains[chain].append(spec)
elif op == "-C":
    if spec not in chains[chain]:
        fail("Bad rule (does a matching rule exist in that chain?).")
elif op == "-D":
    if spec not in chains[chain]:
        fail("Bad rule (does a matching rule exist in that chain?).")
    chains[chain].remove(spec)
with open(state_path, "w") as fh:
    json.dump(state, fh)
'''

RULE = ["-s", "127.0.0.1", "-d", "127.0.0.1", "-j", "RETURN"]


@pytest.fixture
def fake_bin(tmp_path, monkeypatch):
    for name in ("iptables", "ip6tables"):
        path = tmp_path / name
        path.write_text("#!" + sys.executable + "\n" + _FAKE)
        os.chmod(path, 0o755)
    monkeypatch.setenv("PATH", str(tmp_path))
    return tmp_path


def _calls(directory):
    return (directory / "calls.log").read_text().splitlines()


def test_random_fully_detected(fake_bin):
    assert IPTables(Protocol.IPV4).has_random_fully() is True


def test_old_version_lacks_features(fake_bin, monkeypatch):
    monkeypatch.setenv("FAKE_IPTABLES_VERSION", "iptables v1.4.19")
    ipt = IPTables(Protocol.IPV4)
    assert ipt.has_random_fully() is False
    ipt.clear_chain("nat", "FLANNEL-POSTRTG")
    assert not any("--wait" in line for line in _calls(fake_bin))


def test_wait_flag_used(fake_bin):
    ipt = IPTables(Protocol.IPV4)
    assert ipt.chain_exists("nat", "POSTROUTING") is True
    assert _calls(fake_bin)[-1].startswith("--wait -t nat -S")


def test_ipv6_uses_ip6tables(fake_bin):
    ipt = IPTables(Protocol.IPV6)
    assert ipt.path == str(fake_bin / "ip6tables")


def test_missing_binary(tmp_path, monkeypatch):
    monkeypatch.setenv("PATH", str(tmp_path))
    with pytest.raises(FileNotFoundError):
        IPTables(Protocol.IPV4)


def test_clear_chain_creates_chain(fake_bin):
    ipt = IPTables(Protocol.IPV4)
    assert ipt.chain_exists("nat", "FLANNEL-POSTRTG") is False
    ipt.clear_chain("nat", "FLANNEL-POSTRTG")
    assert ipt.chain_exists("nat", "FLANNEL-POSTRTG") is True


def test_clear_chain_flushes_rules(fake_bin):
    ipt = IPTables(Protocol.IPV4)
    ipt.clear_chain("nat", "FLANNEL-POSTRTG")
    ipt.append_unique("nat", "FLANNEL-POSTRTG", *RULE)
    ipt.clear_chain("nat", "FLANNEL-POSTRTG")
    assert ipt.exists("nat", "FLANNEL-POSTRTG", *RULE) is False
    assert ipt.chain_exists("nat", "FLANNEL-POSTRTG") is True


def test_append_unique_is_idempotent(fake_bin):
    ipt = IPTables(Protocol.IPV4)
    ipt.append_unique("nat", "POSTROUTING", *RULE)
    ipt.append_unique("nat", "POSTROUTING", *RULE)
    assert ipt.exists("nat", "POSTROUTING", *RULE) is True
    ipt.delete("nat", "POSTROUTING", *RULE)
    assert ipt.exists("nat", "POSTROUTING", *RULE) is False


def test_exists_in_missing_chain_is_false(fake_bin):
    ipt = IPTables(Protocol.IPV4)
    assert ipt.exists("nat", "FLANNEL-FWD", *RULE) is False


def test_delete_missing_rule_raises(fake_bin):
    ipt = IPTables(Protocol.IPV4)
    with pytest.raises(IPTablesError) as info:
        ipt.delete("nat", "POSTROUTING", *RULE)
    assert info.value.is_not_exist is True
    assert info.value.exit_status == 1


def test_clear_and_delete_chain(fake_bin):
    ipt = IPTables(Protocol.IPV4)
    ipt.clear_chain("filter", "FLANNEL-FWD")
    ipt.append_unique("filter", "FLANNEL-FWD", *RULE)
    ipt.clear_and_delete_chain("filter", "FLANNEL-FWD")
    assert ipt.chain_exists("filter", "FLANNEL-FWD") is False
    ipt.clear_and_delete_chain("filter", "FLANNEL-FWD")
    assert ipt.chain_exists("filter", "FORWARD") is True


def test_error_not_exist_requires_status_one():
    error = IPTablesError(["iptables"], 2, "iptables: No chain/target/match by that name.")
    assert error.is_not_exist is False
    other = IPTablesError(["iptables"], 1, "iptables: Resource temporarily unavailable.")
    assert other.is_not_exist is False