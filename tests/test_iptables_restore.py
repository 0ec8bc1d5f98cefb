import os
import sys

import pytest

from trafficmngr.iptables_restore import (
    IPTablesRestore,
    Protocol,
    build_restore_payload,
    extract_restore_version,
    has_wait_support,
    iptables_command,
    new_iptables_restore,
    restore_command,
    restore_support,
)

_FAKE = r'''
import os, sys
here = os.path.dirname(os.path.abspath(__file__))
if sys.argv[1:] == ["--version"]:
    print(os.environ.get("FAKE_VERSION", "iptables-restore v1.8.7 (legacy)"))
    sys.exit(0)
with open(os.path.join(here, "args.txt"), "w") as fh:
    fh.write(" ".join(sys.argv[1:]))
with open(os.path.join(here, "payload.txt"), "w") as fh:
    fh.write(sys.stdin.read())
code = int(os.environ.get("FAKE_EXIT", "0"))
if code:
    sys.stderr.write("line 2 failed")
sys.exit(code)
'''


def _write_fake(directory, name):
    path = directory / name
    path.write_text("#!" + sys.executable + "\n" + _FAKE)
    os.chmod(path, 0o755)
    return path


BASE_RULES = {
    "filter": [
        ["-A", "INPUT", "-s", "127.0.0.1", "-d", "127.0.0.1", "-j", "RETURN"],
        ["-A", "INPUT", "-s", "127.0.0.1", "!", "-d", "224.0.0.0/4", "-m", "comment", "--comment",
         "flanneld masq", "-j", "MASQUERADE", "--random-fully"],
    ],
    "nat": [
        ["-A", "INPUT", "-s", "127.0.0.1", "-d", "127.0.0.1", "-j", "RETURN"],
        ["-A", "INPUT", "-s", "127.0.0.1", "!", "-d", "224.0.0.0/4", "-m", "comment", "--comment",
         "flanneld masq", "-j", "MASQUERADE", "--random-fully"],
    ],
}

EXPECTED_FILTER = (
    "*filter\n"
    "-A INPUT -s 127.0.0.1 -d 127.0.0.1 -j RETURN\n"
    '-A INPUT -s 127.0.0.1 ! -d 224.0.0.0/4 -m comment --comment "flanneld masq" -j MASQUERADE --random-fully\n'
    "COMMIT\n"
)
EXPECTED_NAT = (
    "*nat\n"
    "-A INPUT -s 127.0.0.1 -d 127.0.0.1 -j RETURN\n"
    '-A INPUT -s 127.0.0.1 ! -d 224.0.0.0/4 -m comment --comment "flanneld masq" -j MASQUERADE --random-fully\n'
    "COMMIT\n"
)


def test_rules_payload():
    payload = build_restore_payload(BASE_RULES)
    assert payload in (EXPECTED_FILTER + EXPECTED_NAT, EXPECTED_NAT + EXPECTED_FILTER)


def test_payload_follows_table_order():
    assert build_restore_payload(BASE_RULES) == EXPECTED_FILTER + EXPECTED_NAT


def test_empty_payload():
    assert build_restore_payload({}) == ""


def test_empty_table_still_commits():
    assert build_restore_payload({"nat": []}) == "*nat\nCOMMIT\n"


@pytest.mark.parametrize(
    "version, expected",
    [
        ((1, 6, 2), True),
        ((1, 6, 1), False),
        ((1, 7, 0), True),
        ((2, 0, 0), True),
        ((1, 4, 21), False),
        ((0, 9, 9), False),
    ],
)
def test_has_wait_support(version, expected):
    assert has_wait_support(*version) is expected


def test_extract_version():
    assert extract_restore_version("iptables-restore v1.3.66") == (1, 3, 66)


def test_extract_version_missing():
    with pytest.raises(ValueError):
        extract_restore_version("iptables-restore")


def test_command_names():
    assert restore_command(Protocol.IPV4) == "iptables-restore"
    assert restore_command(Protocol.IPV6) == "ip6tables-restore"
    assert iptables_command(Protocol.IPV4) == "iptables"
    assert iptables_command(Protocol.IPV6) == "ip6tables"


def test_apply_without_flush_sends_payload(tmp_path):
    fake = _write_fake(tmp_path, "iptables-restore")
    restore = IPTablesRestore(str(fake), Protocol.IPV4, True)
    result = restore.apply_without_flush(BASE_RULES)
    assert result is None
    assert (tmp_path / "payload.txt").read_text() == EXPECTED_FILTER + EXPECTED_NAT
    assert (tmp_path / "args.txt").read_text() == "--noflush --wait"


def test_apply_without_wait(tmp_path):
    fake = _write_fake(tmp_path, "iptables-restore")
    restore = IPTablesRestore(str(fake), Protocol.IPV4, False)
    result = restore.apply_without_flush({"nat": []})
    assert result is None
    assert (tmp_path / "args.txt").read_text() == "--noflush"
    assert (tmp_path / "payload.txt").read_text() == "*nat\nCOMMIT\n"


def test_apply_failure_raises(tmp_path, monkeypatch):
    fake = _write_fake(tmp_path, "iptables-restore")
    monkeypatch.setenv("FAKE_EXIT", "1")
    restore = IPTablesRestore(str(fake), Protocol.IPV4, False)
    with pytest.raises(RuntimeError, match="line 2 failed"):
        restore.apply_without_flush(BASE_RULES)


def test_restore_support_reads_version(tmp_path, monkeypatch):
    fake = _write_fake(tmp_path, "iptables")
    assert restore_support(str(fake)) is True
    monkeypatch.setenv("FAKE_VERSION", "iptables v1.4.21")
    assert restore_support(str(fake)) is False


def test_restore_support_missing_binary(tmp_path):
    with pytest.raises(RuntimeError):
        restore_support(str(tmp_path / "absent"))


def test_new_iptables_restore_finds_binaries(tmp_path, monkeypatch):
    _write_fake(tmp_path, "ip6tables-restore")
    _write_fake(tmp_path, "ip6tables")
    monkeypatch.setenv("PATH", str(tmp_path))
    restore = new_iptables_restore(Protocol.IPV6)
    assert restore.path == str(tmp_path / "ip6tables-restore")
    assert restore.has_wait is True
    assert restore.protocol is Protocol.IPV6


def test_new_iptables_restore_missing(tmp_path, monkeypatch):
    monkeypatch.setenv("PATH", str(tmp_path))
    with pytest.raises(FileNotFoundError):
        new_iptables_restore(Protocol.IPV4)