"""Apply iptables rules in one transaction through iptables-restore."""

from __future__ import annotations

import enum
import logging
import re
import shutil
import subprocess
import threading
from collections.abc import Mapping, Sequence

log = logging.getLogger(__name__)

RestoreRules = Mapping[str, Sequence[Sequence[str]]]

_VERSION_RE = re.compile(r"v([0-9]+)\.([0-9]+)\.([0-9]+)")


class Protocol(enum.Enum):
    """IP protocol family handled by an iptables binary."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"


_IPTABLES_COMMANDS = {
    Protocol.IPV4: "iptables",
    Protocol.IPV6: "ip6tables",
}


def iptables_command(protocol: Protocol) -> str:
    """Name of the iptables binary for a protocol."""
    return _IPTABLES_COMMANDS[Protocol(protocol)]


def restore_command(protocol: Protocol) -> str:
    """Name of the restore binary for a protocol."""
    return f"{iptables_command(protocol)}-restore"


def build_restore_payload(table_rules: RestoreRules) -> str:
    """Render rules as ``*table`` blocks ending in ``COMMIT``; comments are quoted."""
    parts: list[str] = []
    for table, rules in table_rules.items():
        parts.append(f"*{table}\n")
        for line in rules:
            tokens = list(line)
            if not tokens:
                continue
            previous = [None, *tokens[:-1]]
            rendered = [f'"{tok}"' if prev == "--comment" else tok for prev, tok in zip(previous, tokens)]
            parts.append(" ".join(rendered) + "\n")
        parts.append("COMMIT\n")
    return "".join(parts)


def has_wait_support(major: int, minor: int, patch: int) -> bool:
    """True for versions from 1.6.2 on, where ``--wait`` was added."""
    return (major, minor, patch) >= (1, 6, 2)


def extract_restore_version(text: str) -> tuple[int, int, int]:
    """Return the first three version components found in ``text``."""
    match = _VERSION_RE.search(text)
    if match is None:
        raise ValueError(f"no iptables-restore version found in string: {text}")
    major, minor, patch = (int(group) for group in match.groups())
    return major, minor, patch


def restore_support(path: str) -> bool:
    """Run ``path --version`` and report whether ``--wait`` is supported."""
    try:
        result = subprocess.run([path, "--version"], capture_output=True, text=True, check=True)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise RuntimeError(f"unable to find iptables-restore version: {exc}") from exc
    return has_wait_support(*extract_restore_version(result.stdout))


def _look_path(command: str) -> str:
    path = shutil.which(command)
    if path is None:
        raise FileNotFoundError(f"executable file not found in $PATH: {command}")
    return path


class IPTablesRestore:
    """Runs iptables-restore with ``--noflush``, one call at a time."""

    def __init__(self, path: str, protocol: Protocol, has_wait: bool) -> None:
        self.path = path
        self.protocol = protocol
        self.has_wait = has_wait
        # Serialise calls so that one transaction cannot restore a rule
        # that a concurrent one has just removed.
        self._lock = threading.Lock()

    def apply_without_flush(self, rules: RestoreRules) -> None:
        """Apply ``rules`` without flushing the chains they touch."""
        with self._lock:
            payload = build_restore_payload(rules)
            log.debug("trying to run with payload %s", payload)
            args = [self.path, "--noflush"]
            if self.has_wait:
                args.append("--wait")
            try:
                result = subprocess.run(args, input=payload, capture_output=True, text=True)
            except OSError as exc:
                raise RuntimeError(f"unable to run iptables-restore (, ): {exc}") from exc
            if result.returncode != 0:
                raise RuntimeError(
                    f"unable to run iptables-restore ({result.stdout}, {result.stderr}): "
                    f"exit status {result.returncode}"
                )


def new_iptables_restore(protocol: Protocol) -> IPTablesRestore:
    """Locate the binaries for ``protocol`` and build an :class:`IPTablesRestore`."""
    path = _look_path(restore_command(protocol))
    iptables_path = _look_path(iptables_command(protocol))
    return IPTablesRestore(path, protocol, restore_support(iptables_path))