"""A small wrapper around the iptables and ip6tables command-line tools."""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence

from trafficmngr.iptables_restore import Protocol, extract_restore_version, iptables_command

_NOT_EXIST_MARKERS = (
    "does not exist",
    "No chain/target/match by that name",
    "Bad rule (does a matching rule exist in that chain?)",
)


class IPTablesError(Exception):
    """An iptables invocation exited with a non-zero status."""

    def __init__(self, command: Sequence[str], exit_status: int, message: str) -> None:
        super().__init__(f"running {list(command)}: exit status {exit_status}: {message}")
        self.command = list(command)
        self.exit_status = exit_status
        self.message = message

    @property
    def is_not_exist(self) -> bool:
        """True when the failure means the chain or rule does not exist."""
        return self.exit_status == 1 and any(marker in self.message for marker in _NOT_EXIST_MARKERS)


class IPTables:
    """Runs rule and chain operations through one iptables binary."""

    def __init__(self, protocol: Protocol = Protocol.IPV4) -> None:
        self.protocol = protocol
        command = iptables_command(protocol)
        path = shutil.which(command)
        if path is None:
            raise FileNotFoundError(f"executable file not found in $PATH: {command}")
        self.path = path
        version = self._detect_version()
        self._has_wait = version >= (1, 4, 20)
        self._has_random_fully = version >= (1, 6, 2)

    def _detect_version(self) -> tuple[int, int, int]:
        args = [self.path, "--version"]
        result = subprocess.run(args, capture_output=True, text=True)
        if result.returncode != 0:
            raise IPTablesError(args, result.returncode, result.stderr)
        return extract_restore_version(result.stdout)

    def _run(self, *args: str) -> str:
        command = [self.path]
        if self._has_wait:
            command.append("--wait")
        command.extend(args)
        result = subprocess.run(command, capture_output=True, text=True)
        if result.returncode != 0:
            raise IPTablesError(command, result.returncode, result.stderr)
        return result.stdout

    def _list_chains(self, table: str) -> list[str]:
        output = self._run("-t", table, "-S")
        return [
            line.split()[1]
            for line in output.splitlines()
            if line.startswith(("-P ", "-N ")) and len(line.split()) > 1
        ]

    def has_random_fully(self) -> bool:
        """True when MASQUERADE accepts ``--random-fully``."""
        return self._has_random_fully

    def exists(self, table: str, chain: str, *args: str) -> bool:
        """True when the rule is present in the chain."""
        try:
            self._run("-t", table, "-C", chain, *args)
        except IPTablesError as exc:
            if exc.exit_status == 1:
                return False
            raise
        return True

    def append_unique(self, table: str, chain: str, *args: str) -> None:
        """Append the rule unless it is already present."""
        if not self.exists(table, chain, *args):
            self._run("-t", table, "-A", chain, *args)

    def delete(self, table: str, chain: str, *args: str) -> None:
        """Delete the rule from the chain."""
        self._run("-t", table, "-D", chain, *args)

    def chain_exists(self, table: str, chain: str) -> bool:
        """True when the table has a chain of this name."""
        return chain in self._list_chains(table)

    def clear_chain(self, table: str, chain: str) -> None:
        """Create the chain, or flush it if it already exists."""
        if self.chain_exists(table, chain):
            self._run("-t", table, "-F", chain)
        else:
            self._run("-t", table, "-N", chain)

    def clear_and_delete_chain(self, table: str, chain: str) -> None:
        """Flush and delete the chain; a missing chain is left alone."""
        if not self.chain_exists(table, chain):
            return
        self._run("-t", table, "-F", chain)
        self._run("-t", table, "-X", chain)