"""
pf address tables, driven through ``pfctl``.

Connected clients are added to a table (per group, or the default one) so pf
rules can grant access by membership, and removed again on disconnect. pfctl
serializes access to /dev/pf itself, so no locking happens here.
"""
import ipaddress
import logging
import shutil
import subprocess

from .config import AuthConfig

log = logging.getLogger("openvpn.auth.ldap.pf")

DEFAULT_PFCTL = "pfctl"
PFCTL_TIMEOUT = 10


class PacketFilterError(Exception):
    """pfctl is not available."""


class PacketFilter:
    """Add/remove/flush addresses in named pf tables."""

    def __init__(self, pfctl: str, timeout: float = PFCTL_TIMEOUT):
        self._pfctl = pfctl
        self._timeout = timeout

    @classmethod
    def open(cls, pfctl: str = DEFAULT_PFCTL) -> "PacketFilter":
        """Locate ``pfctl``; raise :class:`PacketFilterError` when it cannot be found."""
        path = shutil.which(pfctl)
        if not path:
            raise PacketFilterError(f"{pfctl} not found; is pf available on this host?")
        return cls(path)

    def _run(self, table: str, *args: str) -> bool:
        if not table or table.startswith("-"):
            log.error(f"Refusing invalid packet filter table name {table!r}")
            return False
        cmd = [self._pfctl, "-q", "-t", table, "-T", *args]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self._timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            log.error(f"Running {' '.join(cmd)} failed: {e}")
            return False
        if result.returncode != 0:
            log.error(f"{' '.join(cmd)} exited with {result.returncode}: {result.stderr.strip()}")
            return False
        return True

    def clear_table(self, table: str) -> bool:
        """Remove every address from ``table``."""
        log.debug(f"Clearing packet filter table {table!r}")
        return self._run(table, "flush")

    def add_address(self, table: str, address: str) -> bool:
        if not _valid_address(address):
            return False
        log.debug(f"Adding address {address!r} to packet filter table {table!r}")
        return self._run(table, "add", address)

    def remove_address(self, table: str, address: str) -> bool:
        if not _valid_address(address):
            return False
        log.debug(f"Removing address {address!r} from packet filter table {table!r}")
        return self._run(table, "delete", address)


def _valid_address(address: str) -> bool:
    try:
        ipaddress.ip_address(address)
    except ValueError:
        log.error(f"{address!r} is not an IP address")
        return False
    return True


def clear_tables(pf: PacketFilter, config: AuthConfig) -> bool:
    """Flush the default table and every group table; stop at the first failure."""
    for table in config.pf_tables():
        if not pf.clear_table(table):
            log.error(f"Failed to clear packet filter table {table!r}")
            return False
    return True
