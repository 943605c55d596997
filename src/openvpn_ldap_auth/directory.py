"""
Directory access: the ldap3-backed connection and the lookup/bind protocol on top of it.

The plugin only ever talks to the :class:`Directory` protocol and obtains
connections through a :data:`Connector`, so tests can swap in an in-memory double.
"""
import logging
import ssl
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from ldap3 import (ALL_ATTRIBUTES, AUTO_BIND_NO_TLS, AUTO_BIND_TLS_BEFORE_BIND,
                   NO_ATTRIBUTES, NONE, ROUND_ROBIN, SUBTREE, Connection,
                   Server, ServerPool, Tls)
from ldap3.core.exceptions import LDAPBindError, LDAPException
from ldap3.utils.config import set_config_parameter

from .config import LdapConfig, TlsConfig
from .filters import build_filter

log = logging.getLogger("openvpn.auth.ldap.directory")

# LDAP result code for a successful operation.
RESULT_SUCCESS = 0

# Attribute list requesting only the DN of each entry.
DN_ONLY = (NO_ATTRIBUTES,)

# ldap3 sleeps this long after every pass over an unavailable pool, the last
# one included. A failed pass must surface immediately.
set_config_parameter("POOLING_LOOP_TIMEOUT", 0)


class DirectoryError(Exception):
    """Base class for failures talking to the directory."""


class ConnectError(DirectoryError):
    """The transport (or StartTLS) could not be established."""


class BindError(DirectoryError):
    """The server rejected a bind."""


class SearchError(DirectoryError):
    """A search or compare could not be completed."""


@dataclass(frozen=True)
class DirectoryEntry:
    """A search result: its DN plus whatever attributes the search returned."""

    dn: str
    attributes: Mapping[str, Any] = field(default_factory=dict)


class Directory(Protocol):
    """Operations the plugin needs from an open, bound directory connection."""

    def search(
        self, base_dn: str, search_filter: str, attributes: Optional[Sequence[str]] = None
    ) -> list[DirectoryEntry]: ...

    def compare(self, dn: str, attribute: str, value: str) -> bool: ...

    def close(self) -> None: ...

    def __enter__(self) -> "Directory": ...

    def __exit__(self, *exc_info: object) -> None: ...


# connector(config, bind_dn, password) -> bound Directory, raising DirectoryError
Connector = Callable[[LdapConfig, Optional[str], Optional[str]], Directory]


# -----------------------------
# ldap3 adapter
# -----------------------------
def _build_tls(tls: TlsConfig) -> Tls:
    """Translate the TLS settings into an :class:`ldap3.Tls` applied before first use."""
    # ``Tls`` handles certificate verification; disable only when explicitly requested.
    return Tls(
        validate=ssl.CERT_REQUIRED if tls.verify_ssl else ssl.CERT_NONE,
        ca_certs_file=tls.ca_cert_file,
        ca_certs_path=tls.ca_cert_dir,
        local_certificate_file=tls.cert_file,
        local_private_key_file=tls.key_file,
        ciphers=tls.cipher_suite,
    )


def _build_pool(config: LdapConfig) -> ServerPool:
    servers = []
    for uri in config.urls:
        use_ssl = uri.lower().startswith("ldaps://")
        tls = _build_tls(config.tls) if (use_ssl or config.tls.start_tls) else None
        servers.append(Server(uri, use_ssl=use_ssl, get_info=NONE, tls=tls, connect_timeout=config.timeout))
    # One pass over the servers, then LDAPServerPoolExhaustedError.
    return ServerPool(servers, pool_strategy=ROUND_ROBIN, active=1, exhaust=False)


class LdapDirectory:
    """:class:`Directory` implementation backed by an :class:`ldap3.Connection`."""

    def __init__(self, conn: Connection):
        self._conn = conn

    @classmethod
    def connect(
        cls, config: LdapConfig, bind_dn: Optional[str] = None, password: Optional[str] = None
    ) -> "LdapDirectory":
        """Open a new connection and bind as ``bind_dn`` (anonymously when ``None``)."""
        auto_bind = AUTO_BIND_TLS_BEFORE_BIND if config.tls.start_tls else AUTO_BIND_NO_TLS
        try:
            conn = Connection(
                _build_pool(config),
                user=bind_dn or None,
                password=password if bind_dn else None,
                auto_bind=auto_bind,
                auto_referrals=config.follow_referrals,
                receive_timeout=config.timeout,
                read_only=True,
            )
        except LDAPBindError as e:
            raise BindError(f"bind as {bind_dn or '<anonymous>'} rejected: {e}") from e
        except LDAPException as e:
            raise ConnectError(f"cannot connect to {', '.join(config.urls)}: {e}") from e

        if config.debug_logging:
            srv = conn.server
            scheme = "ldaps" if getattr(srv, "ssl", False) else "ldap"
            log.debug(
                f"LDAP bound to {scheme}://{srv.host}:{srv.port} as {bind_dn or '<anonymous>'} "
                f"(start_tls={config.tls.start_tls}, referrals={config.follow_referrals})"
            )
        return cls(conn)

    def search(
        self, base_dn: str, search_filter: str, attributes: Optional[Sequence[str]] = None
    ) -> list[DirectoryEntry]:
        """Subtree search under ``base_dn``; an empty list means no match."""
        try:
            self._conn.search(
                search_base=base_dn,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=list(attributes) if attributes else ALL_ATTRIBUTES,
            )
        except LDAPException as e:
            raise SearchError(f"search {search_filter!r} under {base_dn!r} failed: {e}") from e

        result = self._conn.result or {}
        if result.get("result", RESULT_SUCCESS) != RESULT_SUCCESS:
            raise SearchError(
                f"search {search_filter!r} under {base_dn!r} failed: "
                f"{result.get('description')} {result.get('message') or ''}".rstrip()
            )
        return [DirectoryEntry(dn=e.entry_dn, attributes=e.entry_attributes_as_dict) for e in self._conn.entries]

    def compare(self, dn: str, attribute: str, value: str) -> bool:
        """Return ``True`` only when the server answers compareTrue."""
        try:
            return bool(self._conn.compare(dn, attribute, value))
        except LDAPException as e:
            raise SearchError(f"compare {attribute} on {dn!r} failed: {e}") from e

    def close(self) -> None:
        try:
            self._conn.unbind()
        except LDAPException as e:
            log.debug(f"LDAP unbind failed: {e!r}")

    def __enter__(self) -> "LdapDirectory":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


# -----------------------------
# Lookup / verification protocol
# -----------------------------
def open_session(config: LdapConfig, connector: Connector = LdapDirectory.connect) -> Directory:
    """Open the primary connection, bound as the configured service DN if any."""
    return connector(config, config.bind_dn, config.bind_password)


def find_user(
    session: Directory, filter_template: str, base_dn: str, username: str
) -> Optional[DirectoryEntry]:
    """Locate ``username`` with the escaped filter; ``None`` when nothing matches.

    When the filter matches several entries the last one returned is used. The
    directory does not promise any ordering, so such a filter is a configuration
    mistake worth fixing.
    """
    search_filter = build_filter(filter_template, username)
    entries = session.search(base_dn, search_filter)
    if not entries:
        return None
    if len(entries) > 1:
        log.warning(
            f"LDAP filter {search_filter!r} matched {len(entries)} entries under {base_dn!r}; "
            f"using the last one ({entries[-1].dn!r})"
        )
    return entries[-1]


def verify_password(
    config: LdapConfig, entry_dn: str, password: str, connector: Connector = LdapDirectory.connect
) -> bool:
    """Bind as ``entry_dn`` on a fresh connection; any failure counts as a wrong password."""
    try:
        with connector(config, entry_dn, password):
            return True
    except DirectoryError as e:
        log.debug(f"Bind as {entry_dn!r} failed: {e}")
        return False


def compare_membership(session: Directory, entry_dn: str, attribute: str, value: str) -> bool:
    """Return ``True`` when ``entry_dn`` carries ``attribute`` = ``value``."""
    return session.compare(entry_dn, attribute, value)


__all__ = [
    "BindError",
    "ConnectError",
    "Connector",
    "Directory",
    "DirectoryEntry",
    "DN_ONLY",
    "DirectoryError",
    "LdapDirectory",
    "SearchError",
    "compare_membership",
    "find_user",
    "open_session",
    "verify_password",
]
