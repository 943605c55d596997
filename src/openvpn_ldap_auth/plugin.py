"""
Per-event authorization flow.

``user-pass-verify``
    find the user, bind as them on a second connection, resolve the group
    (failing when one is required and none matches), then check the OTP code
    if the feature is on.
``client-connect`` / ``client-disconnect``
    find the user, resolve the group and add/remove the client's VPN address
    to/from the group's pf table (or the default table when no group matched).

Every invocation opens its own connections and shares nothing but the
read-only configuration, so concurrent calls for different clients are safe.
"""
import logging
from collections.abc import Mapping
from typing import Optional, Protocol

from .config import AuthConfig, GroupConfig
from .directory import (Connector, Directory, DirectoryEntry, DirectoryError,
                        LdapDirectory, find_user, open_session, verify_password)
from .events import EventType, Outcome
from .groups import resolve_group
from .otp import OtpVerifier, is_digits, split_password
from .pf import PacketFilter

log = logging.getLogger("openvpn.auth.ldap")

USERNAME_VAR = "username"
PASSWORD_VAR = "password"
REMOTE_ADDRESS_VAR = "ifconfig_pool_remote_ip"


class AddressTable(Protocol):
    """What the plugin needs from the address-table backend."""

    def add_address(self, table: str, address: str) -> bool: ...

    def remove_address(self, table: str, address: str) -> bool: ...


class LdapAuthPlugin:
    """Maps one host event plus its environment to an :class:`Outcome`."""

    def __init__(
        self,
        config: AuthConfig,
        connector: Connector = LdapDirectory.connect,
        otp_verifier: Optional[OtpVerifier] = None,
        address_table: Optional[AddressTable] = None,
    ):
        """Create the plugin; opens pf when enabled and no table backend is injected."""
        self._config = config
        self._connect = connector
        if otp_verifier is None and config.otp.enabled:
            otp_verifier = OtpVerifier(config.otp)
        self._otp = otp_verifier if config.otp.enabled else None
        if address_table is None and config.pf_enabled:
            address_table = PacketFilter.open()
        self._pf = address_table

    def handle(self, event: EventType | str, env: Mapping[str, str]) -> Outcome:
        """Run the flow for ``event`` using the variables in ``env``."""
        event_type = event if isinstance(event, EventType) else EventType.from_script_type(event)
        if event_type is None:
            log.error(f"Unhandled plugin event type {event!r}")
            return Outcome.ERROR

        # A missing username is bad client input on every event, so it fails
        # before the remote address is looked at.
        username = env.get(USERNAME_VAR)
        if not username:
            log.debug("No remote username supplied to OpenVPN LDAP Plugin.")
            return Outcome.FAILURE

        if event_type is EventType.AUTH_USER_PASS_VERIFY:
            outcome = self._auth_user_pass_verify(username, env.get(PASSWORD_VAR))
        else:
            remote_address = env.get(REMOTE_ADDRESS_VAR)
            if not remote_address:
                log.debug(f"No remote address supplied to OpenVPN LDAP Plugin ({event_type.value}).")
                return Outcome.ERROR
            outcome = self._client_connect_disconnect(
                username, remote_address, connecting=event_type is EventType.CLIENT_CONNECT
            )

        if outcome is Outcome.ERROR:
            log.error(f"{event_type.value} for {username!r} could not be completed")
        return outcome

    # --- Shared steps ---
    def _find_user(self, session: Directory, username: str) -> Optional[DirectoryEntry]:
        user = find_user(session, self._config.search_filter, self._config.base_dn, username)
        if user is None:
            log.warning(f"LDAP user {username!r} was not found.")
        return user

    def _resolve_group(self, session: Directory, user: DirectoryEntry) -> tuple[Outcome, Optional[GroupConfig]]:
        """Return the user's group; FAILURE when membership is required and nothing matched."""
        if not self._config.groups:
            return Outcome.SUCCESS, None
        group = resolve_group(session, self._config.groups, user)
        if group is None and self._config.require_group:
            log.error(
                f"No matching LDAP group found for user DN {user.dn!r}, and group membership is required."
            )
            return Outcome.FAILURE, None
        return Outcome.SUCCESS, group

    # --- Authentication ---
    def _auth_user_pass_verify(self, username: str, password: Optional[str]) -> Outcome:
        if password is None:
            log.debug("No remote password supplied to OpenVPN LDAP Plugin (user-pass-verify).")
            return Outcome.FAILURE

        static_password, digits = password, None
        if self._otp is not None:
            split = split_password(password, self._otp.digits_length)
            if split is None:
                log.debug("Remote password is too short to carry an OTP code (user-pass-verify).")
                return Outcome.FAILURE
            static_password, digits = split
            if not is_digits(digits):
                log.debug("Remote password does not end in a numeric OTP code (user-pass-verify).")
                return Outcome.FAILURE

        # An empty simple bind is an anonymous bind, which most servers accept.
        if not static_password:
            log.debug("Empty password supplied to OpenVPN LDAP Plugin (user-pass-verify).")
            return Outcome.FAILURE

        try:
            with open_session(self._config.ldap, self._connect) as session:
                user = self._find_user(session, username)
                if user is None:
                    return Outcome.FAILURE

                if not verify_password(self._config.ldap, user.dn, static_password, self._connect):
                    log.error(f"Incorrect password supplied for LDAP DN {user.dn!r}.")
                    return Outcome.FAILURE

                outcome, group = self._resolve_group(session, user)
        except DirectoryError as e:
            log.error(f"LDAP error while authenticating {username!r}: {e}")
            return Outcome.ERROR

        if outcome is not Outcome.SUCCESS:
            return outcome

        if digits is not None:
            outcome = self._otp.verify(username, digits)
            if outcome is not Outcome.SUCCESS:
                return outcome

        if self._config.ldap.debug_logging:
            log.info(f"LDAP login: user={username} dn={user.dn} group={group.name if group else None}")
        return Outcome.SUCCESS

    # --- Connect / disconnect ---
    def _client_connect_disconnect(self, username: str, remote_address: str, *, connecting: bool) -> Outcome:
        try:
            with open_session(self._config.ldap, self._connect) as session:
                user = self._find_user(session, username)
                if user is None:
                    return Outcome.FAILURE
                outcome, group = self._resolve_group(session, user)
        except DirectoryError as e:
            log.error(f"LDAP error while handling {username!r} ({remote_address}): {e}")
            return Outcome.ERROR

        if outcome is not Outcome.SUCCESS:
            return outcome

        if not self._config.pf_enabled or self._pf is None:
            return Outcome.SUCCESS

        # A matched group uses its own table only, even when it has none.
        table = group.pf_table if group else self._config.pf_table
        if not table:
            return Outcome.SUCCESS

        if connecting:
            ok = self._pf.add_address(table, remote_address)
        else:
            ok = self._pf.remove_address(table, remote_address)
        if not ok:
            action = "add" if connecting else "remove"
            log.error(f"Failed to {action} address {remote_address!r} in packet filter table {table!r}")
            return Outcome.ERROR
        return Outcome.SUCCESS
