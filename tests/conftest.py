"""
tests/conftest.py -- In-memory doubles for the plugin's external capabilities.

  - FakeLdap: a connector plus a tiny directory. Every call to it is one new
    connection, recorded in ``connections`` so tests can check that the password
    bind happens on its own connection.
  - StubHttp: the OTP HTTP client; records URLs, returns a canned result.
  - FakeAddressTable: the pf backend; records add/remove calls.
"""
from dataclasses import replace
from typing import Optional

import pytest

from openvpn_ldap_auth.config import AuthConfig, GroupConfig, LdapConfig, OtpConfig
from openvpn_ldap_auth.directory import BindError, ConnectError, DirectoryEntry, SearchError
from openvpn_ldap_auth.otp import HttpError, HttpResult

PEOPLE_DN = "ou=people,dc=example,dc=com"
GROUPS_DN = "ou=groups,dc=example,dc=com"
USER_FILTER = "(uid=%u)"
ALICE_DN = "uid=alice,ou=people,dc=example,dc=com"
SERVICE_DN = "cn=openvpn,ou=services,dc=example,dc=com"


class FakeDirectory:
    def __init__(self, world: "FakeLdap", bind_dn: Optional[str]):
        self._world = world
        self.bind_dn = bind_dn

    def search(self, base_dn, search_filter, attributes=None):
        self._world.searches.append((base_dn, search_filter))
        if (base_dn, search_filter) in self._world.failing_searches:
            raise SearchError(f"search {search_filter} failed")
        return list(self._world.entries.get((base_dn, search_filter), []))

    def compare(self, dn, attribute, value):
        self._world.compares.append((dn, attribute, value))
        return (dn, attribute, value) in self._world.members

    def close(self):
        self._world.closed += 1

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class FakeLdap:
    """Connector double: ``fake(config, bind_dn, password) -> FakeDirectory``."""

    def __init__(self):
        self.entries: dict[tuple[str, str], list[DirectoryEntry]] = {}
        self.members: set[tuple[str, str, str]] = set()
        self.passwords: dict[str, str] = {}
        self.failing_searches: set[tuple[str, str]] = set()
        self.fail_connect = False
        self.connections: list[tuple[Optional[str], Optional[str]]] = []
        self.searches: list[tuple[str, str]] = []
        self.compares: list[tuple[str, str, str]] = []
        self.closed = 0

    def __call__(self, config: LdapConfig, bind_dn: Optional[str], password: Optional[str]):
        self.connections.append((bind_dn, password))
        if self.fail_connect:
            raise ConnectError("connection refused")
        if bind_dn is not None and bind_dn != config.bind_dn:
            if self.passwords.get(bind_dn) != password:
                raise BindError("invalidCredentials")
        return FakeDirectory(self, bind_dn)

    def add_user(self, dn: str, password: str, search_filter: str = "(uid=alice)") -> DirectoryEntry:
        entry = DirectoryEntry(dn=dn, attributes={"uid": [dn.split(",")[0].split("=")[1]]})
        self.entries.setdefault((PEOPLE_DN, search_filter), []).append(entry)
        self.passwords[dn] = password
        return entry

    def add_group(self, group: GroupConfig, group_dn: str, members: tuple[str, ...] = ()) -> None:
        self.entries.setdefault((group.base_dn, group.search_filter), []).append(DirectoryEntry(dn=group_dn))
        for member in members:
            self.members.add((group_dn, group.member_attribute, member))


class StubHttp:
    def __init__(self, body: str = "true", status: Optional[int] = 200, error: Optional[str] = None):
        self.body = body
        self.status = status
        self.error = error
        self.calls: list[tuple[str, float, float]] = []

    def __call__(self, url, connect_timeout, timeout):
        self.calls.append((url, connect_timeout, timeout))
        if self.error:
            raise HttpError(self.error)
        return HttpResult(status=self.status, body=self.body)


class FakeAddressTable:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.calls: list[tuple[str, str, str]] = []

    def add_address(self, table, address):
        self.calls.append(("add", table, address))
        return self.ok

    def remove_address(self, table, address):
        self.calls.append(("remove", table, address))
        return self.ok


def make_config(**overrides) -> AuthConfig:
    config = AuthConfig(
        ldap=LdapConfig(urls=("ldap://ldap.example.com",), bind_dn=SERVICE_DN, bind_password="svc-pw"),
        base_dn=PEOPLE_DN,
        search_filter=USER_FILTER,
    )
    return replace(config, **overrides)


def make_group(name: str, pf_table: Optional[str] = None) -> GroupConfig:
    return GroupConfig(
        name=name,
        base_dn=GROUPS_DN,
        search_filter=f"(cn={name})",
        member_attribute="uniqueMember",
        pf_table=pf_table,
    )


def otp_config(**overrides) -> OtpConfig:
    return replace(OtpConfig(enabled=True, api="https://otp.example.com/verify"), **overrides)


@pytest.fixture
def ldap() -> FakeLdap:
    fake = FakeLdap()
    fake.add_user(ALICE_DN, "secret")
    return fake


@pytest.fixture
def http() -> StubHttp:
    return StubHttp()


@pytest.fixture
def table() -> FakeAddressTable:
    return FakeAddressTable()
