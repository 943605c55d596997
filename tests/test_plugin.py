"""
tests/test_plugin.py -- End-to-end event handling against the in-memory doubles.
"""
import pytest

from conftest import (ALICE_DN, GROUPS_DN, PEOPLE_DN, SERVICE_DN, FakeAddressTable, FakeLdap,
                      StubHttp, make_config, make_group, otp_config)
from openvpn_ldap_auth.events import EventType, Outcome
from openvpn_ldap_auth.otp import OtpVerifier
from openvpn_ldap_auth.plugin import LdapAuthPlugin

AUTH = EventType.AUTH_USER_PASS_VERIFY
CONNECT = EventType.CLIENT_CONNECT
DISCONNECT = EventType.CLIENT_DISCONNECT


def _otp_plugin(ldap: FakeLdap, http: StubHttp, **config) -> LdapAuthPlugin:
    otp = otp_config()
    cfg = make_config(otp=otp, **config)
    return LdapAuthPlugin(cfg, connector=ldap, otp_verifier=OtpVerifier(otp, http))


class TestUserPassVerify:
    def test_correct_password_without_groups(self, ldap):
        plugin = LdapAuthPlugin(make_config(), connector=ldap)
        assert plugin.handle(AUTH, {"username": "alice", "password": "secret"}) is Outcome.SUCCESS

    def test_password_is_checked_on_a_second_connection(self, ldap):
        LdapAuthPlugin(make_config(), connector=ldap).handle(AUTH, {"username": "alice", "password": "secret"})
        assert ldap.connections == [(SERVICE_DN, "svc-pw"), (ALICE_DN, "secret")]

    def test_script_type_string_is_accepted(self, ldap):
        plugin = LdapAuthPlugin(make_config(), connector=ldap)
        assert plugin.handle("user-pass-verify", {"username": "alice", "password": "secret"}) is Outcome.SUCCESS

    def test_wrong_password(self, ldap):
        plugin = LdapAuthPlugin(make_config(), connector=ldap)
        assert plugin.handle(AUTH, {"username": "alice", "password": "nope"}) is Outcome.FAILURE

    def test_unknown_user(self, ldap):
        plugin = LdapAuthPlugin(make_config(), connector=ldap)
        assert plugin.handle(AUTH, {"username": "mallory", "password": "secret"}) is Outcome.FAILURE

    def test_injected_username_does_not_match_anyone(self, ldap):
        plugin = LdapAuthPlugin(make_config(), connector=ldap)
        assert plugin.handle(AUTH, {"username": "*", "password": "secret"}) is Outcome.FAILURE
        assert ldap.searches == [(PEOPLE_DN, "(uid=\\*)")]

    def test_missing_username_makes_no_directory_call(self, ldap):
        plugin = LdapAuthPlugin(make_config(), connector=ldap)
        assert plugin.handle(AUTH, {"password": "secret"}) is Outcome.FAILURE
        assert ldap.connections == []

    def test_missing_password(self, ldap):
        plugin = LdapAuthPlugin(make_config(), connector=ldap)
        assert plugin.handle(AUTH, {"username": "alice"}) is Outcome.FAILURE
        assert ldap.connections == []

    def test_empty_password_is_never_bound(self, ldap):
        plugin = LdapAuthPlugin(make_config(), connector=ldap)
        assert plugin.handle(AUTH, {"username": "alice", "password": ""}) is Outcome.FAILURE
        assert ldap.connections == []

    def test_directory_unreachable_is_error(self, ldap):
        ldap.fail_connect = True
        plugin = LdapAuthPlugin(make_config(), connector=ldap)
        assert plugin.handle(AUTH, {"username": "alice", "password": "secret"}) is Outcome.ERROR

    def test_user_search_failure_is_error(self, ldap):
        ldap.failing_searches.add((PEOPLE_DN, "(uid=alice)"))
        plugin = LdapAuthPlugin(make_config(), connector=ldap)
        assert plugin.handle(AUTH, {"username": "alice", "password": "secret"}) is Outcome.ERROR

    def test_connections_are_closed(self, ldap):
        LdapAuthPlugin(make_config(), connector=ldap).handle(AUTH, {"username": "alice", "password": "secret"})
        assert ldap.closed == 2


class TestGroupRequirement:
    def test_required_group_matched(self, ldap):
        staff = make_group("staff")
        ldap.add_group(staff, "cn=staff," + GROUPS_DN, members=(ALICE_DN,))
        plugin = LdapAuthPlugin(make_config(groups=(staff,), require_group=True), connector=ldap)
        assert plugin.handle(AUTH, {"username": "alice", "password": "secret"}) is Outcome.SUCCESS

    def test_required_group_missing_is_failure(self, ldap):
        staff = make_group("staff")
        ldap.add_group(staff, "cn=staff," + GROUPS_DN)
        plugin = LdapAuthPlugin(make_config(groups=(staff,), require_group=True), connector=ldap)
        assert plugin.handle(AUTH, {"username": "alice", "password": "secret"}) is Outcome.FAILURE

    def test_optional_group_missing_is_success(self, ldap):
        staff = make_group("staff")
        plugin = LdapAuthPlugin(make_config(groups=(staff,)), connector=ldap)
        assert plugin.handle(AUTH, {"username": "alice", "password": "secret"}) is Outcome.SUCCESS

    def test_group_search_failure_is_error(self, ldap):
        staff = make_group("staff")
        ldap.failing_searches.add((staff.base_dn, staff.search_filter))
        plugin = LdapAuthPlugin(make_config(groups=(staff,), require_group=True), connector=ldap)
        assert plugin.handle(AUTH, {"username": "alice", "password": "secret"}) is Outcome.ERROR

    def test_groups_not_searched_after_wrong_password(self, ldap):
        staff = make_group("staff")
        plugin = LdapAuthPlugin(make_config(groups=(staff,), require_group=True), connector=ldap)
        plugin.handle(AUTH, {"username": "alice", "password": "nope"})
        assert (staff.base_dn, staff.search_filter) not in ldap.searches


class TestOtp:
    def test_split_password_and_accepted_code(self, ldap, http):
        plugin = _otp_plugin(ldap, http)
        assert plugin.handle(AUTH, {"username": "alice", "password": "secret123456"}) is Outcome.SUCCESS
        assert ldap.connections[-1] == (ALICE_DN, "secret")
        (url, _, _), = http.calls
        assert "account=alice" in url
        assert "digits=123456" in url

    def test_rejected_code_fails_despite_correct_password(self, ldap):
        http = StubHttp(body="false")
        plugin = _otp_plugin(ldap, http)
        assert plugin.handle(AUTH, {"username": "alice", "password": "secret123456"}) is Outcome.FAILURE
        assert len(http.calls) == 1

    def test_otp_endpoint_unreachable_is_error(self, ldap):
        plugin = _otp_plugin(ldap, StubHttp(error="timed out"))
        assert plugin.handle(AUTH, {"username": "alice", "password": "secret123456"}) is Outcome.ERROR

    @pytest.mark.parametrize("password", ["123456", "12345", ""])
    def test_too_short_makes_no_network_call(self, ldap, http, password):
        plugin = _otp_plugin(ldap, http)
        assert plugin.handle(AUTH, {"username": "alice", "password": password}) is Outcome.FAILURE
        assert http.calls == []
        assert ldap.connections == []

    def test_non_numeric_code_makes_no_network_call(self, ldap, http):
        plugin = _otp_plugin(ldap, http)
        assert plugin.handle(AUTH, {"username": "alice", "password": "secret12345x"}) is Outcome.FAILURE
        assert http.calls == []
        assert ldap.connections == []

    def test_code_not_checked_after_wrong_password(self, ldap, http):
        plugin = _otp_plugin(ldap, http)
        assert plugin.handle(AUTH, {"username": "alice", "password": "wrong123456"}) is Outcome.FAILURE
        assert http.calls == []

    def test_code_not_checked_when_required_group_missing(self, ldap, http):
        plugin = _otp_plugin(ldap, http, groups=(make_group("staff"),), require_group=True)
        assert plugin.handle(AUTH, {"username": "alice", "password": "secret123456"}) is Outcome.FAILURE
        assert http.calls == []

    def test_disabled_otp_uses_whole_password(self, ldap, http):
        ldap.passwords[ALICE_DN] = "secret123456"
        cfg = make_config()
        plugin = LdapAuthPlugin(cfg, connector=ldap, otp_verifier=OtpVerifier(otp_config(), http))
        assert plugin.handle(AUTH, {"username": "alice", "password": "secret123456"}) is Outcome.SUCCESS
        assert http.calls == []


class TestConnectDisconnect:
    ENV = {"username": "alice", "ifconfig_pool_remote_ip": "10.8.0.6"}

    def _plugin(self, ldap, table, **config):
        config.setdefault("pf_enabled", True)
        config.setdefault("pf_table", "vpn_users")
        return LdapAuthPlugin(make_config(**config), connector=ldap, address_table=table)

    def test_missing_remote_address_is_error_without_table_call(self, ldap, table):
        plugin = self._plugin(ldap, table)
        assert plugin.handle(CONNECT, {"username": "alice"}) is Outcome.ERROR
        assert table.calls == []
        assert ldap.connections == []

    def test_connect_adds_to_default_table(self, ldap, table):
        assert self._plugin(ldap, table).handle(CONNECT, self.ENV) is Outcome.SUCCESS
        assert table.calls == [("add", "vpn_users", "10.8.0.6")]

    def test_disconnect_removes_from_default_table(self, ldap, table):
        assert self._plugin(ldap, table).handle(DISCONNECT, self.ENV) is Outcome.SUCCESS
        assert table.calls == [("remove", "vpn_users", "10.8.0.6")]

    def test_connect_uses_matched_group_table(self, ldap, table):
        staff, admins = make_group("staff", pf_table="vpn_staff"), make_group("admins", pf_table="vpn_admins")
        ldap.add_group(staff, "cn=staff," + GROUPS_DN, members=(ALICE_DN,))
        ldap.add_group(admins, "cn=admins," + GROUPS_DN, members=(ALICE_DN,))
        plugin = self._plugin(ldap, table, groups=(staff, admins))
        assert plugin.handle(CONNECT, self.ENV) is Outcome.SUCCESS
        assert table.calls == [("add", "vpn_admins", "10.8.0.6")]

    def test_matched_group_without_table_adds_nothing(self, ldap, table):
        staff = make_group("staff")
        ldap.add_group(staff, "cn=staff," + GROUPS_DN, members=(ALICE_DN,))
        plugin = self._plugin(ldap, table, groups=(staff,))
        assert plugin.handle(CONNECT, self.ENV) is Outcome.SUCCESS
        assert table.calls == []

    def test_required_group_missing_is_failure(self, ldap, table):
        plugin = self._plugin(ldap, table, groups=(make_group("staff"),), require_group=True)
        assert plugin.handle(CONNECT, self.ENV) is Outcome.FAILURE
        assert table.calls == []

    def test_table_failure_is_error(self, ldap):
        table = FakeAddressTable(ok=False)
        assert self._plugin(ldap, table).handle(CONNECT, self.ENV) is Outcome.ERROR

    def test_pf_disabled_touches_no_table(self, ldap, table):
        plugin = self._plugin(ldap, table, pf_enabled=False)
        assert plugin.handle(CONNECT, self.ENV) is Outcome.SUCCESS
        assert table.calls == []

    def test_unknown_user(self, ldap, table):
        env = dict(self.ENV, username="mallory")
        assert self._plugin(ldap, table).handle(CONNECT, env) is Outcome.FAILURE
        assert table.calls == []

    def test_directory_unreachable_is_error(self, ldap, table):
        ldap.fail_connect = True
        assert self._plugin(ldap, table).handle(DISCONNECT, self.ENV) is Outcome.ERROR
        assert table.calls == []


@pytest.mark.parametrize("event", ["learn-address", "", "tls-verify"])
def test_unhandled_event_is_error(ldap, event):
    plugin = LdapAuthPlugin(make_config(), connector=ldap)
    assert plugin.handle(event, {"username": "alice", "password": "secret"}) is Outcome.ERROR
    assert ldap.connections == []


def test_missing_username_fails_before_remote_address_is_checked(ldap, table):
    plugin = LdapAuthPlugin(make_config(pf_enabled=True, pf_table="vpn_users"), connector=ldap, address_table=table)
    assert plugin.handle(CONNECT, {}) is Outcome.FAILURE
    assert ldap.connections == []
    assert table.calls == []
