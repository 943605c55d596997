"""
Configuration records and the INI loader that produces them.

The file is read once at process start. Every record is a frozen dataclass so a
loaded :class:`AuthConfig` can be shared between concurrent invocations without
locking.

Example::

    [ldap]
    url = ldap://ldap1.example.com, ldap://ldap2.example.com
    timeout = 15
    bind_dn = cn=openvpn,ou=services,dc=example,dc=com
    bind_password_file = /etc/openvpn/ldap.secret
    start_tls = yes

    [authorization]
    base_dn = ou=people,dc=example,dc=com
    search_filter = (&(uid=%u)(accountStatus=active))
    require_group = yes

    [group:staff]
    base_dn = ou=groups,dc=example,dc=com
    search_filter = (cn=staff)
    member_attribute = uniqueMember
    pf_table = ips_vpn_staff
"""
import configparser
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

log = logging.getLogger("openvpn.auth.ldap.config")

GROUP_SECTION_PREFIX = "group:"

DEFAULT_LDAP_TIMEOUT = 15
DEFAULT_MEMBER_ATTRIBUTE = "uniqueMember"

DEFAULT_OTP_DIGITS_LENGTH = 6
DEFAULT_OTP_PERIOD = 30
DEFAULT_OTP_ISSUER = "OpenVPN"
DEFAULT_OTP_TYPE = "totp"
DEFAULT_OTP_ALGORITHM = "sha1"
DEFAULT_OTP_TIMEOUT = 3
DEFAULT_OTP_CONNECT_TIMEOUT = 3


class ConfigError(ValueError):
    """Raised when the configuration file is missing, unreadable or inconsistent."""


@dataclass(frozen=True)
class TlsConfig:
    ca_cert_file: Optional[str] = None
    ca_cert_dir: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    cipher_suite: Optional[str] = None
    start_tls: bool = False
    verify_ssl: bool = True


@dataclass(frozen=True)
class LdapConfig:
    """Connection parameters shared by the lookup and the credential-test connections."""

    urls: tuple[str, ...]
    timeout: int = DEFAULT_LDAP_TIMEOUT
    follow_referrals: bool = False
    bind_dn: Optional[str] = None
    bind_password: Optional[str] = None
    tls: TlsConfig = field(default_factory=TlsConfig)
    debug_logging: bool = False


@dataclass(frozen=True)
class GroupConfig:
    """One ``[group:<name>]`` section."""

    name: str
    base_dn: str
    search_filter: str
    member_attribute: str = DEFAULT_MEMBER_ATTRIBUTE
    pf_table: Optional[str] = None


@dataclass(frozen=True)
class OtpConfig:
    enabled: bool = False
    api: Optional[str] = None
    secret: Optional[str] = None
    sign_enabled: bool = False
    digits_length: int = DEFAULT_OTP_DIGITS_LENGTH
    period: int = DEFAULT_OTP_PERIOD
    issuer: str = DEFAULT_OTP_ISSUER
    type: str = DEFAULT_OTP_TYPE
    algorithm: str = DEFAULT_OTP_ALGORITHM
    timeout: int = DEFAULT_OTP_TIMEOUT
    connect_timeout: int = DEFAULT_OTP_CONNECT_TIMEOUT


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    syslog: bool = False
    syslog_address: str = "/dev/log"
    syslog_facility: str = "auth"


@dataclass(frozen=True)
class AuthConfig:
    """Everything the plugin needs, loaded once and never mutated."""

    ldap: LdapConfig
    base_dn: str
    search_filter: str
    require_group: bool = False
    pf_enabled: bool = False
    pf_table: Optional[str] = None
    groups: tuple[GroupConfig, ...] = ()
    otp: OtpConfig = field(default_factory=OtpConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def pf_tables(self) -> list[str]:
        """Return every configured pf table name, default table first, without duplicates."""
        tables: list[str] = []
        for name in [self.pf_table, *(g.pf_table for g in self.groups)]:
            if name and name not in tables:
                tables.append(name)
        return tables


def _get_sensitive(parser: configparser.ConfigParser, section: str, key: str) -> Optional[str]:
    """Return a secret stored either in a ``<key>_file`` file or inline."""
    # 1) Secret indirection via a file readable only by the OpenVPN user
    secret_file = parser.get(section, f"{key}_file", fallback=None)
    if secret_file:
        try:
            val = Path(secret_file).read_text(encoding="utf-8").strip()
        except OSError as e:
            raise ConfigError(f"{section}.{key}_file: cannot read {secret_file!r}: {e}") from e
        if val:
            return val
    # 2) Plaintext fallback from the config file
    return parser.get(section, key, fallback=None) or None


def _split_uris(val: Optional[str]) -> list[str]:
    """Split LDAP URIs separated by commas and/or whitespace."""
    if not val:
        return []
    return [p for p in re.split(r"[,\s]+", val.strip()) if p]


def _optional(parser: configparser.ConfigParser, section: str, key: str) -> Optional[str]:
    value = parser.get(section, key, fallback=None)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _required(parser: configparser.ConfigParser, section: str, key: str) -> str:
    value = _optional(parser, section, key)
    if value is None:
        raise ConfigError(f"{section}.{key} must be set")
    return value


def _getint(parser: configparser.ConfigParser, section: str, key: str, fallback: int) -> int:
    try:
        return parser.getint(section, key, fallback=fallback)
    except ValueError as e:
        raise ConfigError(f"{section}.{key} must be an integer: {e}") from e


def _getboolean(parser: configparser.ConfigParser, section: str, key: str, fallback: bool) -> bool:
    try:
        return parser.getboolean(section, key, fallback=fallback)
    except ValueError as e:
        raise ConfigError(f"{section}.{key} must be a boolean: {e}") from e


def _load_ldap(parser: configparser.ConfigParser) -> LdapConfig:
    if not parser.has_section("ldap"):
        raise ConfigError("missing [ldap] section")

    urls = _split_uris(parser.get("ldap", "url", fallback=""))
    if not urls:
        raise ConfigError("ldap.url must be set to at least one URI")

    tls = TlsConfig(
        ca_cert_file=_optional(parser, "ldap", "tls_ca_cert_file"),
        ca_cert_dir=_optional(parser, "ldap", "tls_ca_cert_dir"),
        cert_file=_optional(parser, "ldap", "tls_cert_file"),
        key_file=_optional(parser, "ldap", "tls_key_file"),
        cipher_suite=_optional(parser, "ldap", "tls_cipher_suite"),
        start_tls=_getboolean(parser, "ldap", "start_tls", False),
        verify_ssl=_getboolean(parser, "ldap", "verify_ssl", True),
    )
    if tls.start_tls and any(u.lower().startswith("ldaps://") for u in urls):
        raise ConfigError("start_tls=true requires ldap:// (plain) servers, not ldaps://")
    if bool(tls.cert_file) != bool(tls.key_file):
        raise ConfigError("ldap.tls_cert_file and ldap.tls_key_file must be set together")

    timeout = _getint(parser, "ldap", "timeout", DEFAULT_LDAP_TIMEOUT)
    if timeout <= 0:
        raise ConfigError("ldap.timeout must be positive")

    return LdapConfig(
        urls=tuple(urls),
        timeout=timeout,
        follow_referrals=_getboolean(parser, "ldap", "follow_referrals", False),
        bind_dn=_optional(parser, "ldap", "bind_dn"),
        bind_password=_get_sensitive(parser, "ldap", "bind_password"),
        tls=tls,
        debug_logging=_getboolean(parser, "ldap", "debug_logging", False),
    )


def _load_groups(parser: configparser.ConfigParser) -> tuple[GroupConfig, ...]:
    # configparser keeps sections in file order, which is the declaration order.
    groups = []
    for section in parser.sections():
        if not section.startswith(GROUP_SECTION_PREFIX):
            continue
        name = section[len(GROUP_SECTION_PREFIX):].strip()
        if not name:
            raise ConfigError(f"[{section}] needs a name, e.g. [group:staff]")
        groups.append(
            GroupConfig(
                name=name,
                base_dn=_required(parser, section, "base_dn"),
                search_filter=_required(parser, section, "search_filter"),
                member_attribute=_optional(parser, section, "member_attribute") or DEFAULT_MEMBER_ATTRIBUTE,
                pf_table=_optional(parser, section, "pf_table"),
            )
        )
    return tuple(groups)


def _load_otp(parser: configparser.ConfigParser) -> OtpConfig:
    if not parser.has_section("otp"):
        return OtpConfig()

    enabled = _getboolean(parser, "otp", "enabled", False)
    sign_enabled = _getboolean(parser, "otp", "sign_enabled", False)
    api = _optional(parser, "otp", "api")
    secret = _get_sensitive(parser, "otp", "secret")

    if enabled and not api:
        raise ConfigError("otp.api must be set when otp.enabled=true")
    if enabled and sign_enabled and not secret:
        raise ConfigError("otp.secret must be set when otp.sign_enabled=true")

    digits_length = _getint(parser, "otp", "digits_length", DEFAULT_OTP_DIGITS_LENGTH)
    if digits_length < DEFAULT_OTP_DIGITS_LENGTH:
        log.warning(
            f"otp.digits_length={digits_length} is below the minimum, using {DEFAULT_OTP_DIGITS_LENGTH}"
        )
        digits_length = DEFAULT_OTP_DIGITS_LENGTH

    period = _getint(parser, "otp", "period", DEFAULT_OTP_PERIOD)
    timeout = _getint(parser, "otp", "timeout", DEFAULT_OTP_TIMEOUT)
    connect_timeout = _getint(parser, "otp", "connect_timeout", DEFAULT_OTP_CONNECT_TIMEOUT)

    return OtpConfig(
        enabled=enabled,
        api=api,
        secret=secret,
        sign_enabled=sign_enabled,
        digits_length=digits_length,
        period=period if period > 0 else DEFAULT_OTP_PERIOD,
        issuer=_optional(parser, "otp", "issuer") or DEFAULT_OTP_ISSUER,
        type=_optional(parser, "otp", "type") or DEFAULT_OTP_TYPE,
        algorithm=_optional(parser, "otp", "algorithm") or DEFAULT_OTP_ALGORITHM,
        timeout=timeout if timeout > 0 else DEFAULT_OTP_TIMEOUT,
        connect_timeout=connect_timeout if connect_timeout > 0 else DEFAULT_OTP_CONNECT_TIMEOUT,
    )


def _load_logging(parser: configparser.ConfigParser, debug_logging: bool) -> LoggingConfig:
    level = (_optional(parser, "logging", "level") or ("DEBUG" if debug_logging else "INFO")).upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ConfigError(f"logging.level {level!r} is not a logging level")
    return LoggingConfig(
        level=level,
        syslog=_getboolean(parser, "logging", "syslog", False),
        syslog_address=_optional(parser, "logging", "syslog_address") or "/dev/log",
        syslog_facility=_optional(parser, "logging", "syslog_facility") or "auth",
    )


def parse_config(text: str) -> AuthConfig:
    """Build an :class:`AuthConfig` from INI ``text``."""
    # Interpolation is off: "%u" in filters and "%" in passwords are literal.
    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read_string(text)
    except configparser.Error as e:
        raise ConfigError(f"invalid configuration: {e}") from e

    ldap = _load_ldap(parser)

    if not parser.has_section("authorization"):
        raise ConfigError("missing [authorization] section")
    search_filter = _required(parser, "authorization", "search_filter")
    if "%u" not in search_filter:
        log.warning("authorization.search_filter has no %u placeholder; every user matches the same entry")

    config = AuthConfig(
        ldap=ldap,
        base_dn=_required(parser, "authorization", "base_dn"),
        search_filter=search_filter,
        require_group=_getboolean(parser, "authorization", "require_group", False),
        pf_enabled=_getboolean(parser, "authorization", "pf_enabled", False),
        pf_table=_optional(parser, "authorization", "pf_table"),
        groups=_load_groups(parser),
        otp=_load_otp(parser),
        logging=_load_logging(parser, ldap.debug_logging),
    )

    if config.require_group and not config.groups:
        raise ConfigError("authorization.require_group=true needs at least one [group:*] section")
    if config.pf_enabled and not config.pf_tables():
        raise ConfigError("authorization.pf_enabled=true needs a pf_table in [authorization] or a group")
    return config


def load_config(path: str | Path) -> AuthConfig:
    """Read and validate the configuration file at ``path``."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read configuration {str(path)!r}: {e}") from e
    return parse_config(text)
