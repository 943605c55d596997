"""
Command line entry point for OpenVPN script hooks.

Server configuration::

    script-security 2
    up "/usr/local/bin/openvpn-ldap-auth --clear-tables /etc/openvpn/auth-ldap.ini"
    auth-user-pass-verify "/usr/local/bin/openvpn-ldap-auth /etc/openvpn/auth-ldap.ini" via-file
    client-connect "/usr/local/bin/openvpn-ldap-auth /etc/openvpn/auth-ldap.ini"
    client-disconnect "/usr/local/bin/openvpn-ldap-auth /etc/openvpn/auth-ldap.ini"

The event comes from ``script_type`` in the environment; the exit status is 0
to accept and 1 to reject.
"""
import argparse
import logging
import os
import sys
from logging.handlers import SysLogHandler
from pathlib import Path
from typing import Optional

from . import __version__
from .config import ConfigError, LoggingConfig, load_config
from .events import EventType, Outcome
from .pf import PacketFilter, PacketFilterError, clear_tables
from .plugin import PASSWORD_VAR, USERNAME_VAR, LdapAuthPlugin

log = logging.getLogger("openvpn.auth.ldap")

LOG_FORMAT = "openvpn-ldap-auth[%(process)d] %(levelname)s %(name)s: %(message)s"


def _setup_logging() -> None:
    """Log to stderr, which OpenVPN copies into its own log."""
    for handler in list(log.handlers):
        log.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    log.addHandler(handler)
    log.setLevel(logging.INFO)


def _apply_logging_config(cfg: LoggingConfig) -> None:
    log.setLevel(cfg.level)
    if not cfg.syslog:
        return

    facility = SysLogHandler.facility_names.get(cfg.syslog_facility.lower())
    if facility is None:
        log.warning(f"Unknown syslog facility {cfg.syslog_facility!r}, using 'auth'")
        facility = SysLogHandler.LOG_AUTH

    address: str | tuple[str, int] = cfg.syslog_address
    host, sep, port = cfg.syslog_address.rpartition(":")
    if sep and "/" not in cfg.syslog_address and port.isdigit():
        address = (host, int(port))

    try:
        handler = SysLogHandler(address=address, facility=facility)
    except OSError as e:
        log.warning(f"Syslog unavailable at {cfg.syslog_address!r}: {e}")
        return
    handler.setFormatter(logging.Formatter("openvpn-ldap-auth[%(process)d]: %(message)s"))
    log.addHandler(handler)


def read_credentials(path: str) -> tuple[str, str]:
    """Read the username and password lines OpenVPN writes for ``via-file``."""
    lines = Path(path).read_text(encoding="utf-8").splitlines()
    if len(lines) < 2:
        raise ValueError(f"{path} does not contain a username and a password line")
    return lines[0], lines[1]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="openvpn-ldap-auth",
        description="Authenticate and authorize OpenVPN clients against LDAP.",
    )
    parser.add_argument("config", help="path to the INI configuration file")
    parser.add_argument(
        "file",
        nargs="?",
        help="credentials file passed by OpenVPN for user-pass-verify via-file (ignored otherwise)",
    )
    parser.add_argument(
        "--event",
        choices=[e.value for e in EventType],
        help="event to handle (default: $script_type)",
    )
    parser.add_argument(
        "--clear-tables",
        action="store_true",
        help="flush every configured pf table and exit",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    _setup_logging()

    try:
        config = load_config(args.config)
    except ConfigError as e:
        log.error(f"Configuration error: {e}")
        return Outcome.ERROR.exit_code
    _apply_logging_config(config.logging)

    if args.clear_tables:
        if not config.pf_enabled:
            log.info("pf is not enabled; no tables to clear")
            return 0
        try:
            pf = PacketFilter.open()
        except PacketFilterError as e:
            log.error(f"Failed to open pf: {e}")
            return Outcome.ERROR.exit_code
        return 0 if clear_tables(pf, config) else Outcome.ERROR.exit_code

    env = dict(os.environ)
    event = args.event or env.get("script_type", "")

    if event == EventType.AUTH_USER_PASS_VERIFY.value and args.file:
        try:
            env[USERNAME_VAR], env[PASSWORD_VAR] = read_credentials(args.file)
        except (OSError, ValueError) as e:
            log.error(f"Cannot read credentials: {e}")
            return Outcome.ERROR.exit_code

    try:
        plugin = LdapAuthPlugin(config)
    except PacketFilterError as e:
        log.error(f"Failed to open pf: {e}")
        return Outcome.ERROR.exit_code

    return plugin.handle(event, env).exit_code


if __name__ == "__main__":
    sys.exit(main())
