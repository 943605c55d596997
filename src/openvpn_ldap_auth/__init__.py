"""
LDAP authentication plugin for OpenVPN.

Key notes:
* Users are located with a search filter, then verified by binding as their DN
  on a second connection.
* Ordered ``[group:*]`` sections decide authorization; the last declared match wins.
* Optional OTP second factor: the trailing digits of the password are checked
  against a remote HTTP endpoint, optionally with a signed request.
* Optional pf address tables updated on client connect/disconnect.
"""
__version__ = "0.4.0"

from .config import AuthConfig, ConfigError, GroupConfig, load_config  # noqa: E402
from .events import EventType, Outcome  # noqa: E402
from .plugin import LdapAuthPlugin  # noqa: E402

__all__ = [
    "AuthConfig",
    "ConfigError",
    "EventType",
    "GroupConfig",
    "LdapAuthPlugin",
    "Outcome",
    "load_config",
    "__version__",
]
