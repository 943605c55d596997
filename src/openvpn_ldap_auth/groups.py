"""
Group resolution.

Groups are declared in configuration order and the *last* declared group the
user belongs to wins, so broad groups go first and more specific overrides are
appended after them.
"""
import logging
from collections.abc import Sequence
from typing import Optional

from .config import GroupConfig
from .directory import DN_ONLY, Directory, DirectoryEntry, compare_membership

log = logging.getLogger("openvpn.auth.ldap.groups")


def resolve_group(
    session: Directory, groups: Sequence[GroupConfig], user: DirectoryEntry
) -> Optional[GroupConfig]:
    """Return the matching group with the highest precedence, or ``None``.

    A failing group search raises :class:`~openvpn_ldap_auth.directory.DirectoryError`
    instead of being treated as "not a member".
    """
    for group in reversed(groups):
        candidates = session.search(group.base_dn, group.search_filter, DN_ONLY)
        for entry in candidates:
            if compare_membership(session, entry.dn, group.member_attribute, user.dn):
                log.debug(f"User {user.dn!r} matched group {group.name!r} via {entry.dn!r}")
                return group
    log.debug(f"User {user.dn!r} matched none of {len(groups)} configured groups")
    return None
