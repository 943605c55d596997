"""Search filter construction from untrusted usernames."""

USERNAME_PLACEHOLDER = "%u"

# RFC 2254 special characters. NUL is cut off by the host before we see it.
_SPECIAL_CHARS = "*()\\"


def escape_for_filter(raw: str) -> str:
    """Backslash-escape ``*``, ``(``, ``)`` and ``\\`` so ``raw`` cannot widen a filter."""
    return "".join(f"\\{c}" if c in _SPECIAL_CHARS else c for c in raw)


def build_filter(template: str, username: str) -> str:
    """Replace every ``%u`` in ``template`` with the escaped ``username``.

    >>> build_filter("(uid=%u)", "bob*")
    '(uid=bob\\\\*)'
    """
    # str.replace scans left to right without overlap, and the escaped name is
    # never rescanned, so a username containing "%u" is inserted literally.
    return template.replace(USERNAME_PLACEHOLDER, escape_for_filter(username))
