"""
Request signing for the OTP verification endpoint.

The signature is ``sha256(secret + canonical + timestamp).hexdigest() + timestamp``
where ``canonical`` is the ``key=value`` parameter list joined by ``&``. Without
extra parameters the fixed fields are used in their natural (already sorted)
order; with extra parameters every token is sorted by its raw ``key=value`` text.
The ``algorithm`` request field only describes how the OTP is generated; the
signature is always SHA-256.
"""
import hashlib
import logging
import string
import time
from collections.abc import Mapping, Sequence
from typing import Optional, Union
from urllib.parse import unquote_plus

log = logging.getLogger("openvpn.auth.ldap.signing")

_UNRESERVED = frozenset(string.ascii_letters + string.digits + "-_.~")

Params = Sequence[tuple[str, str]]
ExtraParams = Union[str, Mapping[str, str], None]


def url_encode(value: str) -> str:
    """Form-encode ``value``: unreserved bytes kept, space as ``+``, the rest as lowercase ``%xx``."""
    out = []
    for byte in value.encode("utf-8"):
        char = chr(byte)
        if char in _UNRESERVED:
            out.append(char)
        elif char == " ":
            out.append("+")
        else:
            out.append(f"%{byte:02x}")
    return "".join(out)


def url_decode(value: str) -> str:
    """Decode a form-encoded query string (``+`` as space, ``%xx`` escapes)."""
    return unquote_plus(value, encoding="utf-8", errors="replace")


def otp_params(
    username: str, algorithm: str, digits: str, issuer: str, period: int, otp_type: str
) -> list[tuple[str, str]]:
    """The fixed request fields, in canonical order."""
    return [
        ("account", username),
        ("algorithm", algorithm),
        ("digits", digits),
        ("issuer", issuer),
        ("period", str(period)),
        ("type", otp_type),
    ]


def _extra_tokens(extra: ExtraParams) -> list[str]:
    if not extra:
        return []
    if isinstance(extra, Mapping):
        return [f"{k}={v}" for k, v in extra.items()]
    return [url_decode(extra)]


def canonical_params(params: Params, extra: ExtraParams = None) -> str:
    """Return the ``&``-joined parameter string that gets signed.

    ``extra`` is either the raw query string carried by the configured API URL
    or a mapping of additional fields. Once extras are involved the whole
    string is re-split on ``&`` and sorted, so an ``&`` inside a decoded value
    starts a new token.
    """
    tokens = [f"{k}={v}" for k, v in params]
    extras = _extra_tokens(extra)
    if not extras:
        return "&".join(tokens)
    merged = "&".join(tokens + extras)
    return "&".join(sorted(merged.split("&")))


def sign(secret: str, params: Params, extra: ExtraParams = None, now: Optional[float] = None) -> str:
    """Compute the ``sign`` query value for ``params`` at ``now`` (defaults to the current time)."""
    timestamp = str(int(time.time() if now is None else now))
    canonical = canonical_params(params, extra)
    keys = [token.partition("=")[0] for token in canonical.split("&")]
    log.debug(f"Signing parameters {keys} at {timestamp}")
    digest = hashlib.sha256(f"{secret}{canonical}{timestamp}".encode("utf-8")).hexdigest()
    return f"{digest}{timestamp}"
