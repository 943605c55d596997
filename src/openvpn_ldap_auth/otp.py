"""
OTP second factor.

The user types ``<password><digits>``. The trailing ``digits_length`` characters
are split off and checked against a remote HTTP endpoint::

    GET <api>?account=alice&algorithm=sha1&digits=123456&issuer=OpenVPN
             &period=30&type=totp[&sign=<sig>][&<query already in api>]

A response body starting with ``true`` accepts the code; any other body rejects
it. Transport failures are reported as errors rather than rejections.
"""
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

import requests

from . import __version__
from .config import OtpConfig
from .events import Outcome
from .signing import otp_params, sign, url_encode

log = logging.getLogger("openvpn.auth.ldap.otp")

# Only a short literal is expected back; anything past this is ignored.
MAX_RESULT_LENGTH = 256
SUCCESS_TOKEN = "true"
USER_AGENT = f"openvpn-ldap-auth/{__version__}"

_DIGITS_PARAM = re.compile(r"(?<=[?&]digits=)[^&]*")


class HttpError(Exception):
    """The verification request could not be completed."""


@dataclass(frozen=True)
class HttpResult:
    status: Optional[int]
    body: str


# http_get(url, connect_timeout, timeout) -> HttpResult, raising HttpError
HttpGet = Callable[[str, float, float], HttpResult]


def http_get(url: str, connect_timeout: float, timeout: float) -> HttpResult:
    """GET ``url`` and return its status and at most ``MAX_RESULT_LENGTH - 1`` bytes of body.

    ``timeout`` is the overall deadline for the response. ``requests`` only
    bounds each socket read, so the body is read a byte at a time and the
    deadline is checked between reads.
    """
    limit = MAX_RESULT_LENGTH - 1
    body = bytearray()
    deadline = time.monotonic() + timeout
    try:
        with requests.get(
            url,
            timeout=(connect_timeout, timeout),
            stream=True,
            allow_redirects=False,
            headers={"User-Agent": USER_AGENT},
        ) as resp:
            for chunk in resp.iter_content(chunk_size=1):
                body.extend(chunk)
                if len(body) >= limit:
                    break
                if time.monotonic() > deadline:
                    raise HttpError(f"response not complete within {timeout}s")
            status = resp.status_code
    except requests.RequestException as e:
        raise HttpError(str(e)) from e
    return HttpResult(status=status, body=bytes(body[:limit]).decode("utf-8", errors="replace"))


def split_password(password: str, digits_length: int) -> Optional[tuple[str, str]]:
    """Split ``password`` into ``(static_password, otp_digits)``.

    Returns ``None`` when the field is not longer than ``digits_length``, i.e.
    there is no room for a static password in front of the code.
    """
    if len(password) <= digits_length:
        return None
    return password[:-digits_length], password[-digits_length:]


def is_digits(value: str) -> bool:
    """``True`` for a non-empty string of ASCII decimal digits."""
    return bool(value) and all("0" <= c <= "9" for c in value)


def mask_url(url: str) -> str:
    """Hide the OTP code in ``url`` before it is logged."""
    return _DIGITS_PARAM.sub("******", url)


def generate_url(config: OtpConfig, username: str, digits: str, now: Optional[float] = None) -> str:
    """Build the verification URL, signed when ``config.sign_enabled``."""
    base, _, extra = (config.api or "").partition("?")
    params = otp_params(username, config.algorithm, digits, config.issuer, config.period, config.type)

    query = "&".join(f"{key}={url_encode(value)}" for key, value in params)
    if config.sign_enabled:
        query += f"&sign={sign(config.secret or '', params, extra or None, now)}"
    if extra:
        query += f"&{extra}"
    return f"{base}?{query}"


class OtpVerifier:
    """Checks OTP codes against the configured HTTP endpoint."""

    def __init__(self, config: OtpConfig, http: HttpGet = http_get):
        self._config = config
        self._http = http

    @property
    def digits_length(self) -> int:
        return self._config.digits_length

    def verify(self, username: str, digits: str) -> Outcome:
        """Return SUCCESS, FAILURE (rejected or malformed code) or ERROR (transport failure)."""
        if not is_digits(digits):
            log.debug(f"OTP code for {username!r} is not numeric")
            return Outcome.FAILURE

        url = generate_url(self._config, username, digits)
        try:
            result = self._http(url, self._config.connect_timeout, self._config.timeout)
        except HttpError as e:
            log.error(f"OTP request {mask_url(url)} failed: {e}")
            return Outcome.ERROR

        if result.status is None:
            log.error(f"OTP request {mask_url(url)} returned no response code")
            return Outcome.FAILURE

        if result.body.startswith(SUCCESS_TOKEN):
            log.debug(f"OTP accepted for {username!r}")
            return Outcome.SUCCESS

        log.error(
            f"OTP request {mask_url(url)} rejected for {username!r}: "
            f"status={result.status} body={result.body!r}"
        )
        return Outcome.FAILURE
