"""
auth/cookies.py -- Session cookie encoding and extraction.

The cookie policy (name, domain, Secure, SameSite) is fixed configuration
taken from Settings at construction time. Nothing about the cookie depends on
the incoming request.

HttpOnly is always set: page scripts must never be able to read the session
token. Path is always "/".

Encoding goes through http.cookies.Morsel, which is what Starlette's
Response.set_cookie() uses internally, so the header we emit matches what
the framework would emit. Parsing goes through Starlette's cookie_parser(),
the same tolerant parser behind request.cookies, one chunk at a time so
that the first cookie with the configured name wins. It never raises and
skips junk chunks.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from email.utils import format_datetime
from http.cookies import SimpleCookie

from starlette.requests import cookie_parser

from core.config import Settings

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _http_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


class CookieCodec:
    """Turns session tokens into Set-Cookie header values and back.

    Usage:
        codec = CookieCodec(settings)
        response.headers["Set-Cookie"] = codec.encode(issued.token, issued.expires_at)
        token = codec.extract(request.headers)   # str or None
    """

    def __init__(self, settings: Settings) -> None:
        self.name = settings.cookie_name
        self._domain = settings.cookie_domain
        self._secure = settings.cookie_secure
        self._samesite = settings.cookie_samesite

    def encode(self, token: str, expires_at: datetime) -> str:
        """Return a Set-Cookie header value carrying the session token."""
        return self._build(token, expires_at)

    def encode_cleared(self) -> str:
        """Return a Set-Cookie header value that makes the browser drop the cookie.

        Same attributes as encode() so the browser matches the existing
        cookie; an empty (unquoted) value and an epoch expiry force deletion.
        """
        return self._build("", _EPOCH)

    def extract(self, headers: Mapping[str, str]) -> str | None:
        """Return the session token from request headers, or None.

        Missing header, missing cookie, empty value: all None. Never raises.
        """
        raw = headers.get("cookie")
        if raw is None:
            # Plain dicts are case-sensitive; Starlette Headers are not.
            raw = next((v for k, v in headers.items() if k.lower() == "cookie"), None)
        if not raw:
            return None
        for chunk in raw.split(";"):
            key, sep, _ = chunk.partition("=")
            if sep and key.strip() == self.name:
                # The first match wins: browsers send the most specific
                # (longest path, exact host) cookie first.
                token = cookie_parser(chunk).get(self.name)
                return token or None
        return None

    def _build(self, value: str, expires: datetime) -> str:
        cookie: SimpleCookie = SimpleCookie()
        cookie[self.name] = value
        morsel = cookie[self.name]
        # Tokens are cookie-safe as they are; only the empty value would
        # otherwise be rendered as a quoted "".
        morsel.set(self.name, value, value)
        morsel["httponly"] = True
        morsel["path"] = "/"
        morsel["samesite"] = self._samesite
        morsel["expires"] = _http_date(expires)
        if self._domain:
            morsel["domain"] = self._domain
        if self._secure:
            morsel["secure"] = True
        return morsel.OutputString()
