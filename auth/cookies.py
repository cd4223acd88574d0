"""
auth/cookies.py -- Session and CSRF state cookies on Starlette's cookie API.

CookieManager knows cookie names and security attributes only. It never
looks inside a token; that is auth/tokens.py's job.

Reading takes the request.cookies mapping. Writing goes through
Response.set_cookie / Response.delete_cookie with the attributes below:
  path="/"         -- the API and the callback live under different prefixes.
  httponly=True    -- JS cannot read the session (XSS mitigation).
  samesite="lax"   -- sent on top-level navigations (the Steam redirect back
                      to /auth/steam/return is one), withheld on cross-site POST.
  secure           -- when the request arrived over TLS, or when forced on by
                      SECURE_COOKIES.

Layer rule: no imports from api/, directory/, or cache/. Starlette types are
used only for the response object handed in by the route layer.
"""

from __future__ import annotations

from collections.abc import Mapping

from starlette.responses import Response

from core.config import Settings
from core.models import read_text

_LOCAL_HOST_PREFIXES = ("localhost", "127.0.0.1", "[::1]", "::1")


def request_is_secure(headers: Mapping[str, str], default: bool = False) -> bool:
    """Decide whether the client reached us over TLS.

    X-Forwarded-Proto wins when present (first hop only). Otherwise any
    non-local Host is assumed to sit behind TLS.
    """
    forwarded_proto = read_text(headers.get("x-forwarded-proto")).split(",")[0].strip().lower()
    if forwarded_proto:
        return forwarded_proto == "https"
    host = read_text(headers.get("host")).lower()
    if not host:
        return default
    return not host.startswith(_LOCAL_HOST_PREFIXES)


class CookieManager:
    """Reads and writes the session and CSRF state cookies."""

    def __init__(self, settings: Settings) -> None:
        self.session_cookie = settings.session_cookie_name
        self.state_cookie = settings.state_cookie_name
        self.session_max_age = settings.session_ttl_seconds
        self.state_max_age = settings.state_ttl_seconds
        self._force_secure = settings.secure_cookies
        self._default_secure = not settings.debug

    def secure_for(self, headers: Mapping[str, str]) -> bool:
        if self._force_secure is not None:
            return self._force_secure
        return request_is_secure(headers, default=self._default_secure)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read_session(self, cookies: Mapping[str, str]) -> str:
        return read_text(cookies.get(self.session_cookie))

    def read_state(self, cookies: Mapping[str, str]) -> str:
        return read_text(cookies.get(self.state_cookie))

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def _set(self, response: Response, headers: Mapping[str, str], key: str, value: str, max_age: int) -> None:
        response.set_cookie(
            key=key,
            value=value,
            max_age=max_age,
            path="/",
            httponly=True,
            secure=self.secure_for(headers),
            samesite="lax",
        )

    def _delete(self, response: Response, headers: Mapping[str, str], key: str) -> None:
        response.delete_cookie(
            key=key,
            path="/",
            httponly=True,
            secure=self.secure_for(headers),
            samesite="lax",
        )

    def set_session(self, response: Response, headers: Mapping[str, str], token: str) -> None:
        if not token:
            return
        self._set(response, headers, self.session_cookie, token, self.session_max_age)

    def clear_session(self, response: Response, headers: Mapping[str, str]) -> None:
        self._delete(response, headers, self.session_cookie)

    def set_state(self, response: Response, headers: Mapping[str, str], token: str) -> None:
        self._set(response, headers, self.state_cookie, token, self.state_max_age)

    def clear_state(self, response: Response, headers: Mapping[str, str]) -> None:
        self._delete(response, headers, self.state_cookie)

    def clear_all(self, response: Response, headers: Mapping[str, str]) -> None:
        self.clear_session(response, headers)
        self.clear_state(response, headers)
