"""
auth/steam_openid.py -- Steam OpenID 2.0 relying party (stateless mode).

Two legs:
  1. Initiate: build the checkid_setup redirect. return_to carries the signed
     CSRF state token as a query parameter; realm is the external base URL.
  2. Callback: re-post every openid.* parameter to Steam with
     openid.mode=check_authentication and accept the assertion only when the
     response body says is_valid:true. Client-supplied identity claims are
     never trusted without this server-to-server round trip.

The Steam64 id is taken from openid.claimed_id (or openid.identity) by a
fixed path match; any other shape is rejected.

Layer rule: no imports from api/, directory/, or cache/.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Optional
from urllib.parse import urlencode

import httpx

from core.models import is_valid_steam_id, read_text

logger = logging.getLogger("steamauth.openid")

OPENID_NS = "http://specs.openid.net/auth/2.0"
IDENTIFIER_SELECT = "http://specs.openid.net/auth/2.0/identifier_select"

_IS_VALID_TRUE = re.compile(r"is_valid\s*:\s*true", re.IGNORECASE)
_CLAIMED_ID_PATTERNS = (
    re.compile(r"/openid/id/(\d{17})/?$", re.IGNORECASE),
    re.compile(r"/id/(\d{17})/?$", re.IGNORECASE),
)
_LOCAL_HOST_MARKERS = ("localhost", "127.0.0.1", "[::1]", "::1")


def _first_header_value(headers: Mapping[str, str], name: str) -> str:
    return read_text(headers.get(name)).split(",")[0].strip()


def resolve_request_base_url(headers: Mapping[str, str], fallback_base_url: str = "") -> str:
    """Return the externally visible origin (scheme://host) for this request.

    Forwarded headers win over Host. Local hosts default to http, everything
    else to https. Falls back to the configured base URL, then to "" --
    callers must treat "" as "cannot start a login".
    """
    forwarded_proto = _first_header_value(headers, "x-forwarded-proto").lower()
    host = _first_header_value(headers, "x-forwarded-host") or read_text(headers.get("host"))
    if host:
        lowered = host.lower()
        is_local = any(marker in lowered for marker in _LOCAL_HOST_MARKERS)
        protocol = forwarded_proto or ("http" if is_local else "https")
        if protocol not in ("http", "https"):
            return ""
        return f"{protocol}://{host}".rstrip("/")
    return read_text(fallback_base_url).rstrip("/")


def extract_steam_id(claimed_id: Optional[str]) -> str:
    """Pull the Steam64 id out of a claimed_id URL, or return ""."""
    value = read_text(claimed_id)
    if not value:
        return ""
    for pattern in _CLAIMED_ID_PATTERNS:
        match = pattern.search(value)
        if match and is_valid_steam_id(match.group(1)):
            return match.group(1)
    return ""


def openid_params(query: Mapping[str, str]) -> dict[str, str]:
    """Keep only the openid.* parameters of a callback query."""
    return {key: read_text(value) for key, value in query.items() if key.startswith("openid.")}


class SteamOpenIdClient:
    """Builds the login redirect and verifies callback assertions."""

    def __init__(self, http: httpx.AsyncClient, endpoint: str, timeout: float = 10.0) -> None:
        self._http = http
        self.endpoint = endpoint
        self.timeout = timeout

    def build_redirect_url(self, return_to: str, realm: str) -> str:
        params = {
            "openid.ns": OPENID_NS,
            "openid.mode": "checkid_setup",
            "openid.return_to": return_to,
            "openid.realm": realm,
            "openid.identity": IDENTIFIER_SELECT,
            "openid.claimed_id": IDENTIFIER_SELECT,
        }
        return f"{self.endpoint}?{urlencode(params)}"

    async def verify_assertion(self, query: Mapping[str, str]) -> bool:
        """Ask Steam whether the callback assertion is genuine.

        Returns False on any failure: non-2xx, unexpected body, timeout, or
        transport error. The caller collapses every False into one generic
        error redirect.
        """
        form = {"openid.mode": "check_authentication"}
        for key, value in openid_params(query).items():
            if key == "openid.mode":
                continue
            form[key] = value

        try:
            resp = await self._http.post(
                self.endpoint,
                data=form,
                headers={"Accept": "text/plain"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException:
            logger.warning("Steam check_authentication timed out after %.1fs", self.timeout)
            return False
        except httpx.HTTPError as e:
            logger.warning("Steam check_authentication failed: %s", e)
            return False

        if not resp.is_success:
            logger.warning("Steam check_authentication returned HTTP %d", resp.status_code)
            return False
        if not _IS_VALID_TRUE.search(resp.text or ""):
            logger.warning("Steam check_authentication rejected the assertion")
            return False
        return True
