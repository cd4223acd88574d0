"""
auth/tokens.py -- Compact HMAC-signed tokens for sessions and CSRF state.

Token format:
    base64url(json(payload)) + "." + base64url(HMAC-SHA256(secret, encoded_payload))

No padding, no header segment. The payload always carries "iat" and "exp"
in epoch milliseconds; verify() rejects a token once now >= exp.

Two token kinds share one codec:
  session -- {sid, dn, av, iat, exp}, 30 days, stored in the admin_auth cookie.
  state   -- {n, iat, exp}, 10 minutes, binds an OpenID callback to the
             request that started it.

Neither is stored server-side. Logging out is clearing the cookie; anything
else is natural expiry.

Security design decisions:
  Signature comparison checks the byte length first, then hmac.compare_digest,
  so a forged signature costs the same time to reject regardless of where it
  differs.

  verify() returns None on every failure (shape, signature, encoding, expiry).
  The caller treats None as "anonymous" -- no payload ever leaks through a bad
  signature.

Layer rule: no imports from api/, directory/, or cache/.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Any, Callable, Optional

from core.config import Settings
from core.models import SessionUser, is_valid_steam_id, read_text

logger = logging.getLogger("steamauth.auth.tokens")

_MAX_DISPLAY_NAME = 128
_MAX_AVATAR = 1024
_STATE_NONCE_BYTES = 12


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class TokenCodec:
    """Create and verify signed, expiring tokens.

    The clock returns epoch seconds (time.time by default); tests pass a
    fake clock to step across the expiry boundary.
    """

    def __init__(self, secret: str, clock: Callable[[], float] = time.time) -> None:
        if not secret:
            raise ValueError("TokenCodec requires a non-empty secret")
        self._secret = secret.encode("utf-8")
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _sign(self, encoded_payload: str) -> str:
        digest = hmac.new(self._secret, encoded_payload.encode("ascii"), hashlib.sha256).digest()
        return _b64encode(digest)

    def create(self, payload: dict[str, Any], ttl_seconds: float) -> str:
        """Sign payload with iat/exp stamped from the codec clock."""
        issued_at = self._now_ms()
        body = dict(payload)
        body["iat"] = issued_at
        body["exp"] = issued_at + int(ttl_seconds * 1000)
        encoded = _b64encode(json.dumps(body, separators=(",", ":")).encode("utf-8"))
        return f"{encoded}.{self._sign(encoded)}"

    def verify(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        """Return the payload if the token is authentic and unexpired, else None."""
        token = read_text(token)
        if not token:
            return None
        parts = token.split(".")
        if len(parts) != 2:
            return None
        encoded, signature = parts
        if not encoded or not signature:
            return None

        try:
            received = signature.encode("ascii")
            expected = self._sign(encoded).encode("ascii")
        except (UnicodeEncodeError, UnicodeDecodeError):
            return None
        if len(received) != len(expected):
            return None
        if not hmac.compare_digest(received, expected):
            return None

        try:
            payload = json.loads(_b64decode(encoded).decode("utf-8"))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            return None
        if not isinstance(payload, dict):
            return None

        expires_at = payload.get("exp")
        if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
            return None
        if self._now_ms() >= expires_at:
            return None
        return payload


# ---------------------------------------------------------------------------
# Session and state tokens
# ---------------------------------------------------------------------------


class SessionTokens:
    """Session and CSRF state tokens built on a single TokenCodec."""

    def __init__(self, codec: TokenCodec, session_ttl: float, state_ttl: float) -> None:
        self.codec = codec
        self.session_ttl = session_ttl
        self.state_ttl = state_ttl

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], float] = time.time) -> "SessionTokens":
        return cls(
            TokenCodec(settings.secret_key, clock=clock),
            session_ttl=settings.session_ttl_seconds,
            state_ttl=settings.state_ttl_seconds,
        )

    def issue_session_token(self, user: SessionUser) -> str:
        """Return a session token for user, or "" when the steam id is invalid."""
        steam_id = read_text(user.steam_id)
        if not is_valid_steam_id(steam_id):
            return ""
        payload = {
            "sid": steam_id,
            "dn": read_text(user.display_name, steam_id)[:_MAX_DISPLAY_NAME],
            "av": read_text(user.avatar)[:_MAX_AVATAR],
        }
        return self.codec.create(payload, self.session_ttl)

    def read_session_token(self, token: Optional[str]) -> Optional[SessionUser]:
        payload = self.codec.verify(token)
        if payload is None:
            return None
        steam_id = read_text(payload.get("sid"))
        if not is_valid_steam_id(steam_id):
            logger.warning("Session token with malformed steam id rejected")
            return None
        return SessionUser(
            steam_id=steam_id,
            display_name=read_text(payload.get("dn"), steam_id),
            avatar=read_text(payload.get("av")),
        )

    def issue_state_token(self) -> str:
        nonce = _b64encode(secrets.token_bytes(_STATE_NONCE_BYTES))
        return self.codec.create({"n": nonce}, self.state_ttl)

    def read_state_token(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        payload = self.codec.verify(token)
        if payload is None or not read_text(payload.get("n")):
            return None
        return payload
