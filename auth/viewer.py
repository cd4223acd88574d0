"""
auth/viewer.py -- Build the per-request Viewer from the session cookie.

resolve() steps:
  1. Read and verify the session token. Missing or invalid -> anonymous.
  2. Refresh the display name / avatar from Steam when the token carries
     placeholders (name missing or equal to the steam id, empty avatar).
     Best effort: the token values stay on any failure.
  3. Role: the bootstrap seed map first (no I/O), then the authoritative
     directory lookup.
  4. Any directory failure leaves the viewer authenticated but not admin, with
     adminError set. Callers turn that into 503, never 403.

The result carries the (possibly refreshed) SessionUser so the dependency
layer can re-issue the cookie with sliding expiration.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Optional

from auth.cookies import CookieManager
from auth.profiles import SteamProfileProvider
from auth.tokens import SessionTokens
from core.config import Settings
from core.exceptions import AuthServiceError
from core.models import SessionUser, Viewer, anonymous_viewer
from core.permissions import Role, normalize_role, permissions_for
from directory.service import AdminDirectory

logger = logging.getLogger("steamauth.auth.viewer")


def _needs_profile_refresh(user: SessionUser) -> bool:
    return not user.display_name or user.display_name == user.steam_id or not user.avatar


class ViewerResolver:
    def __init__(
        self,
        tokens: SessionTokens,
        cookies: CookieManager,
        directory: AdminDirectory,
        profiles: SteamProfileProvider,
        settings: Settings,
    ) -> None:
        self.tokens = tokens
        self.cookies = cookies
        self.directory = directory
        self.profiles = profiles
        self.settings = settings

    def anonymous(self) -> Viewer:
        return anonymous_viewer(**self._context())

    def _context(self) -> dict:
        return {
            "steam_login_ready": self.settings.steam_login_ready,
            "steam_login_reason": self.settings.steam_login_reason,
            "admin_storage": self.directory.mode,
        }

    async def _refresh_profile(self, user: SessionUser) -> SessionUser:
        if not _needs_profile_refresh(user):
            return user
        # fetch_one never raises; None covers every failure.
        profile = await self.profiles.fetch_one(user.steam_id)
        if profile is None:
            return user
        return SessionUser(
            steam_id=user.steam_id,
            display_name=profile.display_name or user.display_name,
            avatar=profile.avatar or user.avatar,
        )

    async def _resolve_role(self, steam_id: str) -> tuple[Optional[Role], str]:
        """Return (role, admin_error). role is None when the user is not an admin."""
        seeded = self.directory.bootstrap_role(steam_id)
        if seeded is not None:
            return seeded, ""
        try:
            record = await self.directory.lookup_admin(steam_id)
        except AuthServiceError as e:
            # Every directory failure becomes adminError; resolve never raises.
            logger.warning("Admin lookup failed for %s: %s", steam_id, e.message)
            return None, e.message
        if record is None:
            return None, ""
        return normalize_role(record.staff_role), ""

    async def resolve(self, cookies: Mapping[str, str]) -> Viewer:
        user = self.tokens.read_session_token(self.cookies.read_session(cookies))
        if user is None:
            return self.anonymous()

        user = await self._refresh_profile(user)
        role, admin_error = await self._resolve_role(user.steam_id)
        return Viewer(
            authenticated=True,
            is_admin=role is not None,
            admin_error=admin_error,
            role=role,
            permissions=permissions_for(role if role is not None else Role.STAFF),
            user=user,
            **self._context(),
        )
