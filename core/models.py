"""
core/models.py -- Domain dataclasses for identities, admins and viewers.

Pattern: Data class (pure data container, near-zero logic). Stores, the
resolver and the routes do the work; these own the shape.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from core.permissions import PermissionSet, Role, permissions_for

STEAM_ID_PATTERN = re.compile(r"^\d{17}$")

STEAM_PROFILE_URL = "https://steamcommunity.com/profiles/{steam_id}"


def is_valid_steam_id(value: Any) -> bool:
    """A Steam64 id is exactly 17 ASCII digits. Nothing else is accepted."""
    return isinstance(value, str) and STEAM_ID_PATTERN.fullmatch(value) is not None


def read_text(value: Any, fallback: str = "") -> str:
    text = str(value if value is not None else "").strip()
    return text or fallback


def profile_url_for(steam_id: str) -> str:
    return STEAM_PROFILE_URL.format(steam_id=steam_id) if steam_id else ""


@dataclass(frozen=True)
class SessionUser:
    """Identity carried inside the session token."""

    steam_id: str
    display_name: str
    avatar: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"steamId": self.steam_id, "displayName": self.display_name, "avatar": self.avatar}


@dataclass(frozen=True)
class SteamProfile:
    steam_id: str
    display_name: str
    avatar: str = ""
    profile_url: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "steamId": self.steam_id,
            "displayName": self.display_name,
            "avatar": self.avatar,
            "profileUrl": self.profile_url,
        }


@dataclass
class AdminRecord:
    """An authorized staff member. steam_id is the primary key everywhere."""

    steam_id: str
    staff_name: str = "Staff"
    staff_role: Role = Role.STAFF
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class Viewer:
    """Per-request authorization view. Derived, never persisted."""

    authenticated: bool = False
    is_admin: bool = False
    admin_error: str = ""
    role: Optional[Role] = None
    permissions: PermissionSet = field(default_factory=lambda: permissions_for(Role.STAFF))
    user: Optional[SessionUser] = None
    steam_login_ready: bool = True
    steam_login_reason: str = ""
    admin_storage: str = "local"

    def to_dict(self) -> dict[str, Any]:
        return {
            "authenticated": self.authenticated,
            "isAdmin": self.is_admin,
            "adminError": self.admin_error,
            "role": self.role.value if self.role else "",
            "permissions": self.permissions.to_dict(),
            "user": self.user.to_dict() if self.user else None,
            "steamLoginReady": self.steam_login_ready,
            "steamLoginReason": self.steam_login_reason,
            "adminStorage": self.admin_storage,
        }


def anonymous_viewer(**overrides: Any) -> Viewer:
    """The canonical unauthenticated viewer: Staff-level, all permissions false."""
    return Viewer(**overrides)
