"""
core/permissions.py -- Staff roles and the role -> permission matrix.

Every role string that enters the system (request bodies, directory rows,
bootstrap config, token claims) goes through normalize_role(). Unknown input
falls back to the least-privileged role; it never escalates.

The matrix is a flat lookup with no inheritance between roles.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Union


class Role(str, Enum):
    DEVELOPER = "developer"
    ADMINISTRADOR = "administrador"
    STAFF = "staff"


_DEVELOPER_ALIASES = frozenset({"developer", "dev", "super-admin", "super_admin", "superadmin", "owner", "root"})
_ADMINISTRADOR_ALIASES = frozenset(
    {"administrador", "admin", "administrator", "administrador(a)", "moderator", "mod", "manager", "gerente"}
)


def normalize_role(raw: Union[Role, str, None], fallback: Role = Role.STAFF) -> Role:
    """Map any role spelling onto the closed Role enum.

    Empty input returns the fallback. So does any unrecognized non-empty
    string: callers updating an existing record pass its current role as the
    fallback, everybody else gets Staff.
    """
    if isinstance(raw, Role):
        return raw
    value = str(raw or "").strip().lower()
    if not value:
        return fallback
    if value in _DEVELOPER_ALIASES:
        return Role.DEVELOPER
    if value in _ADMINISTRADOR_ALIASES:
        return Role.ADMINISTRADOR
    if value == Role.STAFF.value:
        return Role.STAFF
    return fallback


@dataclass(frozen=True)
class PermissionSet:
    manage_staff: bool = False
    publish_game: bool = False
    edit_game: bool = False
    remove_game: bool = False
    manage_maintenance: bool = False

    def to_dict(self) -> dict[str, bool]:
        """Wire form with the camelCase permission names."""
        return {_WIRE_NAMES[key]: value for key, value in asdict(self).items()}

    def allows(self, name: str) -> bool:
        attr = _ATTR_NAMES.get(name)
        return attr is not None and getattr(self, attr) is True


_WIRE_NAMES = {
    "manage_staff": "manageStaff",
    "publish_game": "publishGame",
    "edit_game": "editGame",
    "remove_game": "removeGame",
    "manage_maintenance": "manageMaintenance",
}
_ATTR_NAMES = {wire: attr for attr, wire in _WIRE_NAMES.items()}

PERMISSION_NAMES: tuple[str, ...] = tuple(_WIRE_NAMES.values())

ROLE_PERMISSIONS: dict[Role, PermissionSet] = {
    Role.DEVELOPER: PermissionSet(
        manage_staff=True,
        publish_game=True,
        edit_game=True,
        remove_game=True,
        manage_maintenance=True,
    ),
    Role.ADMINISTRADOR: PermissionSet(publish_game=True, manage_maintenance=True),
    Role.STAFF: PermissionSet(),
}


def permissions_for(role: Union[Role, str, None]) -> PermissionSet:
    return ROLE_PERMISSIONS[normalize_role(role)]


def has_permission(viewer: Any, name: str) -> bool:
    """True only for an authenticated admin whose permission set grants name."""
    if viewer is None:
        return False
    if not (getattr(viewer, "authenticated", False) and getattr(viewer, "is_admin", False)):
        return False
    permissions = getattr(viewer, "permissions", None)
    return isinstance(permissions, PermissionSet) and permissions.allows(name)
