"""
directory/models.py -- Shapes owned by the admin directory.

AdminRecord itself lives in core/models.py because the viewer and the API
layer use it too. This module holds the directory-only types: bootstrap
seeds, partial updates, and the two-tier read result.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Generic, Optional, TypeVar

from core.models import AdminRecord, is_valid_steam_id, read_text
from core.permissions import Role, normalize_role

T = TypeVar("T")

STAFF_NAME_MAX = 80
DEFAULT_STAFF_NAME = "Staff"


def sanitize_staff_name(value: Any, fallback: str = DEFAULT_STAFF_NAME) -> str:
    """Collapse whitespace and cap at 80 chars; empty input gives fallback."""
    text = re.sub(r"\s+", " ", str(value if value is not None else "")).strip()
    return text[:STAFF_NAME_MAX] if text else fallback


def iso_from_epoch(seconds: float) -> str:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()


def now_iso(clock: Callable[[], float]) -> str:
    return iso_from_epoch(clock())


@dataclass(frozen=True)
class AdminSeed:
    """One bootstrap admin from static configuration."""

    steam_id: str
    staff_name: str = DEFAULT_STAFF_NAME
    staff_role: Role = Role.STAFF


@dataclass(frozen=True)
class AdminPatch:
    """Partial update. None leaves the field unchanged."""

    staff_name: Optional[str] = None
    staff_role: Optional[Role] = None


@dataclass(frozen=True)
class DirectoryRead(Generic[T]):
    """Result of a two-tier read.

    stale=True means the authoritative backend failed and value came from the
    local mirror snapshot taken at as_of.
    """

    value: T
    stale: bool = False
    as_of: Optional[str] = None
    source: str = "local"


@dataclass(frozen=True)
class DirectoryCheck:
    """Outcome of one round trip to the remote directory (operator diagnostics)."""

    url_configured: bool
    key_configured: bool
    remote_reachable: bool = False
    message: str = ""
    backend_status: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.url_configured and self.key_configured and self.remote_reachable


def record_from_row(row: Any) -> Optional[AdminRecord]:
    """Map a backend row (dict with snake_case keys) to an AdminRecord.

    Rows with a malformed steam id are dropped -- they never count as admins.
    """
    if row is None:
        return None
    get = row.get if isinstance(row, dict) else row._mapping.get
    steam_id = read_text(get("steam_id"))
    if not is_valid_steam_id(steam_id):
        return None
    created_at = read_text(get("created_at"))
    return AdminRecord(
        steam_id=steam_id,
        staff_name=sanitize_staff_name(get("staff_name")),
        staff_role=normalize_role(get("staff_role")),
        created_at=created_at,
        updated_at=read_text(get("updated_at"), created_at),
    )


def record_to_row(record: AdminRecord) -> dict[str, str]:
    return {
        "steam_id": record.steam_id,
        "staff_name": record.staff_name,
        "staff_role": normalize_role(record.staff_role).value,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }
