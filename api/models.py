"""
API request and response models for the Steam admin auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire names are camelCase (steamId, isAdmin, ...). Python attributes stay
snake_case; the alias generator does the translation, and FastAPI serializes
response models by alias.
"""

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from core.models import AdminRecord, SteamProfile, Viewer, profile_url_for

_WIRE = ConfigDict(alias_generator=to_camel, populate_by_name=True)
_WIRE_FROZEN = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Viewer
# ---------------------------------------------------------------------------


class PermissionsModel(BaseModel):
    model_config = _WIRE_FROZEN

    manage_staff: bool = False
    publish_game: bool = False
    edit_game: bool = False
    remove_game: bool = False
    manage_maintenance: bool = False


class ViewerUser(BaseModel):
    model_config = _WIRE_FROZEN

    steam_id: str
    display_name: str
    avatar: str = ""


class ViewerResponse(BaseModel):
    """Response for GET /api/me. Always 200, anonymous or not."""

    model_config = _WIRE_FROZEN

    authenticated: bool
    is_admin: bool
    admin_error: str = ""
    role: str = ""
    permissions: PermissionsModel
    user: Optional[ViewerUser] = None
    steam_login_ready: bool = True
    steam_login_reason: str = ""
    admin_storage: str = "local"

    @classmethod
    def from_viewer(cls, viewer: Viewer) -> "ViewerResponse":
        return cls.model_validate(viewer.to_dict())


# ---------------------------------------------------------------------------
# Admin directory
# ---------------------------------------------------------------------------


class AdminResponse(BaseModel):
    """One staff member, enriched with the Steam profile when available."""

    model_config = _WIRE_FROZEN

    steam_id: str
    staff_name: str
    staff_role: str
    created_at: str = ""
    updated_at: str = ""
    display_name: str
    avatar: str = ""
    profile_url: str = ""

    @classmethod
    def from_record(cls, record: AdminRecord, profile: Optional[SteamProfile] = None) -> "AdminResponse":
        return cls(
            steam_id=record.steam_id,
            staff_name=record.staff_name,
            staff_role=record.staff_role.value,
            created_at=record.created_at,
            updated_at=record.updated_at,
            display_name=profile.display_name if profile else record.steam_id,
            avatar=profile.avatar if profile else "",
            profile_url=profile.profile_url if profile else profile_url_for(record.steam_id),
        )


class AdminListResponse(BaseModel):
    """Response for GET /api/admins.

    stale=True means the remote directory failed and the list is the local
    mirror snapshot taken at asOf.
    """

    model_config = _WIRE_FROZEN

    admins: list[AdminResponse]
    stale: bool = False
    as_of: Optional[str] = None


class AdminMutationResponse(BaseModel):
    """Response for POST/PATCH /api/admins. Carries the refreshed list."""

    model_config = _WIRE_FROZEN

    ok: bool = True
    admin: Optional[AdminResponse] = None
    admins: list[AdminResponse] = Field(default_factory=list)
    stale: bool = False


class AdminCreate(BaseModel):
    """Request body for POST /api/admins.

    steamId is validated by the directory (400 on a malformed id), not here,
    so a bad id gets the same error shape from every entry point.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    steam_id: str = Field(max_length=64)
    staff_role: Optional[str] = Field(
        default=None,
        max_length=40,
        validation_alias=AliasChoices("staffRole", "role", "staff_role"),
    )
    staff_name: Optional[str] = Field(
        default=None,
        max_length=200,
        validation_alias=AliasChoices("staffName", "name", "staff_name"),
    )


class AdminPatchRequest(BaseModel):
    """Request body for PATCH /api/admins/{steam_id}. Omitted fields are unchanged."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    staff_role: Optional[str] = Field(
        default=None,
        max_length=40,
        validation_alias=AliasChoices("staffRole", "role", "staff_role"),
    )
    staff_name: Optional[str] = Field(
        default=None,
        max_length=200,
        validation_alias=AliasChoices("staffName", "name", "staff_name"),
    )


# ---------------------------------------------------------------------------
# Generic envelopes
# ---------------------------------------------------------------------------


class OkResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool = True


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = _WIRE_FROZEN

    status: str = "ok"
    version: str
    admin_storage: str
    steam_login_ready: bool


class DirectoryDiagnosticsResponse(BaseModel):
    """Response for GET /api/diagnostics/directory."""

    model_config = _WIRE_FROZEN

    ok: bool
    admin_storage: str
    url_configured: bool
    key_configured: bool
    remote_reachable: bool
    message: str = ""
    backend_status: Optional[int] = None
