"""
api/routes/admins.py -- Staff directory management endpoints.

Routes:
  GET    /api/admins              -- list staff with Steam profiles (admin only)
  POST   /api/admins              -- add or update a staff member (manageStaff)
  PATCH  /api/admins/{steam_id}   -- change role or name (manageStaff)
  DELETE /api/admins/{steam_id}   -- remove a staff member (manageStaff)

Security:
  [A1] Gate order is 401 -> 503 (adminError) -> 403, see auth/dependencies.py.
  [A2] DELETE never leaves the directory empty (LastAdminError, 400). The
       directory re-reads the live count right before deleting.
  [A3] Steam ids in paths and bodies are validated by the directory (400).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from api.models import (
    AdminCreate,
    AdminListResponse,
    AdminMutationResponse,
    AdminPatchRequest,
    AdminResponse,
    OkResponse,
)
from auth.dependencies import require_admin, require_permission
from core.exceptions import ValidationError
from core.models import AdminRecord, Viewer, is_valid_steam_id
from directory.service import AdminDirectory

logger = logging.getLogger("steamauth.api.admins")

# Auth policy:
# - GET    /api/admins:             require_admin
# - POST   /api/admins:             require_permission("manageStaff")
# - PATCH  /api/admins/{steam_id}:  require_permission("manageStaff")
# - DELETE /api/admins/{steam_id}:  require_permission("manageStaff")
router = APIRouter()

_manage_staff = require_permission("manageStaff")


async def _enrich(request: Request, records: list[AdminRecord]) -> list[AdminResponse]:
    profiles = await request.app.state.profiles.fetch_many(r.steam_id for r in records)
    return [AdminResponse.from_record(r, profiles.get(r.steam_id)) for r in records]


@router.get("/api/admins", response_model=AdminListResponse)
async def list_admins(request: Request, viewer: Viewer = Depends(require_admin)) -> AdminListResponse:
    """Return every staff member. stale=true means the list came from the local mirror."""
    directory: AdminDirectory = request.app.state.directory
    listing = await directory.list_admins()
    return AdminListResponse(admins=await _enrich(request, listing.value), stale=listing.stale, as_of=listing.as_of)


@router.post("/api/admins", response_model=AdminMutationResponse)
async def create_admin(
    request: Request,
    body: AdminCreate,
    viewer: Viewer = Depends(_manage_staff),
) -> AdminMutationResponse:
    """Add a staff member, or update the role of an existing one.

    Without staffName the Steam persona name is used, falling back to the id.
    """
    directory: AdminDirectory = request.app.state.directory
    if not is_valid_steam_id(body.steam_id):
        raise ValidationError("Invalid Steam ID.", detail="Expected a 17-digit Steam64 id.")  # [A3]

    staff_name = body.staff_name
    if not staff_name and await directory.lookup_admin(body.steam_id) is None:
        profile = await request.app.state.profiles.fetch_one(body.steam_id)
        staff_name = profile.display_name if profile else body.steam_id

    saved = await directory.add_admin(body.steam_id, body.staff_role, staff_name)
    logger.info("Admin %s saved by %s", saved.steam_id, viewer.user.steam_id if viewer.user else "?")
    return await _mutation_response(request, saved)


@router.patch("/api/admins/{steam_id}", response_model=AdminMutationResponse)
async def update_admin(
    steam_id: str,
    request: Request,
    body: AdminPatchRequest,
    viewer: Viewer = Depends(_manage_staff),
) -> AdminMutationResponse:
    """Change the role and/or name of an existing staff member. 404 if unknown."""
    directory: AdminDirectory = request.app.state.directory
    saved = await directory.update_admin(steam_id, body.staff_role, body.staff_name)
    logger.info("Admin %s updated by %s", saved.steam_id, viewer.user.steam_id if viewer.user else "?")
    return await _mutation_response(request, saved)


@router.delete("/api/admins/{steam_id}", response_model=OkResponse)
async def delete_admin(
    steam_id: str,
    request: Request,
    viewer: Viewer = Depends(_manage_staff),
) -> OkResponse:
    """Remove a staff member. 400 when it is the last one [A2]."""
    directory: AdminDirectory = request.app.state.directory
    await directory.remove_admin(steam_id)
    logger.info("Admin %s removed by %s", steam_id, viewer.user.steam_id if viewer.user else "?")
    return OkResponse()


async def _mutation_response(request: Request, saved: AdminRecord) -> AdminMutationResponse:
    directory: AdminDirectory = request.app.state.directory
    listing = await directory.list_admins()
    admins = await _enrich(request, listing.value)
    admin = next((a for a in admins if a.steam_id == saved.steam_id), None)
    if admin is None:
        admin = (await _enrich(request, [saved]))[0]
    return AdminMutationResponse(admin=admin, admins=admins, stale=listing.stale)
