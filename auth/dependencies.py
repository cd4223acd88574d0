"""
auth/dependencies.py -- FastAPI Depends() helpers for authorization.

get_viewer() resolves the Viewer for every request that asks for it and
maintains the session cookie as a side effect:
  known user            -> the session cookie is re-issued (sliding expiry).
  anonymous with cookie -> the stale cookie is cleared.

Gates build on it and fail in this order:
  require_admin():          401 unauthenticated -> 503 adminError -> 403 not admin
  require_permission(name): the above, then 403 when the role lacks name

adminError always wins over "not admin": a directory that refuses our
credential must never look like "you are not staff".

Layer rule: auth/ may import fastapi here because this module is part of
the dependency injection system. Errors are raised as core/exceptions types;
api/main.py renders them.
"""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, Request, Response

from core.exceptions import AuthenticationRequired, AuthorizationDenied, StorageUnavailable
from core.models import Viewer
from core.permissions import PERMISSION_NAMES, has_permission


async def get_viewer(request: Request, response: Response) -> Viewer:
    """Resolve the current Viewer. Never raises for auth problems."""
    state = request.app.state
    cookies = request.cookies
    viewer = await state.resolver.resolve(cookies)

    if viewer.user is not None:
        token = state.tokens.issue_session_token(viewer.user)
        state.cookies.set_session(response, request.headers, token)
    elif state.cookies.read_session(cookies):
        state.cookies.clear_session(response, request.headers)
    return viewer


async def require_admin(viewer: Viewer = Depends(get_viewer)) -> Viewer:
    """Require an authenticated admin.

    Use as a FastAPI dependency:
        @router.get("/admins")
        async def route(viewer: Viewer = Depends(require_admin)): ...
    """
    if not viewer.authenticated:
        raise AuthenticationRequired("Sign in with Steam first.")
    if viewer.admin_error:
        raise StorageUnavailable("Admin storage is unavailable.", detail=viewer.admin_error)
    if not viewer.is_admin:
        raise AuthorizationDenied("Admin access required.")
    return viewer


def require_permission(name: str) -> Callable:
    """Dependency factory: require_admin() plus one named permission."""
    if name not in PERMISSION_NAMES:
        raise ValueError(f"Unknown permission: {name}")

    async def dependency(viewer: Viewer = Depends(require_admin)) -> Viewer:
        if not has_permission(viewer, name):
            raise AuthorizationDenied(f"Missing permission: {name}.")
        return viewer

    return dependency
