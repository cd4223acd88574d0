"""
api/routes/auth.py -- Steam sign-in, viewer and logout endpoints.

Routes:
  GET  /auth/steam          -- start the OpenID login; 302 to Steam
  GET  /auth/steam/return   -- OpenID callback; 302 /?login=ok or /?error=steam-callback
  GET  /api/me              -- current Viewer (always 200)
  POST /api/logout          -- clears the session and state cookies

Security:
  [S1] Both login legs are rate-limited per IP (LOGIN_RATE_LIMIT, default 30/minute).
  [S2] The CSRF state is mandatory. The callback needs the state query value
       AND the steam_auth_state cookie, byte-equal, and the value must verify
       as an unexpired state token. No legacy bypass.
  [S3] Every callback failure looks the same to the client: both cookies are
       cleared and the browser lands on /?error=steam-callback. The cause is
       logged server-side only.
  [S4] The Steam id is trusted only after Steam itself confirms the
       assertion (check_authentication); claimed_id alone proves nothing.
  [M5] Cache-Control: no-store on both login legs.
"""

from __future__ import annotations

import hmac
import logging
from urllib.parse import quote

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter, login_rate_limit
from api.models import OkResponse, ViewerResponse
from auth.dependencies import get_viewer
from auth.steam_openid import extract_steam_id, resolve_request_base_url
from core.models import SessionUser, Viewer, read_text

logger = logging.getLogger("steamauth.api.auth")

LOGIN_OK_URL = "/?login=ok"
LOGIN_DISABLED_URL = "/?error=steam-disabled"
LOGIN_START_FAILED_URL = "/?error=steam-login"
CALLBACK_FAILED_URL = "/?error=steam-callback"

# Auth policy:
# - GET  /auth/steam:         public, rate limited
# - GET  /auth/steam/return:  public, rate limited, CSRF state required
# - GET  /api/me:             public -- anonymous viewers get 200 too
# - POST /api/logout:         public -- clearing cookies needs no prior auth
router = APIRouter()


def _redirect(url: str) -> RedirectResponse:
    resp = RedirectResponse(url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Steam OpenID login
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [S1] must be ABOVE @router to preserve FastAPI introspection
@router.get("/auth/steam", include_in_schema=False)
async def steam_login(request: Request) -> RedirectResponse:
    """Issue a state token, store it in a cookie, and send the browser to Steam."""
    state = request.app.state
    if not state.settings.steam_login_ready:
        return _redirect(LOGIN_DISABLED_URL)

    base_url = resolve_request_base_url(request.headers, state.settings.base_url)
    if not base_url:
        logger.warning("Steam login refused: cannot resolve the external base URL")
        return _redirect(LOGIN_START_FAILED_URL)

    state_token = state.tokens.issue_state_token()
    return_to = f"{base_url}/auth/steam/return?state={quote(state_token, safe='')}"
    resp = _redirect(state.openid.build_redirect_url(return_to, base_url))
    state.cookies.set_state(resp, request.headers, state_token)
    return resp


@limiter.limit(login_rate_limit)  # [S1]
@router.get("/auth/steam/return", include_in_schema=False)
async def steam_return(request: Request) -> RedirectResponse:
    """Validate the state and the assertion, then start the session."""
    state = request.app.state
    if not state.settings.steam_login_ready:
        return _redirect(LOGIN_DISABLED_URL)

    def fail(cause: str) -> RedirectResponse:
        logger.warning("Steam callback rejected: %s", cause)  # [S3]
        resp = _redirect(CALLBACK_FAILED_URL)
        state.cookies.clear_all(resp, request.headers)
        return resp

    query = dict(request.query_params)
    state_from_query = read_text(query.get("state"))
    state_from_cookie = state.cookies.read_state(request.cookies)

    # [S2]
    if not state_from_query or not state_from_cookie:
        return fail("missing state")
    if not hmac.compare_digest(state_from_query.encode("utf-8"), state_from_cookie.encode("utf-8")):
        return fail("state mismatch")
    if state.tokens.read_state_token(state_from_query) is None:
        return fail("state token invalid or expired")

    if query.get("openid.mode") != "id_res":
        return fail(f"unexpected openid.mode {query.get('openid.mode')!r}")
    if not await state.openid.verify_assertion(query):  # [S4]
        return fail("assertion not confirmed by Steam")

    steam_id = extract_steam_id(query.get("openid.claimed_id") or query.get("openid.identity"))
    if not steam_id:
        return fail("claimed_id is not a Steam64 id")

    profile = await state.profiles.fetch_one(steam_id)
    user = SessionUser(
        steam_id=steam_id,
        display_name=profile.display_name if profile else steam_id,
        avatar=profile.avatar if profile else "",
    )
    token = state.tokens.issue_session_token(user)
    if not token:
        return fail("could not issue a session token")

    resp = _redirect(LOGIN_OK_URL)
    state.cookies.clear_state(resp, request.headers)
    state.cookies.set_session(resp, request.headers, token)
    logger.info("Steam login for %s", steam_id)
    return resp


# ---------------------------------------------------------------------------
# Viewer and logout
# ---------------------------------------------------------------------------


@router.get("/api/me", response_model=ViewerResponse)
async def me(viewer: Viewer = Depends(get_viewer)) -> ViewerResponse:
    """Return the current Viewer. Anonymous callers get authenticated=false."""
    return ViewerResponse.from_viewer(viewer)


@router.post("/api/logout", response_model=OkResponse)
async def logout(request: Request) -> JSONResponse:
    """Clear the session and state cookies."""
    resp = JSONResponse(content=OkResponse().model_dump())
    request.app.state.cookies.clear_all(resp, request.headers)
    return resp
