"""
api/routes/diagnostics.py -- Operator checks for external dependencies.

Routes:
  GET /api/diagnostics/directory -- one minimal read against the remote
                                    directory; 200 when it answers, 502 otherwise

No authentication: the response carries booleans and the backend's error
message, never the URL or key themselves.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api.models import DirectoryDiagnosticsResponse
from directory.service import check_remote_directory

router = APIRouter(prefix="/api/diagnostics")


@router.get(
    "/directory",
    response_model=DirectoryDiagnosticsResponse,
    responses={502: {"model": DirectoryDiagnosticsResponse}},
)
async def directory_check(request: Request) -> JSONResponse:
    state = request.app.state
    check = await check_remote_directory(state.settings, state.http)
    body = DirectoryDiagnosticsResponse(
        ok=check.ok,
        admin_storage=state.directory.mode,
        url_configured=check.url_configured,
        key_configured=check.key_configured,
        remote_reachable=check.remote_reachable,
        message=check.message,
        backend_status=check.backend_status,
    )
    return JSONResponse(status_code=200 if check.ok else 502, content=body.model_dump(by_alias=True))
