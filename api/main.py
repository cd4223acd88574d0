"""
api/main.py -- FastAPI application entry point for the Steam admin auth service.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers (ALLOWED_HOSTS)
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins (CORS_ORIGINS)
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every shared service once and parks it on app.state:
  settings, http (one httpx.AsyncClient), tokens, cookies, openid, profiles,
  directory, resolver. Shutdown closes the HTTP client and the SQLite store.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.admins import router as admins_router
from api.routes.auth import router as auth_router
from api.routes.diagnostics import router as diagnostics_router
from auth.cookies import CookieManager
from auth.profiles import SteamProfileProvider
from auth.steam_openid import SteamOpenIdClient
from auth.tokens import SessionTokens
from auth.viewer import ViewerResolver
from cache.store import TTLCache
from core.config import Settings, get_settings
from core.exceptions import AuthServiceError
from directory.service import build_directory
from directory.store import LocalAdminStore

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("steamauth.api")


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


async def init_services(
    app: FastAPI,
    settings: Settings,
    http: httpx.AsyncClient,
    store: Optional[LocalAdminStore] = None,
) -> None:
    """Build the shared services and attach them to app.state.

    Also used by the test lifespan, which passes an httpx client on a
    MockTransport and an in-memory store.
    """
    app.state.settings = settings
    app.state.http = http
    app.state.tokens = SessionTokens.from_settings(settings)
    app.state.cookies = CookieManager(settings)
    app.state.openid = SteamOpenIdClient(http, settings.steam_openid_endpoint, settings.steam_openid_timeout)
    app.state.profiles = SteamProfileProvider(
        http,
        TTLCache(ttl=settings.profile_cache_ttl_seconds),
        api_key=settings.steam_api_key,
        timeout=settings.steam_profile_timeout,
    )
    app.state.directory = build_directory(settings, http, store=store)
    await app.state.directory.initialize()
    app.state.resolver = ViewerResolver(
        app.state.tokens,
        app.state.cookies,
        app.state.directory,
        app.state.profiles,
        settings,
    )
    logger.info(
        "Auth initialized (admin storage=%s, steam login ready=%s)",
        app.state.directory.mode,
        settings.steam_login_ready,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create resources on startup and release them on shutdown.

    The directory is initialized before the first request: bootstrap seeds are
    inserted and the mirror snapshot is taken. A directory that is down at
    startup does not stop the service; requests report adminError instead.
    """
    logger.info("Steam admin auth starting up")
    settings = get_settings()
    async with httpx.AsyncClient(headers={"User-Agent": f"steam-admin-auth/{VERSION}"}) as http:
        await init_services(app, settings, http)
        yield
        app.state.directory.close()
    logger.info("Steam admin auth shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="Steam Admin Auth",
    description="Steam OpenID sign-in, signed session cookies and the staff directory.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

if _settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Content-Type"],
        max_age=3600,
    )

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, tags=["Auth"])
app.include_router(admins_router, tags=["Admins"])
app.include_router(diagnostics_router, tags=["Diagnostics"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthServiceError)
async def service_error_handler(request: Request, exc: AuthServiceError) -> JSONResponse:
    """Render domain errors raised by gates, the directory and route handlers."""
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return _error(exc.status_code, exc.code, exc.message, exc.detail)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No auth and no rate limit -- load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"], response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """Return liveness, version and the active admin storage mode."""
    settings: Settings = request.app.state.settings
    return HealthResponse(
        version=VERSION,
        admin_storage=request.app.state.directory.mode,
        steam_login_ready=settings.steam_login_ready,
    )
