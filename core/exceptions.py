"""
core/exceptions.py -- Error taxonomy shared by every layer.

Each error carries the HTTP status and machine-readable code the API layer
renders, so route handlers raise domain errors and api/main.py owns the
response envelope.

StorageUnavailable and AuthorizationDenied are deliberately distinct: a
directory credential that the backend refuses must surface as 503, never
as "this user is not an admin" (403).
"""

from __future__ import annotations

from typing import Optional


class AuthServiceError(Exception):
    """Base for all service errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = "", *, detail: Optional[str] = None) -> None:
        self.message = message or self.__class__.__doc__ or self.code
        self.detail = detail
        super().__init__(self.message)


class ValidationError(AuthServiceError):
    """Malformed steam id, token shape, or request payload."""

    status_code = 400
    code = "validation_error"


class AuthenticationRequired(AuthServiceError):
    """No session or the session token is invalid."""

    status_code = 401
    code = "not_authenticated"


class AuthorizationDenied(AuthServiceError):
    """Authenticated, but missing the required role or permission."""

    status_code = 403
    code = "forbidden"


class NotFound(AuthServiceError):
    """Admin record absent."""

    status_code = 404
    code = "not_found"


class LastAdminError(AuthServiceError):
    """Removing this record would leave the directory without admins."""

    status_code = 400
    code = "last_admin"


class StorageUnavailable(AuthServiceError):
    """Directory backend unreachable or refusing the configured credential."""

    status_code = 503
    code = "admin_storage_unavailable"

    def __init__(self, message: str = "", *, detail: Optional[str] = None, backend_status: Optional[int] = None):
        self.backend_status = backend_status
        super().__init__(message, detail=detail)


class UpstreamError(AuthServiceError):
    """Identity provider, profile API, or directory service failed."""

    status_code = 502
    code = "upstream_error"

    def __init__(self, message: str = "", *, detail: Optional[str] = None, backend_status: Optional[int] = None):
        self.backend_status = backend_status
        super().__init__(message, detail=detail)


class UpstreamTimeout(UpstreamError):
    """An outbound call exceeded its timeout."""

    status_code = 504
    code = "upstream_timeout"


class ConfigurationError(AuthServiceError):
    """Startup configuration is inconsistent."""

    code = "configuration_error"


# Directory failures that mean "cannot determine authorization right now".
DIRECTORY_FAILURES = (StorageUnavailable, UpstreamError)
