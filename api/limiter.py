"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and api/routes/auth.py
(to limit the Steam login legs with @limiter.limit()).

One shared instance means one in-memory counter store. Separate instances
per module would each count on their own and the limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings


def login_rate_limit() -> str:
    """Limit string for the login legs, read at request time (LOGIN_RATE_LIMIT)."""
    return get_settings().login_rate_limit


limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
