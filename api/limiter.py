"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same counter
store. Counters are keyed by client address and expire with their window;
RATE_LIMIT_STORAGE_URI moves them out of process (e.g. redis://) when more
than one worker serves the API.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri=get_settings().rate_limit_storage_uri)


def auth_rate_limit() -> str:
    """Limit applied to register/login/refresh, read from settings per request."""
    return get_settings().auth_rate_limit
