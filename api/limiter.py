"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (to mount as middleware) and by the route modules
(to apply per-route limits with @limiter.limit()).

A single shared instance means all routes share one in-memory counter
store. Separate instances per module would each keep their own counters and
the limits would never trigger.

Limits are read from Settings at request time, so they can be tuned via
LOGIN_RATE_LIMIT / SIGNUP_RATE_LIMIT without code changes.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_limit() -> str:
    return get_settings().login_rate_limit


def signup_limit() -> str:
    return get_settings().signup_rate_limit
