"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in any route module
that applies a per-route limit with @limiter.limit().

A single shared instance means all routes share the same in-memory counter
store. Separate instances per module would each keep an isolated counter and
the limits would never trigger.

The default limit (RATE_LIMIT, 20/second) applies to every route through
SlowAPIMiddleware. Login routes add LOGIN_RATE_LIMIT on top.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[_settings.rate_limit],
    storage_uri="memory://",
)

login_limit = _settings.login_rate_limit
