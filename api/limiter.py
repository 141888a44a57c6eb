"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

This is the coarse outer cap: N requests per minute per client IP on the
anonymous auth endpoints, regardless of outcome. The failure-counting gates
(auth/ratelimit.py) sit behind it and only count failed attempts.

Using a single shared instance ensures all routes share the same counter
store. "database" is an authgate-only value for RATE_LIMIT_STORAGE_URI, so
slowapi falls back to in-memory counting in that case.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_storage_uri = get_settings().rate_limit_storage_uri
if _storage_uri == "database":
    _storage_uri = "memory://"

limiter = Limiter(key_func=get_remote_address, storage_uri=_storage_uri)
