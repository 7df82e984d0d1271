"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

This is the soft, per-process layer only: counters live in memory, reset on
restart and are not shared between instances. It throttles low-stakes
endpoints such as registration. Login and password-reset limits are enforced
by auth/rate_limit.py against the database and never consult this limiter.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
