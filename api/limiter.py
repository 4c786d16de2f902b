"""
api/limiter.py -- Shared slowapi rate limiter instance (per client address).

Import this in both api/main.py (to register it on app.state) and
api/routes/v1/auth.py (to apply the login limit with @limiter.limit()).

This is the per-address dimension of login throttling. The per-username
dimension is auth/ratelimit.py, applied through Guard.login_rate_limit().
The username bucket throttles guessing against one account from anywhere;
this one throttles a single client across every username it tries.

Using a single shared instance ensures all routes share the same in-memory
counter store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
