"""
api/limiter.py -- Shared slowapi rate limiter for the console.

The console forwards login attempts to the backend, so an unthrottled login
form would let anything on the local machine brute-force operator accounts
through it. web/routes.py applies @limiter.limit(login_rate_limit) to the
login and TOTP form posts.

One shared instance, mounted by api/main.py as app.state.limiter, so every
route shares the same in-memory counters.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """LOGIN_RATE_LIMIT, read per request so tests can override settings."""
    return get_settings().login_rate_limit
