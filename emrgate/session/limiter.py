"""Shared rate limiter for the session endpoints.

The Limiter instance is shared between:
  - emrgate/session/router.py  (route decorators)
  - emrgate/main.py            (app.state.limiter + SlowAPIMiddleware registration)

Keyed on the socket peer address. Refresh runs every 4 minutes per client and
activity heartbeats are debounced client-side, so the default of
60 requests/minute leaves ample headroom for legitimate use.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)

SESSION_RATE_LIMIT = "60/minute"


def set_session_rate_limit(value: str) -> None:
    """Apply ``session.rate_limit`` from config. Called by create_app()."""
    global SESSION_RATE_LIMIT
    SESSION_RATE_LIMIT = value


def session_rate_limit() -> str:
    """Current per-client limit; slowapi evaluates it on every request."""
    return SESSION_RATE_LIMIT
