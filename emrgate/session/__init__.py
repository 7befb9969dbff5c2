"""Session lifecycle for EMRGate.

Client side:
    state.py     : SessionState snapshot
    timers.py    : Scheduler / ScheduledTask (asyncio timers)
    client.py    : SessionAPIClient, SessionAPIError (httpx)
    controller.py: SessionController, SessionLockedError

Server side:
    store.py     : SessionStore (aiosqlite + bcrypt), ServerSession
    router.py    : /api/session/* endpoints
    limiter.py   : slowapi limiter shared with main.py
"""

from emrgate.session.client import SessionAPIClient, SessionAPIError
from emrgate.session.controller import SessionController, SessionLockedError
from emrgate.session.state import SessionPhase, SessionState

__all__ = [
    "SessionAPIClient",
    "SessionAPIError",
    "SessionController",
    "SessionLockedError",
    "SessionPhase",
    "SessionState",
]
