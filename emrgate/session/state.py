"""Client-side session state held by the SessionController."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional


class SessionPhase:
    """Lifecycle phases. ``LOGGED_OUT`` means nothing is tracked."""

    LOGGED_OUT = "logged_out"
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SessionState:
    """Immutable snapshot of the client session.

    ``is_ui_frozen`` is True whenever ``is_expired`` is True. Only
    re-authentication or logout clears the pair.

    Times are monotonic clock readings (seconds), not wall-clock datetimes.
    """

    phase: str = SessionPhase.LOGGED_OUT
    is_expired: bool = False
    is_ui_frozen: bool = False
    last_activity_at: Optional[float] = None
    access_token_expires_at: Optional[float] = None
    access_token: Optional[str] = None
    expiry_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.phase == SessionPhase.ACTIVE

    def __repr__(self) -> str:
        # Keep the bearer credential out of logs and tracebacks.
        token = "<set>" if self.access_token else None
        return (
            f"SessionState(phase={self.phase!r}, is_expired={self.is_expired}, "
            f"is_ui_frozen={self.is_ui_frozen}, last_activity_at={self.last_activity_at}, "
            f"access_token_expires_at={self.access_token_expires_at}, access_token={token}, "
            f"expiry_reason={self.expiry_reason!r})"
        )

    def evolve(self, **changes) -> "SessionState":
        return replace(self, **changes)


LOGGED_OUT_STATE = SessionState()
