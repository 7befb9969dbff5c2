"""Session Lifecycle Controller: client-side idle detection and token refresh.

State machine:

    LOGGED_OUT --start()--> ACTIVE --expire()--> EXPIRED
        ^                     |                     |
        +------logout()-------+                     |
        +---------------reauthenticate()------------+

While ACTIVE two timers run:
  - idle check (every ``idle_check_interval``): no recorded activity for
    ``idle_timeout`` seconds ⇒ expire.
  - token refresh (every ``refresh_interval``): POST /api/session/refresh.
    A ``SESSION_EXPIRED`` refusal ⇒ expire; any other failure is logged and
    the session stays ACTIVE until the next tick.

Expiry is one-shot: only the first expire() call for a session takes
effect. It clears the access token, sets ``is_expired`` and
``is_ui_frozen``, cancels every timer and notifies listeners (the UI lock).
Once EXPIRED the only way out is reauthenticate() or logout().

Refreshing a token does not count as user activity; only record_activity()
resets the idle clock.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, Callable, Optional

from emrgate.constants import (
    ACTIVITY_HEARTBEAT_MIN_INTERVAL_SECONDS,
    IDLE_CHECK_INTERVAL_SECONDS,
    IDLE_TIMEOUT_SECONDS,
    REFRESH_INTERVAL_SECONDS,
)
from emrgate.session.client import SessionAPIClient, SessionAPIError
from emrgate.session.state import LOGGED_OUT_STATE, SessionPhase, SessionState
from emrgate.session.timers import Scheduler
from emrgate.utils.logger import get_logger

if TYPE_CHECKING:
    from emrgate.config import SessionConfig

logger = get_logger(__name__)

StateListener = Callable[[SessionState], None]


class SessionLockedError(Exception):
    """Raised by ensure_interactive() while the UI is frozen."""

    def __init__(self, message: str = "Session expired. Please log in again.") -> None:
        super().__init__(message)
        self.message = message


class SessionController:
    """Drives one user's session from login to logout or expiry.

    Args:
        api:                    SessionAPIClient used for refresh, heartbeat and logout.
        idle_timeout:           Seconds without activity before the session expires.
        refresh_interval:       Seconds between proactive token refreshes.
        idle_check_interval:    Seconds between idle checks.
        heartbeat_min_interval: Minimum seconds between activity heartbeats.
        clock:                  Monotonic clock in seconds. Tests inject a fake.
        scheduler:              Timer scheduler. Tests may inject one.
    """

    def __init__(
        self,
        api: SessionAPIClient,
        *,
        idle_timeout: float = IDLE_TIMEOUT_SECONDS,
        refresh_interval: float = REFRESH_INTERVAL_SECONDS,
        idle_check_interval: float = IDLE_CHECK_INTERVAL_SECONDS,
        heartbeat_min_interval: float = ACTIVITY_HEARTBEAT_MIN_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self._api = api
        self.idle_timeout = idle_timeout
        self.refresh_interval = refresh_interval
        self.idle_check_interval = idle_check_interval
        self.heartbeat_min_interval = heartbeat_min_interval
        self._clock = clock
        self._scheduler = scheduler or Scheduler()
        self._state: SessionState = LOGGED_OUT_STATE
        self._listeners: list[StateListener] = []
        # Bumped on every transition; async results from an older session are dropped.
        self._generation = 0
        self._last_heartbeat_at: Optional[float] = None
        # Kept after expiry only so reauthenticate() can ask the server to revoke.
        self._revocation_token: Optional[str] = None

    @classmethod
    def from_config(
        cls,
        api: SessionAPIClient,
        session_config: "SessionConfig",
        **overrides: Any,
    ) -> "SessionController":
        """Build a controller whose timers follow the ``session`` config section."""
        options: dict[str, Any] = {
            "idle_timeout": session_config.idle_timeout_seconds,
            "refresh_interval": session_config.refresh_interval_seconds,
            "idle_check_interval": session_config.idle_check_interval_seconds,
        }
        options.update(overrides)
        return cls(api, **options)

    # ── Observation ───────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_expired(self) -> bool:
        return self._state.is_expired

    @property
    def is_ui_frozen(self) -> bool:
        return self._state.is_ui_frozen

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a callback invoked with the new state after each transition.

        Returns a function that removes the listener.
        """
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _transition(self, new_state: SessionState) -> None:
        self._state = new_state
        self._generation += 1
        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception as exc:
                logger.error(
                    "session_listener_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self, access_token: str, expires_in: float) -> None:
        """Begin tracking a freshly logged-in session and start both timers.

        Must be called from inside a running event loop.

        Raises:
            SessionLockedError: If the previous session expired and has not
                been cleared with reauthenticate() or logout().
        """
        if self._state.is_expired:
            raise SessionLockedError("Expired session must be cleared before a new login")

        self._scheduler.cancel_all()
        now = self._clock()
        self._last_heartbeat_at = None
        self._revocation_token = None
        self._transition(
            SessionState(
                phase=SessionPhase.ACTIVE,
                last_activity_at=now,
                access_token_expires_at=now + expires_in,
                access_token=access_token,
            )
        )
        self._scheduler.call_every("idle-check", self.idle_check_interval, self._on_idle_timer)
        self._scheduler.call_every("token-refresh", self.refresh_interval, self.refresh_tick)
        logger.info(
            "session_started",
            idle_timeout=self.idle_timeout,
            refresh_interval=self.refresh_interval,
        )

    def record_activity(self) -> None:
        """User interaction: reset the idle clock and send a throttled heartbeat.

        Ignored unless the session is ACTIVE; activity never revives an
        expired session.
        """
        if not self._state.is_active:
            return

        now = self._clock()
        self._state = self._state.evolve(last_activity_at=now)

        if (
            self._last_heartbeat_at is None
            or now - self._last_heartbeat_at >= self.heartbeat_min_interval
        ):
            self._last_heartbeat_at = now
            self._scheduler.call_soon("activity-heartbeat", self._send_heartbeat)

    async def _send_heartbeat(self) -> None:
        try:
            await self._api.report_activity()
        except SessionAPIError as exc:
            logger.warning(
                "activity_heartbeat_failed",
                code=exc.code,
                status_code=exc.status_code,
                error=exc.message,
            )

    async def _on_idle_timer(self) -> None:
        self.check_idle()

    def check_idle(self) -> bool:
        """Expire the session if it has been idle for ``idle_timeout``.

        Returns:
            True if this call expired the session.
        """
        state = self._state
        if not state.is_active or state.last_activity_at is None:
            return False
        idle_for = self._clock() - state.last_activity_at
        if idle_for >= self.idle_timeout:
            return self.expire("idle_timeout")
        return False

    async def refresh_tick(self) -> None:
        """Proactively refresh the access token.

        ``SESSION_EXPIRED`` ⇒ expire. Every other failure (``NETWORK_ERROR``,
        5xx, malformed response) is logged; the session stays ACTIVE.
        """
        if not self._state.is_active:
            return

        generation = self._generation
        try:
            access_token, expires_in = await self._api.refresh()
        except SessionAPIError as exc:
            if generation != self._generation:
                return
            if exc.session_expired:
                self.expire("session_expired")
            else:
                logger.warning(
                    "token_refresh_failed",
                    code=exc.code,
                    status_code=exc.status_code,
                    error=exc.message,
                )
            return

        if generation != self._generation or not self._state.is_active:
            # Session ended while the request was in flight.
            return

        self._state = self._state.evolve(
            access_token=access_token,
            access_token_expires_at=self._clock() + expires_in,
        )
        logger.debug("token_refreshed", expires_in=expires_in)

    def expire(self, reason: str = "expired") -> bool:
        """Move ACTIVE → EXPIRED. Only the first call per session has an effect.

        Returns:
            True if this call performed the transition.
        """
        if not self._state.is_active:
            return False

        self._revocation_token = self._state.access_token
        self._scheduler.cancel_all()
        self._transition(
            self._state.evolve(
                phase=SessionPhase.EXPIRED,
                is_expired=True,
                is_ui_frozen=True,
                access_token=None,
                access_token_expires_at=None,
                expiry_reason=reason,
            )
        )
        logger.info("session_expired", reason=reason)
        return True

    def ensure_interactive(self) -> None:
        """Gate for user-initiated actions.

        Raises:
            SessionLockedError: While the session is expired and the UI frozen.
        """
        if self._state.is_ui_frozen:
            raise SessionLockedError()

    async def reauthenticate(self) -> None:
        """Leave EXPIRED: best-effort server logout, then clear both flags.

        Afterwards the controller is LOGGED_OUT and ready for start().
        Does nothing unless the session is EXPIRED.
        """
        if not self._state.is_expired:
            return
        await self._best_effort_logout(self._revocation_token)
        self._clear()
        logger.info("session_reauthentication_requested")

    async def logout(self) -> None:
        """Explicit logout from any phase. Server errors are logged and ignored."""
        token = self._state.access_token or self._revocation_token
        self._scheduler.cancel_all()
        if self._state.phase != SessionPhase.LOGGED_OUT:
            await self._best_effort_logout(token)
        self._clear()
        logger.info("session_logged_out")

    async def close(self) -> None:
        """Stop every timer. The API client is owned by the caller."""
        self._scheduler.cancel_all()

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _best_effort_logout(self, token: Optional[str]) -> None:
        try:
            await self._api.logout(token)
        except SessionAPIError as exc:
            logger.warning("logout_request_failed", code=exc.code, error=exc.message)

    def _clear(self) -> None:
        self._scheduler.cancel_all()
        self._revocation_token = None
        self._last_heartbeat_at = None
        if self._state != LOGGED_OUT_STATE:
            self._transition(LOGGED_OUT_STATE)
