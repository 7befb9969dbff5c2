"""Session REST endpoints consumed by the client-side session controller.

Provides:
  POST /api/session/refresh  : new access token (refresh cookie)
  POST /api/session/activity : record user activity (refresh cookie)
  POST /api/session/logout   : revoke the session (Bearer access token)
  GET  /api/session/info     : session timing for the current user (Bearer)

The refresh token travels only in the HttpOnly ``refreshToken`` cookie,
scoped to /api/session. Error bodies use the common envelope
``{"success": false, "message", "code"}``; ``SESSION_EXPIRED`` tells the
client to lock the UI and require a fresh login.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from emrgate.constants import REFRESH_COOKIE_NAME, REFRESH_COOKIE_PATH, REFRESH_TOKEN_TTL_SECONDS
from emrgate.models.block import build_error_response
from emrgate.session.limiter import limiter, session_rate_limit
from emrgate.session.store import (
    InvalidSessionError,
    IssuedTokens,
    SessionExpiredError,
    SessionStore,
)
from emrgate.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/session", tags=["session"])


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _store(request: Request) -> SessionStore:
    store = getattr(request.app.state, "session_store", None)
    if store is None:
        raise RuntimeError("Session store not initialized")
    return store


def _cookie_secure(request: Request) -> bool:
    config = getattr(request.app.state, "config", None)
    return bool(config is not None and config.transport.enforce_https)


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def set_refresh_cookie(response: Response, refresh_token: str, secure: bool) -> None:
    """Attach the HttpOnly refresh cookie. Used by the login handler."""
    response.set_cookie(
        key=REFRESH_COOKIE_NAME,
        value=refresh_token,
        max_age=REFRESH_TOKEN_TTL_SECONDS,
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        secure=secure,
        samesite="strict",
    )


def clear_refresh_cookie(response: Response, secure: bool) -> None:
    response.delete_cookie(
        key=REFRESH_COOKIE_NAME,
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        secure=secure,
        samesite="strict",
    )


def _session_error(request: Request, exc: Exception, status_code: int = 401) -> JSONResponse:
    message = getattr(exc, "message", str(exc))
    response = build_error_response(status_code, message, getattr(exc, "code", None))
    if isinstance(exc, SessionExpiredError):
        clear_refresh_cookie(response, _cookie_secure(request))
    return response


def _token_payload(issued: IssuedTokens) -> dict:
    return {"accessToken": issued.access_token, "expiresIn": issued.expires_in}


# ─── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/refresh")
@limiter.limit(session_rate_limit)
async def refresh_session(request: Request) -> Response:
    """Issue a new access token if the session has been active recently.

    Returns:
        200 ``{"success": true, "data": {"accessToken", "expiresIn"}}``
        401 ``SESSION_EXPIRED`` once the inactivity window has elapsed, or
        the session is revoked, unknown or past its absolute lifetime.
    """
    try:
        issued = await _store(request).refresh(request.cookies.get(REFRESH_COOKIE_NAME))
    except SessionExpiredError as exc:
        return _session_error(request, exc)

    return JSONResponse(content={"success": True, "data": _token_payload(issued)})


@router.post("/activity")
@limiter.limit(session_rate_limit)
async def record_activity(request: Request) -> Response:
    """Heartbeat: the user interacted with the UI."""
    try:
        session = await _store(request).record_activity(request.cookies.get(REFRESH_COOKIE_NAME))
    except SessionExpiredError as exc:
        return _session_error(request, exc)

    return JSONResponse(
        content={
            "success": True,
            "data": {"lastActivity": session.last_activity_at.isoformat()},
        }
    )


@router.post("/logout")
@limiter.limit(session_rate_limit)
async def logout(request: Request) -> Response:
    """Revoke the session behind the Bearer access token and clear the cookie."""
    store = _store(request)
    try:
        session = await store.authenticate(_bearer_token(request))
    except InvalidSessionError as exc:
        return _session_error(request, exc)

    await store.revoke(session.session_id)
    logger.info("session_logout", session_id=session.session_id, user_id=session.user_id)

    response = JSONResponse(content={"success": True, "message": "Logged out successfully"})
    clear_refresh_cookie(response, _cookie_secure(request))
    return response


@router.get("/info")
@limiter.limit(session_rate_limit)
async def session_info(request: Request) -> Response:
    """Report last activity and time remaining before the session expires."""
    store = _store(request)
    try:
        session = await store.authenticate(_bearer_token(request))
    except InvalidSessionError as exc:
        return _session_error(request, exc)

    expires_at = store.inactivity_deadline(session)
    remaining = max(0, int((expires_at - store.now()).total_seconds()))
    return JSONResponse(
        content={
            "success": True,
            "data": {
                "sessionId": session.session_id,
                "userId": session.user_id,
                "lastActivity": session.last_activity_at.isoformat(),
                "sessionExpiresAt": expires_at.isoformat(),
                "secondsUntilExpiry": remaining,
                "accessTokenExpiresAt": session.access_expires_at.isoformat(),
                "deviceInfo": session.device_info,
                "ipAddress": session.ip_address,
                "createdAt": session.created_at.isoformat(),
            },
        }
    )
