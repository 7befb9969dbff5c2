"""HTTP client for the session endpoints.

Wraps an ``httpx.AsyncClient``. The refresh token lives in the client's
cookie jar (HttpOnly ``refreshToken`` cookie set at login); the access token
is sent as ``Authorization: Bearer`` where an endpoint requires it.

Every failure surfaces as ``SessionAPIError``:
  - an error response carries the server's ``code`` (``SESSION_EXPIRED``, ...)
  - a transport failure (connect error, timeout) carries ``NETWORK_ERROR``
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from emrgate.constants import NETWORK_ERROR_CODE, SESSION_EXPIRED_CODE
from emrgate.utils.logger import get_logger

logger = get_logger(__name__)

_DEFAULT_TIMEOUT = httpx.Timeout(10.0, connect=5.0)


class SessionAPIError(Exception):
    """A session endpoint call failed.

    Attributes:
        code:        Machine-readable code from the response body, or
                     ``NETWORK_ERROR`` for transport failures. None when the
                     server sent no code.
        message:     Human-readable description.
        status_code: HTTP status, or None for transport failures.
    """

    def __init__(
        self,
        code: Optional[str],
        message: str,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code

    @property
    def session_expired(self) -> bool:
        return self.code == SESSION_EXPIRED_CODE


def _extract_error(response: httpx.Response) -> SessionAPIError:
    code: Optional[str] = None
    message = f"Session request failed with HTTP {response.status_code}"
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        data = body.get("data")
        code = body.get("code") or (data.get("code") if isinstance(data, dict) else None)
        message = body.get("message") or message

    return SessionAPIError(code=code, message=message, status_code=response.status_code)


class SessionAPIClient:
    """Async client for /api/session/*.

    Args:
        base_url: Backend origin, e.g. ``https://emr.example.org``.
        client:   Pre-built httpx.AsyncClient (tests pass one bound to an
                  ASGITransport). When given, ``base_url`` is ignored and the
                  caller owns its lifecycle.
    """

    def __init__(
        self,
        base_url: str = "",
        client: Optional[httpx.AsyncClient] = None,
        timeout: httpx.Timeout = _DEFAULT_TIMEOUT,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def _post(self, path: str, access_token: Optional[str] = None) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else None
        try:
            response = await self._client.post(path, headers=headers)
        except httpx.HTTPError as exc:
            raise SessionAPIError(
                code=NETWORK_ERROR_CODE,
                message=f"{type(exc).__name__}: {exc}",
            ) from exc

        if response.is_error:
            raise _extract_error(response)

        try:
            payload = response.json()
        except ValueError as exc:
            raise SessionAPIError(
                code=None,
                message="Malformed response from session endpoint",
                status_code=response.status_code,
            ) from exc
        return payload if isinstance(payload, dict) else {}

    async def refresh(self) -> tuple[str, int]:
        """POST /api/session/refresh → (access_token, expires_in seconds)."""
        payload = await self._post("/api/session/refresh")
        data = payload.get("data") or {}
        token = data.get("accessToken")
        if not token:
            raise SessionAPIError(code=None, message="Refresh response carried no access token")
        return token, int(data.get("expiresIn", 0))

    async def report_activity(self) -> None:
        """POST /api/session/activity."""
        await self._post("/api/session/activity")

    async def logout(self, access_token: Optional[str]) -> None:
        """POST /api/session/logout with the Bearer access token."""
        await self._post("/api/session/logout", access_token=access_token)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
