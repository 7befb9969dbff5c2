"""Transport Guard: redirects plaintext requests to HTTPS.

When enforcement is on, a request is accepted only if one of these secure
channel hints is present:
  1. the ASGI scheme is ``https`` or ``wss`` (TLS terminated by the server),
  2. the first ``X-Forwarded-Proto`` value is ``https``,
  3. the terminating proxy's secure flag: ``X-Forwarded-Ssl: on`` or
     ``Front-End-Https: on``.

Anything else gets a 301 to the same host, path and query over https.
With enforcement off every request passes through untouched.

Enforcement is enabled by ``transport.enforce_https: true`` in config, or
unconditionally when EMRGATE_ENV=production.
"""

from __future__ import annotations

from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response
from starlette.types import ASGIApp

from emrgate.utils.logger import get_logger

logger = get_logger(__name__)

_SECURE_SCHEMES: frozenset[str] = frozenset({"https", "wss"})


def is_secure_request(scheme: str, headers: Headers) -> bool:
    """Return True if any secure-channel hint is present."""
    if scheme.lower() in _SECURE_SCHEMES:
        return True

    forwarded_proto = headers.get("x-forwarded-proto", "")
    if forwarded_proto.split(",")[0].strip().lower() == "https":
        return True

    for flag_header in ("x-forwarded-ssl", "front-end-https"):
        if headers.get(flag_header, "").strip().lower() == "on":
            return True

    return False


def build_https_url(request: Request) -> str:
    """Rebuild the request target as an https URL on the same host."""
    host = request.headers.get("host") or request.url.netloc
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    query = request.url.query
    return f"https://{host}{path}" + (f"?{query}" if query else "")


class TransportGuardMiddleware(BaseHTTPMiddleware):
    """Permanent redirect to HTTPS for requests without a secure-channel hint.

    Registered outermost in create_app(), so a plaintext request is
    redirected before the WAF or any handler sees it.
    """

    def __init__(self, app: ASGIApp, enforce: bool = False) -> None:
        super().__init__(app)
        self.enforce = enforce

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        if not self.enforce or is_secure_request(request.url.scheme, request.headers):
            return await call_next(request)

        location = build_https_url(request)
        logger.info(
            "https_redirect",
            method=request.method,
            path=request.url.path,
            location=location,
        )
        return RedirectResponse(url=location, status_code=301)
