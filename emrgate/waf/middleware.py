"""WAF middleware: Starlette adapter around ``inspect_request()``.

Per request:
  1. Exempt requests (OPTIONS, skip-listed paths) go straight to the app.
  2. Path, query, selected headers and (when eligible) the body are scanned.
  3. A non-empty verdict ⇒ HTTP 403 ``WAF_BLOCKED`` with
     ``X-EMRGate-Event-ID``, a ``waf_request_blocked`` structlog WARNING, and
     an AuditEvent handed to the audit backend fire-and-forget.
  4. An empty verdict ⇒ the request continues unchanged. Starlette caches
     the body read here, so handlers can still ``await request.body()``.

Fail-safe: if inspection itself raises, the error is logged and the request
is blocked with the same 403 body.

The middleware holds no per-client state; every decision depends only on
the request in hand.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from emrgate.audit.models import AuditEvent
from emrgate.audit.protocol import AuditBackend
from emrgate.constants import DEFAULT_MAX_BODY_DEPTH, DEFAULT_WAF_SKIP_PATHS
from emrgate.models.block import build_gate_error_response, build_waf_block_response
from emrgate.utils.logger import PerformanceLogger, clear_request_id, get_logger, set_request_id
from emrgate.utils.ulid import generate_ulid
from emrgate.waf.gate import inspect_request, is_exempt, parse_body, should_scan_body
from emrgate.waf.scanner import ScanVerdict

logger = get_logger(__name__)

# Strong references to in-flight audit writes; the event loop only keeps weak ones.
_background_tasks: set[asyncio.Task] = set()


def get_client_address(request: Request) -> str:
    """Return the client address used in logs and audit records.

    Order: first ``X-Forwarded-For`` hop, ``X-Real-IP``, socket peer.
    """
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    if request.client is not None:
        return request.client.host
    return "unknown"


def _raw_path(request: Request) -> Optional[str]:
    raw = request.scope.get("raw_path")
    if not raw:
        return None
    try:
        return raw.decode("latin-1")
    except (AttributeError, UnicodeDecodeError):
        return None


def _dispatch_audit(backend: Optional[AuditBackend], event: AuditEvent) -> None:
    if backend is None:
        return
    task = asyncio.create_task(backend.log_event(event))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


class WAFMiddleware(BaseHTTPMiddleware):
    """Pattern-based Web Application Firewall.

    Registration (in create_app() in emrgate/main.py):
        application.add_middleware(
            WAFMiddleware,
            enabled=config.waf.enabled,
            skip_paths=config.waf.skip_paths,
            max_body_depth=config.waf.max_body_depth,
            scan_headers=config.waf.scan_headers,
        )

    The audit backend is read from ``request.app.state.audit_backend`` at
    request time, because it is created in the lifespan after the
    middleware stack is built.
    """

    def __init__(
        self,
        app: ASGIApp,
        enabled: bool = True,
        skip_paths: Sequence[str] = DEFAULT_WAF_SKIP_PATHS,
        max_body_depth: int = DEFAULT_MAX_BODY_DEPTH,
        scan_headers: bool = True,
    ) -> None:
        super().__init__(app)
        self.enabled = enabled
        self.skip_paths = tuple(skip_paths)
        self.max_body_depth = max_body_depth
        self.scan_headers = scan_headers

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        if not self.enabled:
            return await call_next(request)

        method = request.method
        path = request.url.path

        if is_exempt(method, path, self.skip_paths):
            return await call_next(request)

        event_id = generate_ulid()
        set_request_id(event_id)
        try:
            try:
                verdict = await self._inspect(request)
            except Exception as exc:
                logger.error(
                    "waf_inspection_error",
                    method=method,
                    path=path,
                    client=get_client_address(request),
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                return build_gate_error_response(event_id)

            if verdict.blocked:
                self._record_block(request, verdict, event_id)
                return build_waf_block_response(event_id)
        finally:
            clear_request_id()

        return await call_next(request)

    async def _inspect(self, request: Request) -> ScanVerdict:
        body: Any = None
        if should_scan_body(request.method, request.url.path):
            raw_body = await request.body()
            body = parse_body(raw_body, request.headers.get("content-type"))

        raw_path = _raw_path(request)
        with PerformanceLogger("waf_inspection", logger):
            return inspect_request(
                request.method,
                request.url.path,
                request.query_params.multi_items(),
                body,
                request.headers,
                skip_paths=self.skip_paths,
                max_body_depth=self.max_body_depth,
                include_headers=self.scan_headers,
                extra_paths=(raw_path,) if raw_path else (),
            )

    def _record_block(self, request: Request, verdict: ScanVerdict, event_id: str) -> None:
        client_ip = get_client_address(request)
        timestamp = datetime.now(timezone.utc)
        findings = [finding.to_dict() for finding in verdict.findings]

        logger.warning(
            "waf_request_blocked",
            event_id=event_id,
            client=client_ip,
            method=request.method,
            path=request.url.path,
            findings=findings,
            blocked_at=timestamp.isoformat(),
        )

        event = AuditEvent(
            event_id=event_id,
            timestamp=timestamp,
            client_ip=client_ip,
            method=request.method,
            path=request.url.path,
            findings=findings,
            user_agent=request.headers.get("user-agent"),
        )
        _dispatch_audit(getattr(request.app.state, "audit_backend", None), event)
