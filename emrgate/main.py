"""EMRGate FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app(): testable application factory
  - lifespan: @asynccontextmanager startup/shutdown sequence
  - /health router: delegated to emrgate/health.py
  - /        route : service discovery root
  - app = create_app(): module-level instance for uvicorn

Middleware stack, outermost first:
  [TrustedHostMiddleware, when transport.allowed_hosts is narrowed] →
  TransportGuardMiddleware → CORSMiddleware → WAFMiddleware → SlowAPIMiddleware → routes

Startup sequence:
  1. app.state.config        (loaded in create_app(); the middleware needs it)
  2. create_audit_backend()  → app.state.audit_backend
  3. SessionStore            → app.state.session_store (+ expired-row cleanup)
  4. Retention pruner        → background task
  5. app.state.ready = True

Shutdown sequence (reverse):
  app.state.ready = False → cancel pruner → close session store → close audit backend
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from emrgate import __version__
from emrgate.audit.factory import create_audit_backend
from emrgate.audit.protocol import AuditBackend
from emrgate.audit.sqlite_backend import LocalSQLiteBackend, run_retention_pruner
from emrgate.config import Config, load_config
from emrgate.health import router as health_router
from emrgate.session.limiter import limiter, set_session_rate_limit
from emrgate.session.router import router as session_router
from emrgate.session.store import SessionStore
from emrgate.transport.middleware import TransportGuardMiddleware
from emrgate.utils.logger import configure_logging, get_logger
from emrgate.waf.middleware import WAFMiddleware

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


# ─── Root Endpoint ────────────────────────────────────────────────────────────

root_router = APIRouter(tags=["root"])


@root_router.get("/")
async def root() -> dict[str, str]:
    """Service identity / discovery."""
    return {
        "service": "EMRGate",
        "version": __version__,
        "health": "/health",
        "session": "/api/session",
    }


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown sequence. See module docstring for the order."""
    logger.info("EMRGate starting up...")

    config: Config = app.state.config

    # RuntimeError on an incompatible schema propagates and refuses startup.
    audit_backend: AuditBackend = await create_audit_backend(config)
    app.state.audit_backend = audit_backend

    session_store = SessionStore(
        config.session.db_path,
        access_token_ttl_seconds=config.session.access_token_ttl_seconds,
        inactivity_seconds=config.session.inactivity_seconds,
        bcrypt_rounds=config.session.bcrypt_rounds,
    )
    await session_store.initialize()
    removed = await session_store.cleanup_expired()
    app.state.session_store = session_store
    logger.info("Session store ready", db_path=session_store.db_path, removed_expired=removed)

    retention_task: Optional[asyncio.Task[None]] = None
    if isinstance(audit_backend, LocalSQLiteBackend):
        retention_task = asyncio.create_task(
            run_retention_pruner(audit_backend, config.audit.retention_days)
        )

    app.state.ready = True
    logger.info(
        "EMRGate ready",
        enforce_https=config.transport.enforce_https,
        waf_enabled=config.waf.enabled,
    )

    yield

    logger.info("EMRGate shutting down...")
    app.state.ready = False

    if retention_task is not None and not retention_task.done():
        retention_task.cancel()
        try:
            await retention_task
        except asyncio.CancelledError:
            pass

    await session_store.close()
    await audit_backend.close()
    logger.info("EMRGate shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app(config: Optional[Config] = None) -> FastAPI:
    """Create and configure the EMRGate FastAPI application.

    Tests pass an explicit Config (tmp_path databases, low bcrypt cost).
    Without one, load_config() runs here rather than in the lifespan because
    the middleware stack is built from it.

    Raises:
        SystemExit(1): Propagated from load_config() on an invalid config file.
    """
    config = config or load_config()

    application = FastAPI(
        title="EMRGate",
        description="Security edge for an EMR backend: HTTPS enforcement, WAF, session lifecycle",
        version=__version__,
        lifespan=lifespan,
        docs_url="/api-docs" if DEBUG else None,
        redoc_url=None,
        openapi_url="/openapi.json" if DEBUG else None,
    )

    application.state.ready = False
    application.state.config = config

    set_session_rate_limit(config.session.rate_limit)
    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # NOTE: In Starlette the LAST-added middleware is OUTERMOST (runs first).
    application.add_middleware(SlowAPIMiddleware)
    application.add_middleware(
        WAFMiddleware,
        enabled=config.waf.enabled,
        skip_paths=config.waf.skip_paths,
        max_body_depth=config.waf.max_body_depth,
        scan_headers=config.waf.scan_headers,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors.allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-EMRGate-Event-ID"],
    )
    application.add_middleware(
        TransportGuardMiddleware,
        enforce=config.transport.enforce_https,
    )
    if "*" not in config.transport.allowed_hosts:
        application.add_middleware(
            TrustedHostMiddleware,
            allowed_hosts=config.transport.allowed_hosts,
            www_redirect=False,
        )

    application.include_router(root_router)
    application.include_router(health_router)
    application.include_router(session_router)

    @application.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        if isinstance(exc.detail, dict):
            content = {"success": False, **exc.detail}
        else:
            content = {"success": False, "message": exc.detail}
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Internal server error"},
        )

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────
#   uvicorn emrgate.main:app --host 127.0.0.1 --port 5000 --limit-concurrency 100 \
#     --backlog 50 --timeout-keep-alive 5

app = create_app()
