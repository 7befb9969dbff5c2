"""Health endpoint for EMRGate.

GET /health: 503 before ``app.state.ready`` is set by the lifespan, 200 after.
The WAF skips this path, so liveness checks are never scanned.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Primary health check.

    Response body (200):
        {
          "status": "ok" | "degraded",
          "waf": "enabled" | "disabled",
          "https_enforced": true | false,
          "audit": "healthy" | "error",
          "sessions": "healthy" | "unavailable"
        }

    ``degraded`` means the audit backend failed its health check; blocking
    still works, only persistence is affected.
    """
    state = request.app.state
    if not getattr(state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={"status": "starting", "message": "EMRGate is starting up."},
        )

    config = state.config
    audit_backend = getattr(state, "audit_backend", None)
    audit_ok = bool(audit_backend is not None and await audit_backend.health_check())

    return {
        "status": "ok" if audit_ok else "degraded",
        "waf": "enabled" if config.waf.enabled else "disabled",
        "https_enforced": config.transport.enforce_https,
        "audit": "healthy" if audit_ok else "error",
        "sessions": "healthy" if getattr(state, "session_store", None) is not None else "unavailable",
    }
