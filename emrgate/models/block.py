"""HTTP response builders for requests EMRGate refuses.

  build_waf_block_response():
      HTTP 403: the WAF found at least one attack pattern.
      Carries ``X-EMRGate-Event-ID: <ulid>`` for correlation with the audit
      trail. The body is the same fixed JSON for every block; it never
      names the category, the location or the matched value.

  build_gate_error_response():
      HTTP 403: the WAF itself failed while inspecting the request.
      Fail-safe: an inspection error is treated as a block, with the same
      client-facing body.

  build_error_response():
      Generic ``{"success": false, "message", "code"}`` envelope used by
      the session endpoints and the exception handlers.
"""

from __future__ import annotations

from typing import Optional

from fastapi.responses import JSONResponse

from emrgate.constants import WAF_BLOCKED_CODE, WAF_BLOCKED_MESSAGE

EVENT_ID_HEADER = "X-EMRGate-Event-ID"


def build_error_response(
    status_code: int,
    message: str,
    code: Optional[str] = None,
) -> JSONResponse:
    content: dict = {"success": False, "message": message}
    if code is not None:
        content["code"] = code
    return JSONResponse(status_code=status_code, content=content)


def build_waf_block_response(event_id: str) -> JSONResponse:
    """Build the HTTP 403 WAF block response.

    .. code-block:: json

        {
          "success": false,
          "message": "Request blocked by security policy.",
          "code": "WAF_BLOCKED"
        }

    Args:
        event_id: ULID of the AuditEvent recorded for this request.
    """
    response = build_error_response(403, WAF_BLOCKED_MESSAGE, WAF_BLOCKED_CODE)
    response.headers[EVENT_ID_HEADER] = event_id
    return response


def build_gate_error_response(event_id: str) -> JSONResponse:
    """Build the fail-safe 403 returned when inspection itself errors.

    Indistinguishable from a pattern block on the wire.
    """
    return build_waf_block_response(event_id)
