"""WAF Decision Gate: the pure allow/block decision for one request.

``inspect_request()`` runs the path, query, header and (where applicable)
body scans and folds every finding into a single ``ScanVerdict``. It does no
I/O; the Starlette adapter in ``emrgate.waf.middleware`` turns the verdict
into a response and an audit record.

Decision rules:
  1. ``OPTIONS`` requests and skip-listed path prefixes are never scanned.
  2. Path, query and header scans always run.
  3. The body is scanned only when the method is not ``GET`` and the path
     does not contain ``/upload`` (multipart uploads are validated by their
     own handlers).
  4. Any finding ⇒ block. A body nested deeper than ``max_body_depth``
     counts as a finding.
"""

from __future__ import annotations

import json
from typing import Any, Mapping, Optional, Sequence
from urllib.parse import parse_qsl

from emrgate.constants import (
    DEFAULT_MAX_BODY_DEPTH,
    DEFAULT_WAF_SKIP_PATHS,
    UPLOAD_PATH_MARKER,
)
from emrgate.waf.scanner import (
    QueryParams,
    ScanFinding,
    ScanVerdict,
    body_nesting_finding,
    scan_body,
    scan_headers,
    scan_path,
    scan_query,
)

_UNSCANNED_METHODS = frozenset({"OPTIONS"})

_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


class _TooDeepToParse:
    """Marker for a JSON body whose nesting overflowed the decoder."""

    def __repr__(self) -> str:
        return "TOO_DEEP_TO_PARSE"


TOO_DEEP_TO_PARSE = _TooDeepToParse()


def is_exempt(method: str, path: str, skip_paths: Sequence[str] = DEFAULT_WAF_SKIP_PATHS) -> bool:
    """Return True if the request bypasses the WAF entirely.

    Skip prefixes match whole path segments: ``/health`` exempts ``/health``
    and ``/health/live`` but not ``/healthcare``.
    """
    if method.upper() in _UNSCANNED_METHODS:
        return True
    return any(_under_prefix(path, prefix) for prefix in skip_paths)


def _under_prefix(path: str, prefix: str) -> bool:
    base = prefix.rstrip("/")
    if not base:
        return True
    return path == base or path.startswith(base + "/")


def should_scan_body(method: str, path: str) -> bool:
    """Return True if the request body is subject to scanning."""
    return method.upper() != "GET" and UPLOAD_PATH_MARKER not in path


def parse_body(raw: bytes, content_type: Optional[str]) -> Any:
    """Decode a raw request body into a JSON-like value.

    JSON and URL-encoded form bodies are supported. Anything else, and any
    body that fails to decode, returns None (nothing to scan). JSON nested
    too deeply for the decoder returns ``TOO_DEEP_TO_PARSE``, which
    ``inspect_request()`` blocks like any other over-deep body.
    """
    if not raw:
        return None

    media_type = (content_type or "").split(";", 1)[0].strip().lower()

    if media_type == _FORM_CONTENT_TYPE:
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
        form: dict[str, list[str]] = {}
        for key, value in parse_qsl(text, keep_blank_values=True):
            form.setdefault(key, []).append(value)
        return {k: v[0] if len(v) == 1 else v for k, v in form.items()}

    if media_type == "application/json" or media_type.endswith("+json") or not media_type:
        try:
            return json.loads(raw)
        except RecursionError:
            return TOO_DEEP_TO_PARSE
        except (ValueError, UnicodeDecodeError):
            return None

    return None


def inspect_request(
    method: str,
    path: str,
    query: QueryParams = (),
    body: Any = None,
    headers: Optional[Mapping[str, str]] = None,
    *,
    skip_paths: Sequence[str] = DEFAULT_WAF_SKIP_PATHS,
    max_body_depth: int = DEFAULT_MAX_BODY_DEPTH,
    include_headers: bool = True,
    extra_paths: Sequence[str] = (),
) -> ScanVerdict:
    """Decide whether one request is allowed.

    Args:
        method:          HTTP method.
        path:            Decoded URL path.
        query:           Query parameters (mapping or ``(key, value)`` pairs).
        body:            Already-parsed body (see ``parse_body()``), or None.
        headers:         Request headers; only the inspected subset is scanned.
        skip_paths:      Path prefixes exempt from scanning.
        max_body_depth:  Nesting limit passed to ``scan_body()``.
        include_headers: Set False to disable header scanning.
        extra_paths:     Additional path spellings to scan (e.g. the raw,
                         still-encoded request target).

    Returns:
        ScanVerdict; empty findings means allow.
    """
    if is_exempt(method, path, skip_paths):
        return ScanVerdict()

    findings: list[ScanFinding] = []

    findings.extend(scan_path(path))
    seen_paths = {path}
    for alt in extra_paths:
        if alt and alt not in seen_paths:
            seen_paths.add(alt)
            for finding in scan_path(alt):
                if not any(f.category == finding.category and f.location == "path" for f in findings):
                    findings.append(finding)

    findings.extend(scan_query(query))

    if include_headers and headers:
        findings.extend(scan_headers(headers))

    if body is not None and should_scan_body(method, path):
        if body is TOO_DEEP_TO_PARSE:
            findings.append(body_nesting_finding())
        else:
            findings.extend(scan_body(body, max_depth=max_body_depth))

    return ScanVerdict(findings=tuple(findings))
