"""AuditEvent dataclass for the EMRGate audit trail.

One AuditEvent is written per request the WAF blocks. Findings are stored as
plain dicts (``category``, ``location``, ``value``, ``rule``) so the audit
package has no dependency on the scanner types.

IMPORTANT: finding values are already truncated to 100 characters by the
scanner. Nothing here re-expands or echoes them anywhere but the audit store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Optional

# ─── Type Aliases ─────────────────────────────────────────────────────────────

ActionType = Literal["BLOCK"]
FindingDict = dict[str, str]


# ─── AuditEvent ───────────────────────────────────────────────────────────────


@dataclass
class AuditEvent:
    """Audit record for one blocked request.

    schema_version=1: increment on breaking schema changes.

    Usage at call sites:
        asyncio.create_task(backend.log_event(event))  # fire-and-forget
    """

    # ── Required fields ───────────────────────────────────────────────────────
    event_id: str
    """ULID identifying the blocked request. Returned to the client in X-EMRGate-Event-ID."""
    timestamp: datetime
    """UTC datetime the request was blocked."""
    client_ip: str
    """Client address (first X-Forwarded-For hop, X-Real-IP, or socket peer)."""
    method: str
    path: str

    # ── Always present ────────────────────────────────────────────────────────
    action: ActionType = "BLOCK"
    findings: list[FindingDict] = field(default_factory=list)
    """One dict per finding. ``value`` is ≤ 100 characters."""
    schema_version: int = 1

    # ── Optional ──────────────────────────────────────────────────────────────
    user_agent: Optional[str] = None

    @property
    def categories(self) -> list[str]:
        """Distinct finding categories, in first-seen order."""
        seen: list[str] = []
        for finding in self.findings:
            category = finding.get("category", "")
            if category and category not in seen:
                seen.append(category)
        return seen
