"""AuditBackend Protocol, EventFilters and the NullAuditBackend.

AuditEvent is defined in emrgate/audit/models.py.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from emrgate.audit.models import AuditEvent
from emrgate.utils.logger import get_logger

logger = get_logger(__name__)


# ─── EventFilters ─────────────────────────────────────────────────────────────


@dataclass
class EventFilters:
    """Narrowing criteria for the audit trail; unset fields match everything.

    ``limit``/``offset`` page ``query_events``; ``count_events`` ignores them.
    """

    client_ip: Optional[str] = None
    method: Optional[str] = None
    path_prefix: Optional[str] = None
    """Include events whose path starts with this prefix."""
    category: Optional[str] = None
    """Include events with at least one finding in this category."""
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = 50
    offset: int = 0


# ─── AuditBackend Protocol ────────────────────────────────────────────────────


@runtime_checkable
class AuditBackend(Protocol):
    """Where blocked-request records go.

    ``create_audit_backend`` picks LocalSQLiteBackend or NullAuditBackend.
    The WAF schedules ``log_event`` as a detached task, so it must swallow
    and log its own failures.
    """

    async def log_event(self, event: AuditEvent) -> None:
        """Persist an audit event. Must NEVER raise."""
        ...

    async def query_events(self, filters: EventFilters) -> list[AuditEvent]:
        """Return matching events, newest first."""
        ...

    async def count_events(self, filters: EventFilters) -> int:
        """Count matching events, ignoring limit/offset."""
        ...

    async def health_check(self) -> bool:
        """False when the store is unusable. Never raises."""
        ...

    async def prune_old_events(self, retention_days: int = 90) -> int:
        """Drop events past the retention window; returns how many went."""
        ...

    async def close(self) -> None:
        """Release connections. Called during graceful shutdown."""
        ...


# ─── NullAuditBackend ────────────────────────────────────────────────────────


class NullAuditBackend:
    """No-op AuditBackend, selected when ``audit.enabled: false``.

    The structlog ``waf_request_blocked`` warning is still emitted for every
    block; only persistence is skipped.
    """

    async def log_event(self, event: AuditEvent) -> None:
        logger.debug("audit_event_discarded", event_id=event.event_id)

    async def query_events(self, filters: EventFilters) -> list[AuditEvent]:
        return []

    async def count_events(self, filters: EventFilters) -> int:
        return 0

    async def health_check(self) -> bool:
        return True

    async def prune_old_events(self, retention_days: int = 90) -> int:
        return 0

    async def close(self) -> None:
        return None


assert isinstance(NullAuditBackend(), AuditBackend)
