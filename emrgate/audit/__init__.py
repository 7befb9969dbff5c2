"""EMRGate audit package.

    from emrgate.audit import AuditEvent, AuditBackend, EventFilters

Layout:
    models.py        : AuditEvent
    protocol.py      : AuditBackend Protocol + EventFilters + NullAuditBackend
    sqlite_backend.py: LocalSQLiteBackend (aiosqlite, WAL, PRAGMA version guard)
    factory.py       : create_audit_backend()
"""

from emrgate.audit.models import AuditEvent
from emrgate.audit.protocol import (
    AuditBackend,
    EventFilters,
    NullAuditBackend,
)

__all__ = [
    "AuditEvent",
    "EventFilters",
    "AuditBackend",
    "NullAuditBackend",
]
