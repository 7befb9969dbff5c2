"""Local audit trail of blocked requests, stored in SQLite through aiosqlite.

One long-lived connection per process, opened by ``initialize()``. The
database runs in WAL mode so the retention pruner and trail queries do not
stall block writes. ``PRAGMA user_version`` records the layout of
``waf_events``; a file written by a different layout is refused rather than
migrated.
"""

from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Optional

import aiosqlite

from emrgate.audit.models import AuditEvent
from emrgate.audit.protocol import EventFilters
from emrgate.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Schema ───────────────────────────────────────────────────────────────────

AUDIT_SCHEMA_VERSION = 1

_DDL = """
CREATE TABLE IF NOT EXISTS waf_events (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id        TEXT NOT NULL UNIQUE,
    timestamp       TEXT NOT NULL,
    client_ip       TEXT NOT NULL,
    method          TEXT NOT NULL,
    path            TEXT NOT NULL,
    action          TEXT NOT NULL CHECK(action IN ('BLOCK')),
    findings        TEXT NOT NULL,
    categories      TEXT NOT NULL,
    user_agent      TEXT,
    schema_version  INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_waf_events_timestamp ON waf_events(timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_waf_events_client_ip ON waf_events(client_ip, timestamp DESC);
"""

_COLUMNS = (
    "event_id",
    "timestamp",
    "client_ip",
    "method",
    "path",
    "action",
    "findings",
    "categories",
    "user_agent",
    "schema_version",
)

# A repeated event_id is a no-op.
_INSERT = (
    f"INSERT OR IGNORE INTO waf_events ({', '.join(_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _COLUMNS)})"
)

# Daily prune hour (UTC) and the back-off after a failed prune.
PRUNE_HOUR_UTC = 3
PRUNE_RETRY_SECONDS = 3600


# ─── Row mapping ──────────────────────────────────────────────────────────────


def _utc_iso(value: datetime) -> str:
    """ISO 8601 in UTC; naive datetimes are read as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _to_row(event: AuditEvent) -> tuple[Any, ...]:
    # Categories are comma-fenced (",sqli,xss,") so a LIKE on ",xss," only hits whole tags.
    return (
        event.event_id,
        _utc_iso(event.timestamp),
        event.client_ip,
        event.method,
        event.path,
        event.action,
        json.dumps(event.findings),
        f",{','.join(event.categories)},",
        event.user_agent,
        event.schema_version,
    )


def _from_row(row: aiosqlite.Row) -> AuditEvent:
    return AuditEvent(
        event_id=row["event_id"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        client_ip=row["client_ip"],
        method=row["method"],
        path=row["path"],
        action=row["action"],
        findings=json.loads(row["findings"]),
        user_agent=row["user_agent"],
        schema_version=row["schema_version"],
    )


def _filter_clauses(filters: EventFilters) -> Iterator[tuple[str, tuple[Any, ...]]]:
    if filters.client_ip is not None:
        yield "client_ip = ?", (filters.client_ip,)
    if filters.method is not None:
        yield "method = ?", (filters.method.upper(),)
    if filters.path_prefix is not None:
        yield "substr(path, 1, ?) = ?", (len(filters.path_prefix), filters.path_prefix)
    if filters.category is not None:
        yield "categories LIKE ?", (f"%,{filters.category},%",)
    if filters.since is not None:
        yield "timestamp >= ?", (_utc_iso(filters.since),)
    if filters.until is not None:
        yield "timestamp <= ?", (_utc_iso(filters.until),)


def _where(filters: EventFilters) -> tuple[str, list[Any]]:
    """Return a ``WHERE ...`` fragment (or "") and its bound parameters."""
    clauses: list[str] = []
    params: list[Any] = []
    for clause, values in _filter_clauses(filters):
        clauses.append(clause)
        params.extend(values)
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


# ─── Backend ──────────────────────────────────────────────────────────────────


class LocalSQLiteBackend:
    """SQLite audit backend; the default when auditing is enabled.

    The path comes from ``audit.path`` or EMRGATE_AUDIT_DB_PATH (see
    ``emrgate.audit.factory``). Tests pass a file under ``tmp_path``.
    """

    def __init__(self, db_path: str = "~/.emrgate/audit.db") -> None:
        self._db_path: str = os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Audit database is not open; call initialize() first")
        return self._db

    async def initialize(self) -> None:
        """Open the database and create or verify ``waf_events``.

        Raises:
            RuntimeError: the file was written with another schema version.
        """
        directory = os.path.dirname(self._db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        db = await aiosqlite.connect(self._db_path)
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA journal_mode=WAL;")

        async with db.execute("PRAGMA user_version;") as cursor:
            version_row = await cursor.fetchone()
        version = version_row[0] if version_row else 0

        if version not in (0, AUDIT_SCHEMA_VERSION):
            await db.close()
            raise RuntimeError(
                f"Audit database {self._db_path} has unsupported schema version: {version} "
                f"(expected {AUDIT_SCHEMA_VERSION}). Remove the file to start a new audit trail."
            )
        if version == 0:
            await db.executescript(_DDL)
            await db.execute(f"PRAGMA user_version = {AUDIT_SCHEMA_VERSION};")
            await db.commit()

        self._db = db
        logger.info(
            "audit_store_opened",
            db_path=self._db_path,
            created=version == 0,
            schema_version=AUDIT_SCHEMA_VERSION,
        )

    async def close(self) -> None:
        db, self._db = self._db, None
        if db is not None:
            await db.close()
            logger.debug("audit_store_closed", db_path=self._db_path)

    async def log_event(self, event: AuditEvent) -> None:
        """Record a blocked request. Never raises; failures are logged.

        Runs as a detached task off the request path.
        """
        try:
            db = self._conn
            await db.execute(_INSERT, _to_row(event))
            await db.commit()
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                event_id=event.event_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def query_events(self, filters: EventFilters) -> list[AuditEvent]:
        """Matching events, newest first, paged by ``limit``/``offset``."""
        where, params = _where(filters)
        sql = (
            f"SELECT * FROM waf_events{where} ORDER BY timestamp DESC "
            f"LIMIT {int(filters.limit)} OFFSET {int(filters.offset)}"
        )
        async with self._conn.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [_from_row(row) for row in rows]

    async def count_events(self, filters: EventFilters) -> int:
        where, params = _where(filters)
        async with self._conn.execute(f"SELECT COUNT(*) FROM waf_events{where}", params) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def health_check(self) -> bool:
        if self._db is None:
            return False
        try:
            await self._db.execute("SELECT 1")
        except Exception:
            return False
        return True

    async def prune_old_events(self, retention_days: int = 90) -> int:
        """Delete events older than ``retention_days``; an event at the cutoff stays."""
        cutoff = _utc_iso(datetime.now(timezone.utc) - timedelta(days=retention_days))
        db = self._conn
        cursor = await db.execute("DELETE FROM waf_events WHERE timestamp < ?", (cutoff,))
        await db.commit()
        deleted: int = cursor.rowcount
        if deleted:
            logger.info("audit_events_pruned", deleted=deleted, retention_days=retention_days, cutoff=cutoff)
        return deleted


# ─── Retention pruner ─────────────────────────────────────────────────────────


def seconds_until_prune(now: datetime, hour: int = PRUNE_HOUR_UTC) -> float:
    """Seconds from ``now`` to the next ``hour``:00 UTC, always > 0."""
    target = now.astimezone(timezone.utc).replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


async def run_retention_pruner(backend: LocalSQLiteBackend, retention_days: int = 90) -> None:
    """Prune once a day at PRUNE_HOUR_UTC until cancelled.

    The lifespan starts this as a task and cancels it on shutdown. A failed
    prune is logged and retried after PRUNE_RETRY_SECONDS.
    """
    while True:
        delay = seconds_until_prune(datetime.now(timezone.utc))
        logger.info("audit_pruner_sleeping", seconds=delay, retention_days=retention_days)
        try:
            await asyncio.sleep(delay)
            await backend.prune_old_events(retention_days=retention_days)
        except asyncio.CancelledError:
            logger.info("audit_pruner_stopped")
            raise
        except Exception as exc:
            logger.error(
                "audit_prune_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=PRUNE_RETRY_SECONDS,
            )
            await asyncio.sleep(PRUNE_RETRY_SECONDS)
