"""Unit tests for LocalSQLiteBackend, NullAuditBackend and the backend factory."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import aiosqlite
import pytest

from emrgate.audit.factory import create_audit_backend
from emrgate.audit.models import AuditEvent
from emrgate.audit.protocol import AuditBackend, EventFilters, NullAuditBackend
from emrgate.audit.sqlite_backend import LocalSQLiteBackend, seconds_until_prune
from emrgate.config import Config
from emrgate.utils.ulid import generate_ulid

pytestmark = pytest.mark.asyncio


def _event(
    *,
    category: str = "sqlInjection",
    client_ip: str = "10.0.0.1",
    method: str = "GET",
    path: str = "/patients",
    timestamp: datetime | None = None,
    event_id: str | None = None,
) -> AuditEvent:
    return AuditEvent(
        event_id=event_id or generate_ulid(),
        timestamp=timestamp or datetime.now(timezone.utc),
        client_ip=client_ip,
        method=method,
        path=path,
        findings=[{"category": category, "location": "query:q", "value": "x", "rule": "r"}],
        user_agent="pytest",
    )


class TestAuditEvent:
    def test_categories_distinct_in_order(self) -> None:
        event = _event()
        event.findings = [
            {"category": "xss", "location": "query:a", "value": "<s", "rule": "a"},
            {"category": "sqlInjection", "location": "query:b", "value": "'", "rule": "b"},
            {"category": "xss", "location": "body:c", "value": "<s", "rule": "a"},
        ]
        assert event.categories == ["xss", "sqlInjection"]

    def test_defaults(self) -> None:
        event = _event()
        assert event.action == "BLOCK"
        assert event.schema_version == 1


class TestSchema:
    async def test_fresh_database_gets_schema_and_wal(self, audit_backend: LocalSQLiteBackend) -> None:
        async with aiosqlite.connect(audit_backend.db_path) as db:
            cursor = await db.execute("PRAGMA user_version;")
            assert (await cursor.fetchone())[0] == 1
            cursor = await db.execute("PRAGMA journal_mode;")
            assert (await cursor.fetchone())[0] == "wal"
            cursor = await db.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='waf_events'"
            )
            assert await cursor.fetchone() is not None

    async def test_reopen_existing_database(self, tmp_path: Path) -> None:
        path = str(tmp_path / "audit.db")
        first = LocalSQLiteBackend(path)
        await first.initialize()
        await first.log_event(_event())
        await first.close()

        second = LocalSQLiteBackend(path)
        await second.initialize()
        try:
            assert await second.count_events(EventFilters()) == 1
        finally:
            await second.close()

    async def test_version_mismatch_refuses(self, tmp_path: Path) -> None:
        path = str(tmp_path / "audit.db")
        async with aiosqlite.connect(path) as db:
            await db.execute("PRAGMA user_version = 7;")
            await db.commit()

        backend = LocalSQLiteBackend(path)
        with pytest.raises(RuntimeError, match="schema version: 7"):
            await backend.initialize()
        assert not await backend.health_check()


class TestWrites:
    async def test_round_trip(self, audit_backend: LocalSQLiteBackend) -> None:
        event = _event()
        await audit_backend.log_event(event)

        (stored,) = await audit_backend.query_events(EventFilters())
        assert stored.event_id == event.event_id
        assert stored.findings == event.findings
        assert stored.user_agent == "pytest"
        assert stored.timestamp.tzinfo is not None

    async def test_duplicate_event_id_ignored(self, audit_backend: LocalSQLiteBackend) -> None:
        event = _event()
        await audit_backend.log_event(event)
        await audit_backend.log_event(event)
        assert await audit_backend.count_events(EventFilters()) == 1

    async def test_log_event_never_raises_when_closed(self, tmp_path: Path) -> None:
        backend = LocalSQLiteBackend(str(tmp_path / "audit.db"))
        await backend.log_event(_event())


class TestQueries:
    async def test_newest_first_with_paging(self, audit_backend: LocalSQLiteBackend) -> None:
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for minutes in range(5):
            await audit_backend.log_event(
                _event(event_id=f"EVT{minutes}", timestamp=base + timedelta(minutes=minutes))
            )

        events = await audit_backend.query_events(EventFilters(limit=2, offset=1))
        assert [e.event_id for e in events] == ["EVT3", "EVT2"]
        assert await audit_backend.count_events(EventFilters(limit=2)) == 5

    async def test_filters(self, audit_backend: LocalSQLiteBackend) -> None:
        await audit_backend.log_event(_event(category="xss", client_ip="1.1.1.1", path="/api/notes"))
        await audit_backend.log_event(_event(category="sqlInjection", method="POST", path="/api/patients"))
        await audit_backend.log_event(_event(category="pathTraversal", path="/files"))

        assert await audit_backend.count_events(EventFilters(category="xss")) == 1
        assert await audit_backend.count_events(EventFilters(client_ip="1.1.1.1")) == 1
        assert await audit_backend.count_events(EventFilters(method="post")) == 1
        assert await audit_backend.count_events(EventFilters(path_prefix="/api/")) == 2

    async def test_category_matches_whole_tag(self, audit_backend: LocalSQLiteBackend) -> None:
        await audit_backend.log_event(_event(category="sqlInjection"))
        assert await audit_backend.count_events(EventFilters(category="Injection")) == 0

    async def test_time_window(self, audit_backend: LocalSQLiteBackend) -> None:
        base = datetime(2026, 3, 1, tzinfo=timezone.utc)
        for day in range(3):
            await audit_backend.log_event(_event(timestamp=base + timedelta(days=day)))

        window = EventFilters(since=base + timedelta(hours=12), until=base + timedelta(days=2))
        assert await audit_backend.count_events(window) == 2


class TestRetention:
    async def test_prune_old_events(self, audit_backend: LocalSQLiteBackend) -> None:
        now = datetime.now(timezone.utc)
        await audit_backend.log_event(_event(event_id="OLD", timestamp=now - timedelta(days=100)))
        await audit_backend.log_event(_event(event_id="NEW", timestamp=now - timedelta(days=1)))

        assert await audit_backend.prune_old_events(retention_days=90) == 1
        remaining = await audit_backend.query_events(EventFilters())
        assert [e.event_id for e in remaining] == ["NEW"]

    async def test_prune_nothing(self, audit_backend: LocalSQLiteBackend) -> None:
        assert await audit_backend.prune_old_events(retention_days=90) == 0

    async def test_next_prune_later_today(self) -> None:
        now = datetime(2026, 3, 1, 1, 30, tzinfo=timezone.utc)
        assert seconds_until_prune(now) == 90 * 60

    async def test_next_prune_rolls_to_tomorrow(self) -> None:
        now = datetime(2026, 3, 1, 3, 0, tzinfo=timezone.utc)
        assert seconds_until_prune(now) == 24 * 3600

    async def test_closed_backend_refuses_queries(self, tmp_path: Path) -> None:
        backend = LocalSQLiteBackend(str(tmp_path / "audit.db"))
        with pytest.raises(RuntimeError, match="not open"):
            await backend.query_events(EventFilters())
        assert not await backend.health_check()


class TestNullBackend:
    async def test_null_backend_is_a_backend(self) -> None:
        backend = NullAuditBackend()
        assert isinstance(backend, AuditBackend)
        await backend.log_event(_event())
        assert await backend.query_events(EventFilters()) == []
        assert await backend.count_events(EventFilters()) == 0
        assert await backend.health_check()


class TestFactory:
    async def test_disabled_audit_gives_null_backend(self) -> None:
        config = Config.defaults()
        config.audit.enabled = False
        assert isinstance(await create_audit_backend(config), NullAuditBackend)

    async def test_env_path_wins(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        env_path = str(tmp_path / "from-env.db")
        monkeypatch.setenv("EMRGATE_AUDIT_DB_PATH", env_path)
        config = Config.defaults()
        config.audit.path = str(tmp_path / "from-config.db")

        backend = await create_audit_backend(config)
        try:
            assert isinstance(backend, LocalSQLiteBackend)
            assert backend.db_path == env_path
            assert await backend.health_check()
        finally:
            await backend.close()

    async def test_config_path_used_without_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("EMRGATE_AUDIT_DB_PATH", raising=False)
        config = Config.defaults()
        config.audit.path = str(tmp_path / "nested" / "audit.db")

        backend = await create_audit_backend(config)
        try:
            assert backend.db_path == config.audit.path
        finally:
            await backend.close()
