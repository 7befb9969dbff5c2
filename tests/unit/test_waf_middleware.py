"""Unit tests for WAFMiddleware: 403 responses, pass-through and audit dispatch."""

from __future__ import annotations

import asyncio

import pytest
from fastapi import FastAPI, Request
from httpx import ASGITransport, AsyncClient

from emrgate.audit.models import AuditEvent
from emrgate.audit.protocol import EventFilters
from emrgate.waf import middleware as waf_middleware
from emrgate.waf.middleware import WAFMiddleware, get_client_address

pytestmark = pytest.mark.asyncio

BLOCK_BODY = {
    "success": False,
    "message": "Request blocked by security policy.",
    "code": "WAF_BLOCKED",
}


class RecordingAuditBackend:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def log_event(self, event: AuditEvent) -> None:
        self.events.append(event)

    async def query_events(self, filters: EventFilters) -> list[AuditEvent]:
        return list(self.events)

    async def count_events(self, filters: EventFilters) -> int:
        return len(self.events)

    async def health_check(self) -> bool:
        return True

    async def prune_old_events(self, retention_days: int = 90) -> int:
        return 0

    async def close(self) -> None:
        return None


def _make_app(**waf_kwargs) -> tuple[FastAPI, RecordingAuditBackend]:
    app = FastAPI()
    backend = RecordingAuditBackend()
    app.state.audit_backend = backend
    app.add_middleware(WAFMiddleware, **waf_kwargs)

    @app.get("/patients")
    async def list_patients(name: str = "") -> dict:
        return {"ok": True, "name": name}

    @app.post("/notes")
    async def create_note(request: Request) -> dict:
        return {"ok": True, "received": await request.json()}

    @app.post("/api/upload")
    async def upload(request: Request) -> dict:
        return {"ok": True, "size": len(await request.body())}

    @app.post("/raw")
    async def raw(request: Request) -> dict:
        return {"ok": True, "size": len(await request.body())}

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app, backend


def _client(app: FastAPI) -> AsyncClient:
    transport = ASGITransport(app=app, client=("127.0.0.1", 9999))  # type: ignore[arg-type]
    return AsyncClient(transport=transport, base_url="http://test")


async def _drain() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


class TestBlocking:
    async def test_sqli_query_blocked(self) -> None:
        app, _ = _make_app()
        async with _client(app) as client:
            response = await client.get("/patients", params={"name": "' OR '1'='1"})
        assert response.status_code == 403
        assert response.json() == BLOCK_BODY
        assert len(response.headers["X-EMRGate-Event-ID"]) == 26

    async def test_blocked_response_never_echoes_payload(self) -> None:
        app, _ = _make_app()
        async with _client(app) as client:
            response = await client.get("/patients", params={"name": "<script>alert(1)</script>"})
        assert response.status_code == 403
        assert "script" not in response.text

    async def test_xss_json_body_blocked(self) -> None:
        app, _ = _make_app()
        async with _client(app) as client:
            response = await client.post("/notes", json={"text": {"body": "<script>alert(1)</script>"}})
        assert response.status_code == 403

    async def test_xss_user_agent_blocked(self) -> None:
        app, _ = _make_app()
        async with _client(app) as client:
            response = await client.get("/patients", headers={"User-Agent": "<script>alert(1)</script>"})
        assert response.status_code == 403

    async def test_suspicious_path_blocked(self) -> None:
        app, _ = _make_app()
        async with _client(app) as client:
            response = await client.get("/uploads/shell.php")
        assert response.status_code == 403


class TestPassThrough:
    async def test_benign_query_reaches_handler(self) -> None:
        app, backend = _make_app()
        async with _client(app) as client:
            response = await client.get("/patients", params={"name": "Ana"})
        assert response.status_code == 200
        assert response.json() == {"ok": True, "name": "Ana"}
        await _drain()
        assert backend.events == []

    async def test_body_still_readable_by_handler(self) -> None:
        app, _ = _make_app()
        payload = {"text": "Patient stable, BP 120/80"}
        async with _client(app) as client:
            response = await client.post("/notes", json=payload)
        assert response.status_code == 200
        assert response.json()["received"] == payload

    async def test_upload_body_not_scanned(self) -> None:
        app, _ = _make_app()
        async with _client(app) as client:
            response = await client.post("/api/upload", content=b"<script>alert(1)</script>")
        assert response.status_code == 200

    async def test_health_skipped(self) -> None:
        app, _ = _make_app()
        async with _client(app) as client:
            response = await client.get("/health", params={"q": "' OR 1=1--"})
        assert response.status_code == 200

    async def test_options_preflight_skipped(self) -> None:
        app, _ = _make_app()
        async with _client(app) as client:
            response = await client.options("/patients", params={"name": "' OR 1=1--"})
        assert response.status_code != 403

    async def test_disabled_waf_passes_everything(self) -> None:
        app, _ = _make_app(enabled=False)
        async with _client(app) as client:
            response = await client.get("/patients", params={"name": "' OR 1=1--"})
        assert response.status_code == 200

    async def test_malformed_json_not_blocked(self) -> None:
        app, _ = _make_app()
        async with _client(app) as client:
            response = await client.post(
                "/raw", content=b"{broken", headers={"content-type": "application/json"}
            )
        assert response.status_code == 200


class TestAudit:
    async def test_one_audit_event_per_block(self) -> None:
        app, backend = _make_app()
        async with _client(app) as client:
            response = await client.get(
                "/patients",
                params={"name": "' OR 1=1--"},
                headers={"User-Agent": "pytest-agent", "X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
            )
        await _drain()

        assert len(backend.events) == 1
        event = backend.events[0]
        assert event.event_id == response.headers["X-EMRGate-Event-ID"]
        assert event.client_ip == "203.0.113.7"
        assert event.method == "GET"
        assert event.path == "/patients"
        assert event.user_agent == "pytest-agent"
        assert event.findings == [
            {
                "category": "sqlInjection",
                "location": "query:name",
                "value": "' OR 1=1--",
                "rule": "numeric-tautology",
            }
        ]

    async def test_missing_backend_still_blocks(self) -> None:
        app, _ = _make_app()
        app.state.audit_backend = None
        async with _client(app) as client:
            response = await client.get("/patients", params={"name": "' OR 1=1--"})
        assert response.status_code == 403


class TestFailSafe:
    async def test_inspection_error_blocks(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def _boom(*args, **kwargs):
            raise RuntimeError("scanner exploded")

        monkeypatch.setattr(waf_middleware, "inspect_request", _boom)
        app, _ = _make_app()
        async with _client(app) as client:
            response = await client.get("/patients", params={"name": "Ana"})
        assert response.status_code == 403
        assert response.json() == BLOCK_BODY


class TestClientAddress:
    def _request(self, headers: dict[str, str], client=("198.51.100.1", 1234)) -> Request:
        scope = {
            "type": "http",
            "method": "GET",
            "path": "/",
            "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
            "client": client,
        }
        return Request(scope)

    def test_forwarded_for_first_hop(self) -> None:
        assert get_client_address(self._request({"X-Forwarded-For": "1.2.3.4, 5.6.7.8"})) == "1.2.3.4"

    def test_real_ip(self) -> None:
        assert get_client_address(self._request({"X-Real-IP": "9.9.9.9"})) == "9.9.9.9"

    def test_socket_peer(self) -> None:
        assert get_client_address(self._request({})) == "198.51.100.1"

    def test_no_client(self) -> None:
        assert get_client_address(self._request({}, client=None)) == "unknown"
