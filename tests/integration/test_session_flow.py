"""Session lifecycle end to end: SessionController → SessionAPIClient → app → SessionStore."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from emrgate.session.client import SessionAPIClient, SessionAPIError
from emrgate.session.controller import SessionController
from emrgate.session.state import SessionPhase
from emrgate.session.store import SessionStore

pytestmark = pytest.mark.asyncio


def _http(app, refresh_token: str) -> AsyncClient:
    return AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        cookies={"refreshToken": refresh_token},
    )


def _controller(api: SessionAPIClient) -> SessionController:
    return SessionController(api, idle_timeout=900, refresh_interval=3600, idle_check_interval=3600)


async def test_refresh_activity_and_logout(ready_app, session_store: SessionStore) -> None:
    issued = await session_store.open_session("clinician-7", device_info="pytest")

    async with _http(ready_app, issued.refresh_token) as http:
        api = SessionAPIClient(client=http)
        controller = _controller(api)
        try:
            controller.start(issued.access_token, issued.expires_in)

            await controller.refresh_tick()
            new_token = controller.state.access_token
            assert new_token != issued.access_token
            assert (await session_store.authenticate(new_token)).user_id == "clinician-7"

            await api.report_activity()

            info = await http.get("/api/session/info", headers={"Authorization": f"Bearer {new_token}"})
            assert info.status_code == 200
            assert info.json()["data"]["userId"] == "clinician-7"

            await controller.logout()
            assert controller.state.phase == SessionPhase.LOGGED_OUT
            session = await session_store.get_session(issued.session_id)
            assert session is not None and not session.active

            with pytest.raises(SessionAPIError) as exc_info:
                await api.refresh()
            assert exc_info.value.session_expired
        finally:
            await controller.close()


async def test_server_inactivity_expires_client(ready_app, tmp_path: Path) -> None:
    now = [datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)]
    store = SessionStore(str(tmp_path / "clocked.db"), bcrypt_rounds=4, clock=lambda: now[0])
    await store.initialize()
    ready_app.state.session_store = store

    expirations: list[str] = []
    try:
        issued = await store.open_session("clinician-9")
        async with _http(ready_app, issued.refresh_token) as http:
            controller = _controller(SessionAPIClient(client=http))
            controller.add_listener(lambda s: expirations.append(s.expiry_reason) if s.is_expired else None)
            try:
                controller.start(issued.access_token, issued.expires_in)

                now[0] += timedelta(minutes=4)
                await controller.refresh_tick()
                assert controller.state.is_active

                now[0] += timedelta(minutes=12)
                await controller.refresh_tick()
                assert controller.is_expired
                assert controller.is_ui_frozen
                assert expirations == ["session_expired"]

                # The stored access token has lapsed too, so the server-side
                # logout is refused; reauthenticate() still unlocks the UI.
                await controller.reauthenticate()
                assert not controller.is_ui_frozen
                assert controller.state.phase == SessionPhase.LOGGED_OUT
            finally:
                await controller.close()
    finally:
        await store.close()


async def test_network_failure_keeps_session(ready_app, session_store: SessionStore) -> None:
    issued = await session_store.open_session("clinician-3")
    api = SessionAPIClient(base_url="http://127.0.0.1:9")
    controller = _controller(api)
    try:
        controller.start(issued.access_token, issued.expires_in)
        await controller.refresh_tick()
        assert controller.state.is_active
        assert controller.state.access_token == issued.access_token
    finally:
        await controller.close()
        await api.aclose()
