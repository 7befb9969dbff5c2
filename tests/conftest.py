"""Root test configuration for EMRGate.

Provides:
  - an isolated environment: no config file from the developer's machine,
    no production mode, audit/session databases under ``tmp_path``
  - ``test_config``: a Config with fast bcrypt and tmp_path databases
  - ``ready_app``: an app with the lifespan state set up by hand, for tests
    that drive it through httpx ASGITransport (which does not run lifespan)
"""

from __future__ import annotations

from typing import AsyncIterator

import pytest
import pytest_asyncio

from emrgate.audit.sqlite_backend import LocalSQLiteBackend
from emrgate.config import Config
from emrgate.session.store import SessionStore


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Keep every test away from real config files and home-directory databases."""
    monkeypatch.delenv("EMRGATE_CONFIG", raising=False)
    monkeypatch.delenv("EMRGATE_PORT", raising=False)
    monkeypatch.delenv("EMRGATE_ENV", raising=False)
    monkeypatch.setenv("EMRGATE_AUDIT_DB_PATH", str(tmp_path / "audit.db"))
    monkeypatch.setattr(
        "emrgate.config.DEFAULT_CONFIG_PATHS",
        [str(tmp_path / "no-such-config.yaml")],
    )


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Reset the in-memory slowapi storage so limits never bleed between tests."""
    from emrgate.session.limiter import limiter, set_session_rate_limit

    set_session_rate_limit("60/minute")
    limiter.reset()


@pytest.fixture
def test_config(tmp_path) -> Config:
    config = Config.defaults()
    config.session.bcrypt_rounds = 4
    config.session.db_path = str(tmp_path / "sessions.db")
    config.audit.path = str(tmp_path / "audit.db")
    return config


@pytest_asyncio.fixture
async def session_store(tmp_path) -> AsyncIterator[SessionStore]:
    store = SessionStore(str(tmp_path / "sessions.db"), bcrypt_rounds=4)
    await store.initialize()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def audit_backend(tmp_path) -> AsyncIterator[LocalSQLiteBackend]:
    backend = LocalSQLiteBackend(db_path=str(tmp_path / "audit.db"))
    await backend.initialize()
    yield backend
    await backend.close()


@pytest_asyncio.fixture
async def ready_app(test_config: Config, session_store: SessionStore, audit_backend: LocalSQLiteBackend):
    """create_app() with the state the lifespan would have set."""
    from emrgate.main import create_app

    application = create_app(test_config)
    application.state.audit_backend = audit_backend
    application.state.session_store = session_store
    application.state.ready = True
    return application
