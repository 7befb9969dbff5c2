"""Audit backend factory: backend selection and initialization.

Selection:
  1. ``audit.enabled: false`` in config → NullAuditBackend
  2. Otherwise → LocalSQLiteBackend

LocalSQLiteBackend path, first match wins:
  1. EMRGATE_AUDIT_DB_PATH environment variable
  2. ``audit.path`` from config (default ~/.emrgate/audit.db)

LocalSQLiteBackend.initialize() raises RuntimeError on an incompatible
PRAGMA user_version; the FastAPI lifespan lets it propagate to refuse startup.
"""

from __future__ import annotations

import os
from typing import Optional

from emrgate.audit.protocol import AuditBackend, NullAuditBackend
from emrgate.config import Config
from emrgate.utils.logger import get_logger

logger = get_logger(__name__)

_ENV_AUDIT_DB_PATH = "EMRGATE_AUDIT_DB_PATH"


async def create_audit_backend(config: Optional[Config] = None) -> AuditBackend:
    """Create and initialize the audit backend selected by ``config``.

    Raises:
        RuntimeError: If the SQLite schema version is incompatible.
    """
    config = config or Config.defaults()

    if not config.audit.enabled:
        logger.info("audit_backend_selected", backend="NullAuditBackend")
        return NullAuditBackend()

    return await _create_local_sqlite_backend(config.audit.path)


async def _create_local_sqlite_backend(configured_path: str) -> AuditBackend:
    from emrgate.audit.sqlite_backend import LocalSQLiteBackend

    db_path = os.getenv(_ENV_AUDIT_DB_PATH) or configured_path
    backend = LocalSQLiteBackend(db_path=db_path)
    await backend.initialize()

    logger.info(
        "audit_backend_selected",
        backend="LocalSQLiteBackend",
        db_path=backend.db_path,
    )
    return backend
