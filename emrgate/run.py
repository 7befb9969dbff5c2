"""Programmatic uvicorn entry point for EMRGate.

Reads host and port from the loaded config (127.0.0.1:5000 by default) and
starts uvicorn with hardened defaults:

  --limit-concurrency 100  Max 100 concurrent connections; HTTP 503 when exceeded
  --backlog 50             OS connection queue depth; limits SYN flood exposure
  --timeout-keep-alive 5   Reduces the Slow Loris attack window

Usage:
    python -m emrgate.run
    emrgate                 # via pyproject.toml [project.scripts]

When TLS terminates at a reverse proxy, set EMRGATE_ENV=production so the
Transport Guard trusts X-Forwarded-Proto and redirects plaintext requests.
"""

from __future__ import annotations

import uvicorn

from emrgate.config import load_config

UVICORN_LIMIT_CONCURRENCY: int = 100

UVICORN_BACKLOG: int = 50

UVICORN_TIMEOUT_KEEP_ALIVE: int = 5


def main() -> None:
    """Start EMRGate with the hardened uvicorn defaults.

    Raises:
        SystemExit: Propagated from load_config() on config errors.
    """
    config = load_config()

    uvicorn.run(
        "emrgate.main:app",
        host=config.server.host,
        port=config.server.port,
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        backlog=UVICORN_BACKLOG,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
