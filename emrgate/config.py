"""EMRGate configuration: a versioned YAML file layered over built-in defaults.

The first existing file wins, tried in this order:

  1. the ``config_path`` argument
  2. ``$EMRGATE_CONFIG``
  3. ``.emrgate/config.yaml`` in the working directory
  4. ``~/.emrgate/config.yaml``

Running without any file is supported and yields ``Config.defaults()``.
A file that exists but cannot be used (bad YAML, no ``version``, an unknown
version, out-of-range values) stops the process with a message on stderr
and exit status 1.

After the file, the environment has the last word:

  EMRGATE_PORT  server.port
  EMRGATE_ENV   "production"/"prod" turns on transport.enforce_https
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import NoReturn, Optional

import yaml

from emrgate.constants import (
    ACCESS_TOKEN_TTL_SECONDS,
    DEFAULT_BCRYPT_ROUNDS,
    DEFAULT_MAX_BODY_DEPTH,
    DEFAULT_WAF_SKIP_PATHS,
    IDLE_CHECK_INTERVAL_SECONDS,
    IDLE_TIMEOUT_SECONDS,
    REFRESH_INTERVAL_SECONDS,
    SESSION_INACTIVITY_SECONDS,
)
from emrgate.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# Values of EMRGATE_ENV that switch on HTTPS enforcement
PRODUCTION_ENVIRONMENTS: frozenset[str] = frozenset({"production", "prod"})

DEFAULT_CONFIG_PATHS = [
    ".emrgate/config.yaml",
    os.path.expanduser("~/.emrgate/config.yaml"),
]


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ServerConfig:
    """uvicorn binding configuration."""

    host: str = "127.0.0.1"
    port: int = 5000


@dataclass
class TransportConfig:
    """Transport Guard configuration.

    enforce_https is off by default so local, non-TLS development keeps
    working. Deployments switch it on explicitly.

    allowed_hosts lists the Host header values the service answers to
    (``*.example.org`` wildcards allowed). The default ``["*"]`` accepts
    any host; anything narrower rejects other hosts with 400 before the
    HTTPS redirect is built from the Host header.
    """

    enforce_https: bool = False
    allowed_hosts: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class WAFConfig:
    """Web Application Firewall configuration."""

    enabled: bool = True
    skip_paths: list[str] = field(default_factory=lambda: list(DEFAULT_WAF_SKIP_PATHS))
    max_body_depth: int = DEFAULT_MAX_BODY_DEPTH
    scan_headers: bool = True


@dataclass
class SessionConfig:
    """Session lifetimes (server side) and timer cadences (client side)."""

    access_token_ttl_seconds: int = ACCESS_TOKEN_TTL_SECONDS
    inactivity_seconds: int = SESSION_INACTIVITY_SECONDS
    idle_timeout_seconds: float = IDLE_TIMEOUT_SECONDS
    refresh_interval_seconds: float = REFRESH_INTERVAL_SECONDS
    idle_check_interval_seconds: float = IDLE_CHECK_INTERVAL_SECONDS
    bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS
    db_path: str = "~/.emrgate/sessions.db"
    rate_limit: str = "60/minute"


@dataclass
class AuditConfig:
    """Audit backend configuration."""

    enabled: bool = True
    retention_days: int = 90
    path: str = "~/.emrgate/audit.db"


@dataclass
class CORSConfig:
    """Allowed browser origins for the SPA frontend."""

    allow_origins: list[str] = field(
        default_factory=lambda: [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
        ]
    )


@dataclass
class Config:
    """Root configuration object populated from .emrgate/config.yaml.

    All fields have safe defaults: EMRGate can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    server: ServerConfig = field(default_factory=ServerConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    waf: WAFConfig = field(default_factory=WAFConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    cors: CORSConfig = field(default_factory=CORSConfig)
    path: Optional[str] = None  # Path to the loaded config file

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Overlay a version-checked YAML mapping onto the defaults.

        Sections or keys the file omits keep their default; keys EMRGate
        does not know are ignored.

        Raises:
            SystemExit(1): On a non-boolean flag, a non-positive duration, an
                           invalid waf.max_body_depth or transport.allowed_hosts,
                           or inconsistent session timer settings.
        """
        # ── Server ────────────────────────────────────────────────────────────
        server_raw = raw.get("server", {})
        server = ServerConfig(
            host=server_raw.get("host", "127.0.0.1"),
            port=server_raw.get("port", 5000),
        )

        # ── Transport ─────────────────────────────────────────────────────────
        transport_raw = raw.get("transport", {})
        allowed_hosts = transport_raw.get("allowed_hosts", ["*"])
        if (
            not isinstance(allowed_hosts, list)
            or not allowed_hosts
            or not all(isinstance(h, str) and h for h in allowed_hosts)
        ):
            _fail(
                f"CONFIG ERROR: transport.allowed_hosts must be a non-empty list of host names, "
                f"got {allowed_hosts!r}."
            )
        transport = TransportConfig(
            enforce_https=_flag(transport_raw, "transport", "enforce_https", False),
            allowed_hosts=list(allowed_hosts),
        )

        # ── WAF ───────────────────────────────────────────────────────────────
        waf_raw = raw.get("waf", {})
        max_body_depth = waf_raw.get("max_body_depth", DEFAULT_MAX_BODY_DEPTH)
        if isinstance(max_body_depth, bool) or not isinstance(max_body_depth, int) or max_body_depth < 1:
            _fail(
                f"CONFIG ERROR: Invalid waf.max_body_depth: '{max_body_depth}'. "
                "Must be a positive integer."
            )
        waf = WAFConfig(
            enabled=_flag(waf_raw, "waf", "enabled", True),
            skip_paths=list(waf_raw.get("skip_paths", DEFAULT_WAF_SKIP_PATHS)),
            max_body_depth=max_body_depth,
            scan_headers=_flag(waf_raw, "waf", "scan_headers", True),
        )

        # ── Session ───────────────────────────────────────────────────────────
        session_raw = raw.get("session", {})
        session = SessionConfig(
            access_token_ttl_seconds=session_raw.get(
                "access_token_ttl_seconds", ACCESS_TOKEN_TTL_SECONDS
            ),
            inactivity_seconds=session_raw.get("inactivity_seconds", SESSION_INACTIVITY_SECONDS),
            idle_timeout_seconds=_seconds(session_raw, "idle_timeout_seconds", IDLE_TIMEOUT_SECONDS),
            refresh_interval_seconds=_seconds(
                session_raw, "refresh_interval_seconds", REFRESH_INTERVAL_SECONDS
            ),
            idle_check_interval_seconds=_seconds(
                session_raw, "idle_check_interval_seconds", IDLE_CHECK_INTERVAL_SECONDS
            ),
            bcrypt_rounds=session_raw.get("bcrypt_rounds", DEFAULT_BCRYPT_ROUNDS),
            db_path=session_raw.get("db_path", "~/.emrgate/sessions.db"),
            rate_limit=session_raw.get("rate_limit", "60/minute"),
        )
        if session.refresh_interval_seconds >= session.access_token_ttl_seconds:
            _fail(
                "CONFIG ERROR: session.refresh_interval_seconds "
                f"({session.refresh_interval_seconds}) must be shorter than "
                f"session.access_token_ttl_seconds ({session.access_token_ttl_seconds}), "
                "otherwise access tokens lapse between refreshes."
            )
        if session.idle_check_interval_seconds > session.idle_timeout_seconds:
            _fail(
                "CONFIG ERROR: session.idle_check_interval_seconds "
                f"({session.idle_check_interval_seconds}) must not exceed "
                f"session.idle_timeout_seconds ({session.idle_timeout_seconds})."
            )

        # ── Audit ─────────────────────────────────────────────────────────────
        audit_raw = raw.get("audit", {})
        audit = AuditConfig(
            enabled=_flag(audit_raw, "audit", "enabled", True),
            retention_days=audit_raw.get("retention_days", 90),
            path=audit_raw.get("path", "~/.emrgate/audit.db"),
        )

        # ── CORS ──────────────────────────────────────────────────────────────
        cors_raw = raw.get("cors", {})
        cors = CORSConfig(
            allow_origins=list(
                cors_raw.get(
                    "allow_origins",
                    CORSConfig.__dataclass_fields__["allow_origins"].default_factory(),  # type: ignore[misc]
                )
            ),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            server=server,
            transport=transport,
            waf=waf,
            session=session,
            audit=audit,
            cors=cors,
            path=path,
        )


# ─── Loading ──────────────────────────────────────────────────────────────────


def config_search_paths(config_path: Optional[str] = None) -> list[str]:
    """Candidate config files, highest priority first."""
    explicit = [config_path, os.environ.get("EMRGATE_CONFIG")]
    return [p for p in explicit if p] + list(DEFAULT_CONFIG_PATHS)


def find_config_file(candidates: list[str]) -> Optional[str]:
    return next(
        (os.path.expanduser(c) for c in candidates if os.path.isfile(os.path.expanduser(c))),
        None,
    )


def load_config(config_path: Optional[str] = None) -> Config:
    """Build the process Config from the first config file found plus env overrides.

    Raises:
        SystemExit(1): the file is unusable, or EMRGATE_PORT is not an integer.
    """
    candidates = config_search_paths(config_path)
    found = find_config_file(candidates)

    if found is None:
        logger.info("config_defaults_used", searched=candidates)
        config = Config.defaults()
    else:
        raw = _read_versioned_yaml(found)
        config = Config.from_dict(raw, path=found)

    _apply_env_overrides(config)
    _warn_on_exposed_settings(config)

    logger.info(
        "config_loaded",
        path=config.path,
        version=config.version,
        port=config.server.port,
        enforce_https=config.transport.enforce_https,
        waf_enabled=config.waf.enabled,
    )
    return config


def _read_versioned_yaml(path: str) -> dict:
    """Parse ``path`` and check its top-level shape and ``version``."""
    try:
        with open(path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(f"CONFIG ERROR: {path} is not valid YAML: {exc}")
    except OSError as exc:
        _fail(f"CONFIG ERROR: cannot read {path}: {exc}")

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        _fail(f"CONFIG ERROR: {path} must contain a YAML mapping at the top level.")

    version = raw.get("version")
    if version is None:
        _fail(f"CONFIG ERROR: {path} has no 'version' key. Start the file with 'version: 1'.")
    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"CONFIG ERROR: {path} declares version {version!r}; "
            f"this build reads versions {sorted(SUPPORTED_VERSIONS)}."
        )
    return raw


def _warn_on_exposed_settings(config: Config) -> None:
    if config.server.host == "0.0.0.0" and not config.transport.enforce_https:
        logger.warning(
            "config_plain_http_on_all_interfaces",
            host=config.server.host,
            hint="set transport.enforce_https or EMRGATE_ENV=production",
        )
    if not config.waf.enabled:
        logger.warning("config_waf_disabled")


def is_production_environment() -> bool:
    """True when EMRGATE_ENV names a production deployment."""
    return os.environ.get("EMRGATE_ENV", "development").strip().lower() in PRODUCTION_ENVIRONMENTS


def _apply_env_overrides(config: Config) -> None:
    port = os.environ.get("EMRGATE_PORT")
    if port is not None:
        try:
            config.server.port = int(port)
        except ValueError:
            _fail(f"CONFIG ERROR: EMRGATE_PORT must be an integer, got {port!r}.")

    if is_production_environment():
        config.transport.enforce_https = True


def _fail(message: str) -> NoReturn:
    print(message, file=sys.stderr)
    raise SystemExit(1)


def _flag(section_raw: dict, section: str, key: str, default: bool) -> bool:
    # YAML "false" in quotes is a string; refuse it instead of reading it as True.
    value = section_raw.get(key, default)
    if not isinstance(value, bool):
        _fail(f"CONFIG ERROR: {section}.{key} must be true or false, got {value!r}.")
    return value


def _seconds(section_raw: dict, key: str, default: float) -> float:
    value = section_raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        _fail(f"CONFIG ERROR: session.{key} must be a positive number of seconds, got {value!r}.")
    return value
