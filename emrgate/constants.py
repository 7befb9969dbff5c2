"""Shared constants for EMRGate.

Numeric limits, durations and stable wire codes used across modules are
defined here. Other modules import from here instead of repeating literals.
"""

# ─── WAF ──────────────────────────────────────────────────────────────────────

# Offending values are cut to this many characters in every finding, so the
# audit trail never holds a full payload or secret.
MAX_FINDING_VALUE_CHARS: int = 100

# Maximum container nesting the body scanner descends into. Deeper containers
# are skipped and a warning is logged.
DEFAULT_MAX_BODY_DEPTH: int = 50

# Rounds of percent-decoding applied before matching (double/triple-encoded
# payloads). Decoding stops early once a round leaves the value unchanged.
URL_DECODE_ROUNDS: int = 3

# Paths that skip the WAF entirely (prefix match).
DEFAULT_WAF_SKIP_PATHS: tuple[str, ...] = ("/health", "/api-docs", "/favicon.ico")

# Path fragment identifying multipart upload endpoints (body scan skipped).
UPLOAD_PATH_MARKER: str = "/upload"

# Headers inspected for SQL injection and XSS.
SCANNED_HEADERS: tuple[str, ...] = ("user-agent", "referer", "x-forwarded-for", "x-real-ip")

# Stable machine-readable code returned with every WAF 403.
WAF_BLOCKED_CODE: str = "WAF_BLOCKED"

# Generic client-facing message. Never describes what was matched.
WAF_BLOCKED_MESSAGE: str = "Request blocked by security policy."

# ─── Session lifecycle ────────────────────────────────────────────────────────

# Client-side idle timeout: no user interaction for this long expires the session.
IDLE_TIMEOUT_SECONDS: float = 15 * 60

# Client-side proactive refresh cadence. Must stay below ACCESS_TOKEN_TTL_SECONDS.
REFRESH_INTERVAL_SECONDS: float = 4 * 60

# How often the client checks the idle clock.
IDLE_CHECK_INTERVAL_SECONDS: float = 30.0

# Minimum spacing between activity heartbeats sent to the server.
ACTIVITY_HEARTBEAT_MIN_INTERVAL_SECONDS: float = 60.0

# Server-side access token lifetime.
ACCESS_TOKEN_TTL_SECONDS: int = 5 * 60

# Server-side inactivity window: refresh is refused once the last recorded
# activity is older than this.
SESSION_INACTIVITY_SECONDS: int = 15 * 60

# Absolute lifetime of a refresh token.
REFRESH_TOKEN_TTL_SECONDS: int = 7 * 24 * 60 * 60

# Name and path of the HttpOnly refresh-token cookie.
REFRESH_COOKIE_NAME: str = "refreshToken"
REFRESH_COOKIE_PATH: str = "/api/session"

# Error codes returned by the session endpoints and understood by the client.
SESSION_EXPIRED_CODE: str = "SESSION_EXPIRED"
INVALID_SESSION_CODE: str = "INVALID_SESSION"
NETWORK_ERROR_CODE: str = "NETWORK_ERROR"

# bcrypt cost factor for stored token hashes.
DEFAULT_BCRYPT_ROUNDS: int = 12

# Device info (User-Agent) is cut to this length before it is stored.
MAX_DEVICE_INFO_CHARS: int = 255
