"""Server-side session store: refresh/access tokens and inactivity tracking.

Implements:
  - SessionStore.initialize()        : schema, WAL, PRAGMA user_version, chmod 0600
  - SessionStore.open_session()      : issue rt-/at- token pair for a logged-in user
  - SessionStore.refresh()           : new access token, refused after inactivity
  - SessionStore.record_activity()   : bump last activity (refresh cookie)
  - SessionStore.authenticate()      : Bearer access token → ServerSession
  - SessionStore.revoke()            : logout
  - SessionStore.revoke_all_for_user()
  - SessionStore.cleanup_expired()   : delete expired and revoked rows

Token format: ``<prefix>-<session_id>.<secret>``
  - prefix ``rt`` for refresh tokens, ``at`` for access tokens
  - session_id is a ULID and the row's PRIMARY KEY (lookup without bcrypt)
  - only the bcrypt hash of ``secret`` is stored; plaintext tokens are
    returned once and never written to the database
  - bcrypt hashing and verification run in the default executor; secrets
    that already verified are remembered in a small LRU (VerifiedSecretCache)

Times are stored as ISO 8601 UTC strings. The clock is injectable so the
inactivity window can be tested without sleeping.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import os
import secrets
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import aiosqlite
import bcrypt

from emrgate.constants import (
    ACCESS_TOKEN_TTL_SECONDS,
    DEFAULT_BCRYPT_ROUNDS,
    INVALID_SESSION_CODE,
    MAX_DEVICE_INFO_CHARS,
    REFRESH_TOKEN_TTL_SECONDS,
    SESSION_EXPIRED_CODE,
    SESSION_INACTIVITY_SECONDS,
)
from emrgate.utils.logger import get_logger
from emrgate.utils.ulid import generate_ulid

logger = get_logger(__name__)

REFRESH_TOKEN_PREFIX = "rt"
ACCESS_TOKEN_PREFIX = "at"

_SCHEMA_VERSION = 1


# ─── Exceptions ───────────────────────────────────────────────────────────────


class SessionExpiredError(Exception):
    """The session exists no longer: inactive too long, revoked, expired or unknown.

    HTTP mapping: 401 with code='SESSION_EXPIRED'. Clients treat this code as
    a signal to lock the UI and require a fresh login.
    """

    code: str = SESSION_EXPIRED_CODE

    def __init__(self, message: str = "Session expired. Please log in again.") -> None:
        super().__init__(message)
        self.message = message


class InvalidSessionError(Exception):
    """The presented token is missing, malformed, or does not match.

    HTTP mapping: 401 with code='INVALID_SESSION'.
    """

    code: str = INVALID_SESSION_CODE

    def __init__(self, message: str = "Invalid or missing session token") -> None:
        super().__init__(message)
        self.message = message


# ─── Data types ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ServerSession:
    session_id: str
    user_id: str
    created_at: datetime
    last_activity_at: datetime
    access_expires_at: datetime
    refresh_expires_at: datetime
    device_info: Optional[str]
    ip_address: Optional[str]
    active: bool

    def to_dict(self) -> dict:
        """Public representation. Never includes token material."""
        return {
            "id": self.session_id,
            "user_id": self.user_id,
            "device_info": self.device_info,
            "ip_address": self.ip_address,
            "last_activity": self.last_activity_at.isoformat(),
            "expires_at": self.refresh_expires_at.isoformat(),
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class IssuedTokens:
    """Token material handed to the client exactly once."""

    session_id: str
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _parse_dt(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_token(token: Optional[str], prefix: str) -> Optional[tuple[str, str]]:
    """Split ``<prefix>-<id>.<secret>`` into (id, secret). None if malformed."""
    if not token or not token.startswith(prefix + "-"):
        return None
    body = token[len(prefix) + 1:]
    session_id, sep, secret = body.partition(".")
    if not sep or not session_id or not secret:
        return None
    return session_id, secret


def _truncate_device_info(device_info: Optional[str]) -> Optional[str]:
    if device_info is None:
        return None
    return device_info[:MAX_DEVICE_INFO_CHARS]


# ─── Schema ───────────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id                  TEXT PRIMARY KEY,
    user_id             TEXT NOT NULL,
    refresh_hash        TEXT NOT NULL,
    access_hash         TEXT NOT NULL,
    created_at          TEXT NOT NULL,
    last_activity_at    TEXT NOT NULL,
    access_expires_at   TEXT NOT NULL,
    refresh_expires_at  TEXT NOT NULL,
    device_info         TEXT,
    ip_address          TEXT,
    active              INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_sessions_user_active ON sessions (user_id, active);
"""


def _row_to_session(row: aiosqlite.Row) -> ServerSession:
    return ServerSession(
        session_id=row["id"],
        user_id=row["user_id"],
        created_at=_parse_dt(row["created_at"]),
        last_activity_at=_parse_dt(row["last_activity_at"]),
        access_expires_at=_parse_dt(row["access_expires_at"]),
        refresh_expires_at=_parse_dt(row["refresh_expires_at"]),
        device_info=row["device_info"],
        ip_address=row["ip_address"],
        active=bool(row["active"]),
    )


# ─── bcrypt (executor side) ───────────────────────────────────────────────────


def _bcrypt_hash(secret: str, rounds: int) -> str:
    return bcrypt.hashpw(secret.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def _bcrypt_check(secret: str, stored_hash: str) -> bool:
    try:
        return bcrypt.checkpw(secret.encode(), stored_hash.encode())
    except ValueError as exc:
        logger.warning("bcrypt_verify_error", error=str(exc))
        return False


# ─── Verified-secret cache ────────────────────────────────────────────────────

VERIFIED_CACHE_MAXSIZE = 1024


class VerifiedSecretCache:
    """LRU of secrets that already passed bcrypt, keyed by the stored hash.

    Values are SHA-256 digests; plaintext secrets are never held. Each issued
    secret has its own salted hash, so a rotated or revoked token can no
    longer be looked up: callers always read the current hash from the row
    first. Only positive results are cached.
    """

    def __init__(self, maxsize: int = VERIFIED_CACHE_MAXSIZE) -> None:
        self._maxsize = maxsize
        self._entries: OrderedDict[str, bytes] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def _digest(secret: str) -> bytes:
        return hashlib.sha256(secret.encode()).digest()

    def get(self, stored_hash: str, secret: str) -> bool:
        expected = self._entries.get(stored_hash)
        if expected is None:
            return False
        if not hmac.compare_digest(expected, self._digest(secret)):
            return False
        self._entries.move_to_end(stored_hash)
        return True

    def set(self, stored_hash: str, secret: str) -> None:
        if self._maxsize <= 0:
            return
        self._entries[stored_hash] = self._digest(secret)
        self._entries.move_to_end(stored_hash)
        while len(self._entries) > self._maxsize:
            self._entries.popitem(last=False)

    def discard(self, stored_hash: str) -> None:
        self._entries.pop(stored_hash, None)

    def clear(self) -> None:
        self._entries.clear()


# ─── SessionStore ─────────────────────────────────────────────────────────────


class SessionStore:
    """aiosqlite-backed session store with bcrypt-hashed tokens.

    Usage:
        store = SessionStore(db_path, bcrypt_rounds=12)
        await store.initialize()
        issued = await store.open_session(user_id, device_info=ua, ip_address=ip)
        refreshed = await store.refresh(issued.refresh_token)
        await store.close()
    """

    def __init__(
        self,
        db_path: str = "~/.emrgate/sessions.db",
        *,
        access_token_ttl_seconds: int = ACCESS_TOKEN_TTL_SECONDS,
        inactivity_seconds: int = SESSION_INACTIVITY_SECONDS,
        refresh_token_ttl_seconds: int = REFRESH_TOKEN_TTL_SECONDS,
        bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS,
        clock: Callable[[], datetime] = _utcnow,
        verified_cache_size: int = VERIFIED_CACHE_MAXSIZE,
    ) -> None:
        self._db_path = os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None
        self.access_token_ttl_seconds = access_token_ttl_seconds
        self.inactivity_seconds = inactivity_seconds
        self.refresh_token_ttl_seconds = refresh_token_ttl_seconds
        self._bcrypt_rounds = bcrypt_rounds
        self._clock = clock
        self._verified = VerifiedSecretCache(verified_cache_size)

    @property
    def db_path(self) -> str:
        return self._db_path

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the connection and create or verify the schema.

        Raises:
            RuntimeError: If PRAGMA user_version is neither 0 nor 1.
        """
        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
        elif current_version != _SCHEMA_VERSION:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported session database schema version: {current_version}. "
                f"Delete {self._db_path} to reset all sessions."
            )

        # Token hashes only, but the file still maps users to devices.
        os.chmod(self._db_path, 0o600)
        logger.info("session_store_initialized", db_path=self._db_path)

    async def close(self) -> None:
        self._verified.clear()
        if self._db is not None:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Session store not initialized: call initialize() first")
        return self._db

    # ── Token material ────────────────────────────────────────────────────────

    async def _new_secret(self) -> tuple[str, str]:
        """Fresh secret and its bcrypt hash. Hashing runs in the default executor."""
        secret = secrets.token_urlsafe(32)
        loop = asyncio.get_running_loop()
        hashed = await loop.run_in_executor(None, _bcrypt_hash, secret, self._bcrypt_rounds)
        return secret, hashed

    async def _secret_matches(self, secret: str, stored_hash: str) -> bool:
        """Verify ``secret`` against a stored bcrypt hash.

        A hit in the verified-secret cache skips bcrypt. Misses run checkpw in
        the default executor so the event loop keeps serving other requests.
        """
        if self._verified.get(stored_hash, secret):
            return True
        loop = asyncio.get_running_loop()
        matches = await loop.run_in_executor(None, _bcrypt_check, secret, stored_hash)
        if matches:
            self._verified.set(stored_hash, secret)
        return matches

    async def _fetch(self, session_id: str) -> Optional[aiosqlite.Row]:
        async with self._conn().execute(
            "SELECT * FROM sessions WHERE id = ?", (session_id,)
        ) as cursor:
            return await cursor.fetchone()

    # ── Operations ────────────────────────────────────────────────────────────

    async def open_session(
        self,
        user_id: str,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> IssuedTokens:
        """Create a session for an authenticated user.

        Called by the login handler after credentials are verified. Returns
        the plaintext refresh and access tokens; they are not retrievable
        again.
        """
        now = self._clock()
        session_id = generate_ulid()
        refresh_secret, refresh_hash = await self._new_secret()
        access_secret, access_hash = await self._new_secret()

        db = self._conn()
        await db.execute(
            "INSERT INTO sessions (id, user_id, refresh_hash, access_hash, created_at, "
            "last_activity_at, access_expires_at, refresh_expires_at, device_info, "
            "ip_address, active) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)",
            (
                session_id,
                user_id,
                refresh_hash,
                access_hash,
                _iso(now),
                _iso(now),
                _iso(now + timedelta(seconds=self.access_token_ttl_seconds)),
                _iso(now + timedelta(seconds=self.refresh_token_ttl_seconds)),
                _truncate_device_info(device_info),
                ip_address,
            ),
        )
        await db.commit()

        logger.info("session_opened", session_id=session_id, user_id=user_id)
        return IssuedTokens(
            session_id=session_id,
            access_token=f"{ACCESS_TOKEN_PREFIX}-{session_id}.{access_secret}",
            expires_in=self.access_token_ttl_seconds,
            refresh_token=f"{REFRESH_TOKEN_PREFIX}-{session_id}.{refresh_secret}",
        )

    async def _live_session_for_refresh_token(self, refresh_token: Optional[str]) -> ServerSession:
        """Resolve a refresh token to a session that may still be extended.

        Raises:
            SessionExpiredError: token missing, unknown, revoked, past its
                absolute lifetime, or the session has been inactive longer
                than the inactivity window.
        """
        parsed = parse_token(refresh_token, REFRESH_TOKEN_PREFIX)
        if parsed is None:
            raise SessionExpiredError("No valid refresh token. Please log in again.")
        session_id, secret = parsed

        row = await self._fetch(session_id)
        if row is None or not row["active"] or not await self._secret_matches(secret, row["refresh_hash"]):
            raise SessionExpiredError()

        session = _row_to_session(row)
        now = self._clock()
        if now >= session.refresh_expires_at:
            raise SessionExpiredError()

        idle_seconds = (now - session.last_activity_at).total_seconds()
        if idle_seconds > self.inactivity_seconds:
            logger.info(
                "session_inactive",
                session_id=session_id,
                idle_seconds=int(idle_seconds),
            )
            raise SessionExpiredError("Session expired due to inactivity. Please log in again.")

        return session

    async def refresh(self, refresh_token: Optional[str]) -> IssuedTokens:
        """Issue a new access token for the session behind ``refresh_token``.

        Refused with SessionExpiredError once the session has been inactive
        for longer than ``inactivity_seconds``. Refreshing does NOT count as
        activity; only record_activity() extends the window.
        """
        session = await self._live_session_for_refresh_token(refresh_token)
        now = self._clock()
        access_secret, access_hash = await self._new_secret()

        db = self._conn()
        await db.execute(
            "UPDATE sessions SET access_hash = ?, access_expires_at = ? WHERE id = ?",
            (
                access_hash,
                _iso(now + timedelta(seconds=self.access_token_ttl_seconds)),
                session.session_id,
            ),
        )
        await db.commit()

        logger.debug("access_token_refreshed", session_id=session.session_id)
        return IssuedTokens(
            session_id=session.session_id,
            access_token=f"{ACCESS_TOKEN_PREFIX}-{session.session_id}.{access_secret}",
            expires_in=self.access_token_ttl_seconds,
        )

    async def record_activity(self, refresh_token: Optional[str]) -> ServerSession:
        """Mark the session as active now.

        A session already past the inactivity window cannot be revived.
        """
        session = await self._live_session_for_refresh_token(refresh_token)
        now = self._clock()
        db = self._conn()
        await db.execute(
            "UPDATE sessions SET last_activity_at = ? WHERE id = ?",
            (_iso(now), session.session_id),
        )
        await db.commit()
        return ServerSession(
            session_id=session.session_id,
            user_id=session.user_id,
            created_at=session.created_at,
            last_activity_at=now,
            access_expires_at=session.access_expires_at,
            refresh_expires_at=session.refresh_expires_at,
            device_info=session.device_info,
            ip_address=session.ip_address,
            active=True,
        )

    async def authenticate(self, access_token: Optional[str]) -> ServerSession:
        """Resolve a Bearer access token to its active session.

        Raises:
            InvalidSessionError: malformed, unknown, revoked, mismatched or
                expired access token.
        """
        parsed = parse_token(access_token, ACCESS_TOKEN_PREFIX)
        if parsed is None:
            raise InvalidSessionError()
        session_id, secret = parsed

        row = await self._fetch(session_id)
        if row is None or not row["active"] or not await self._secret_matches(secret, row["access_hash"]):
            raise InvalidSessionError()

        session = _row_to_session(row)
        if self._clock() >= session.access_expires_at:
            raise InvalidSessionError("Access token expired")
        return session

    def now(self) -> datetime:
        return self._clock()

    def inactivity_deadline(self, session: ServerSession) -> datetime:
        """When the session expires if no further activity is recorded."""
        deadline = session.last_activity_at + timedelta(seconds=self.inactivity_seconds)
        return min(deadline, session.refresh_expires_at)

    async def get_session(self, session_id: str) -> Optional[ServerSession]:
        row = await self._fetch(session_id)
        return _row_to_session(row) if row is not None else None

    async def revoke(self, session_id: str) -> bool:
        """Deactivate one session. Returns True if a row changed."""
        db = self._conn()
        cursor = await db.execute(
            "UPDATE sessions SET active = 0 WHERE id = ? AND active = 1", (session_id,)
        )
        await db.commit()
        revoked = cursor.rowcount > 0
        if revoked:
            logger.info("session_revoked", session_id=session_id)
        return revoked

    async def revoke_all_for_user(self, user_id: str) -> int:
        db = self._conn()
        cursor = await db.execute(
            "UPDATE sessions SET active = 0 WHERE user_id = ? AND active = 1", (user_id,)
        )
        await db.commit()
        logger.info("user_sessions_revoked", user_id=user_id, count=cursor.rowcount)
        return cursor.rowcount

    async def cleanup_expired(self) -> int:
        """Delete revoked sessions and sessions past their absolute lifetime."""
        db = self._conn()
        cursor = await db.execute(
            "DELETE FROM sessions WHERE active = 0 OR refresh_expires_at < ?",
            (_iso(self._clock()),),
        )
        await db.commit()
        return cursor.rowcount
