"""
oauth_stores.py — Storage collaborators for the memory server's OAuth core.

Two contracts live here:

  EphemeralStore   — string key/value with per-item TTL. Holds authorization
                     codes, rotating refresh tokens, client registrations and
                     refresh-family bookkeeping. ``take`` is an atomic
                     fetch-and-delete: of N concurrent takes on one key, at
                     most one returns the value.
  CredentialStore  — long-lived API key records looked up by SHA-256 hash.

Each contract has an in-memory implementation (single process, tests) and a
SQLite implementation (durable, shared between workers on one host).
"""

import asyncio
import logging
import secrets
import sqlite3
import threading
import time
from pathlib import Path
from typing import Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, Field

from oauth_tokens import hash_api_key, new_api_key

logger = logging.getLogger("memory-oauth")

AUTH_CODE_TTL = 300  # 5 minutes
REFRESH_TOKEN_TTL = 30 * 86400  # 30 days
CLIENT_REGISTRATION_TTL = 30 * 86400  # 30 days

CODE_PREFIX = "oauth_code:"
REFRESH_PREFIX = "oauth_refresh:"
CLIENT_PREFIX = "oauth_client:"
REFRESH_USED_PREFIX = "oauth_refresh_used:"
FAMILY_REVOKED_PREFIX = "oauth_family_revoked:"


class StoreUnavailable(RuntimeError):
    """The backing store failed; the request cannot be completed."""


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class ApiKeyCredential(BaseModel):
    """API key row. Only the hash of the key is ever stored."""

    id: str
    key_hash: str
    entity_name: str
    is_active: bool = True
    expires_at: int | None = None
    created_at: int = Field(default_factory=lambda: int(time.time()))
    last_used_at: int | None = None
    notes: str | None = None

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now if now is not None else time.time())

    def is_usable(self, now: float | None = None) -> bool:
        return self.is_active and not self.is_expired(now)


class AuthorizationCodeRecord(BaseModel):
    code_challenge: str
    api_key_id: str
    client_id: str
    redirect_uri: str
    resource: str | None = None


class RefreshTokenRecord(BaseModel):
    api_key_id: str
    entity_name: str
    audience: str
    family_id: str
    issued_at: int = Field(default_factory=lambda: int(time.time()))


class ClientRegistration(BaseModel):
    client_id: str
    client_name: str
    redirect_uris: list[str] = Field(default_factory=list)
    grant_types: list[str] = Field(default_factory=lambda: ["authorization_code", "refresh_token"])
    response_types: list[str] = Field(default_factory=lambda: ["code"])
    token_endpoint_auth_method: str = "none"
    created_at: int = Field(default_factory=lambda: int(time.time()))


class RefreshTombstone(BaseModel):
    family_id: str
    api_key_id: str


R = TypeVar("R", bound=BaseModel)


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------

@runtime_checkable
class EphemeralStore(Protocol):
    async def put(self, key: str, value: str, ttl: int) -> None: ...

    async def get(self, key: str) -> str | None: ...

    async def delete(self, key: str) -> None: ...

    async def take(self, key: str) -> str | None:
        """Atomically fetch and delete ``key``. Returns None if absent or expired."""
        ...


@runtime_checkable
class CredentialStore(Protocol):
    async def get_by_hash(self, key_hash: str) -> ApiKeyCredential | None: ...

    async def get_by_id(self, key_id: str) -> ApiKeyCredential | None: ...

    async def touch(self, key_id: str, when: int) -> None:
        """Record ``when`` as the key's last_used_at."""
        ...

    async def insert(self, credential: ApiKeyCredential) -> None: ...

    async def list_keys(self, include_inactive: bool = False) -> list[ApiKeyCredential]: ...

    async def set_active(self, key_id: str, active: bool) -> bool:
        """Flip the active flag. False if the key is unknown or already in that state."""
        ...

    async def update(self, key_id: str, entity_name: str | None = None,
                     notes: str | None = None) -> bool:
        """Change the given fields. False if the key is unknown."""
        ...


async def put_record(store: EphemeralStore, key: str, record: BaseModel, ttl: int) -> None:
    await store.put(key, record.model_dump_json(), ttl)


async def get_record(store: EphemeralStore, key: str, model: type[R]) -> R | None:
    raw = await store.get(key)
    return None if raw is None else model.model_validate_json(raw)


async def take_record(store: EphemeralStore, key: str, model: type[R]) -> R | None:
    raw = await store.take(key)
    return None if raw is None else model.model_validate_json(raw)


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

class MemoryEphemeralStore:
    """Dict-backed TTL store. All operations hold one asyncio lock."""

    def __init__(self, clock=time.time):
        self._items: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _live(self, key: str) -> str | None:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at <= self._clock():
            del self._items[key]
            return None
        return value

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [k for k, (_, exp) in self._items.items() if exp <= now]
        for k in expired:
            del self._items[k]

    async def put(self, key: str, value: str, ttl: int) -> None:
        async with self._lock:
            self._purge_expired()
            self._items[key] = (value, self._clock() + ttl)

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._live(key)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._items.pop(key, None)

    async def take(self, key: str) -> str | None:
        async with self._lock:
            value = self._live(key)
            self._items.pop(key, None)
            return value

    def __len__(self) -> int:
        self._purge_expired()
        return len(self._items)


class MemoryCredentialStore:
    def __init__(self, credentials: list[ApiKeyCredential] | None = None):
        self.credentials: dict[str, ApiKeyCredential] = {c.id: c for c in credentials or []}

    def add(self, credential: ApiKeyCredential) -> ApiKeyCredential:
        self.credentials[credential.id] = credential
        return credential

    async def get_by_hash(self, key_hash: str) -> ApiKeyCredential | None:
        for credential in self.credentials.values():
            if credential.key_hash == key_hash:
                return credential.model_copy()
        return None

    async def get_by_id(self, key_id: str) -> ApiKeyCredential | None:
        credential = self.credentials.get(key_id)
        return credential.model_copy() if credential else None

    async def touch(self, key_id: str, when: int) -> None:
        credential = self.credentials.get(key_id)
        if credential:
            credential.last_used_at = when

    async def insert(self, credential: ApiKeyCredential) -> None:
        self.add(credential)

    async def list_keys(self, include_inactive: bool = False) -> list[ApiKeyCredential]:
        keys = [c for c in self.credentials.values() if include_inactive or c.is_active]
        return sorted(keys, key=lambda c: c.created_at, reverse=True)

    async def set_active(self, key_id: str, active: bool) -> bool:
        credential = self.credentials.get(key_id)
        if not credential or credential.is_active == active:
            return False
        credential.is_active = active
        return True

    async def update(self, key_id: str, entity_name: str | None = None,
                     notes: str | None = None) -> bool:
        credential = self.credentials.get(key_id)
        if not credential:
            return False
        if entity_name is not None:
            credential.entity_name = entity_name
        if notes is not None:
            credential.notes = notes
        return True


# ---------------------------------------------------------------------------
# SQLite implementations
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS api_keys (
    id TEXT PRIMARY KEY,
    key_hash TEXT UNIQUE NOT NULL,
    entity_name TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    last_used_at INTEGER,
    expires_at INTEGER,
    is_active INTEGER DEFAULT 1,
    notes TEXT
);
CREATE INDEX IF NOT EXISTS idx_api_keys_hash ON api_keys(key_hash);
CREATE INDEX IF NOT EXISTS idx_api_keys_active ON api_keys(is_active);

CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_kv_store_expires ON kv_store(expires_at);
"""


class SQLiteDatabase:
    """One autocommit connection shared by the SQLite stores.

    Calls are serialized by a thread lock and run off the event loop.
    """

    def __init__(self, path: str | Path):
        self.path = str(path)
        if self.path != ":memory:":
            self.path = str(Path(self.path).expanduser())
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)

    def execute(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreUnavailable(f"sqlite error: {e}") from e

    async def run(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        return await asyncio.to_thread(self.execute, sql, params)

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class SQLiteEphemeralStore:
    """TTL store on the ``kv_store`` table.

    ``take`` is a single ``DELETE ... RETURNING`` statement, so it stays
    at-most-once even across processes sharing the database file.
    """

    def __init__(self, db: SQLiteDatabase, clock=time.time):
        self.db = db
        self._clock = clock

    async def put(self, key: str, value: str, ttl: int) -> None:
        now = self._clock()
        await self.db.run("DELETE FROM kv_store WHERE expires_at <= ?", (now,))
        await self.db.run(
            "INSERT OR REPLACE INTO kv_store (key, value, expires_at) VALUES (?, ?, ?)",
            (key, value, now + ttl),
        )

    async def get(self, key: str) -> str | None:
        rows = await self.db.run(
            "SELECT value FROM kv_store WHERE key = ? AND expires_at > ?",
            (key, self._clock()),
        )
        return rows[0]["value"] if rows else None

    async def delete(self, key: str) -> None:
        await self.db.run("DELETE FROM kv_store WHERE key = ?", (key,))

    async def take(self, key: str) -> str | None:
        rows = await self.db.run(
            "DELETE FROM kv_store WHERE key = ? RETURNING value, expires_at",
            (key,),
        )
        if not rows or rows[0]["expires_at"] <= self._clock():
            return None
        return rows[0]["value"]


def _credential_from_row(row: sqlite3.Row) -> ApiKeyCredential:
    return ApiKeyCredential(
        id=row["id"],
        key_hash=row["key_hash"],
        entity_name=row["entity_name"],
        is_active=bool(row["is_active"]),
        expires_at=row["expires_at"],
        created_at=row["created_at"],
        last_used_at=row["last_used_at"],
        notes=row["notes"],
    )


class SQLiteCredentialStore:
    def __init__(self, db: SQLiteDatabase):
        self.db = db

    async def get_by_hash(self, key_hash: str) -> ApiKeyCredential | None:
        rows = await self.db.run("SELECT * FROM api_keys WHERE key_hash = ?", (key_hash,))
        return _credential_from_row(rows[0]) if rows else None

    async def get_by_id(self, key_id: str) -> ApiKeyCredential | None:
        rows = await self.db.run("SELECT * FROM api_keys WHERE id = ?", (key_id,))
        return _credential_from_row(rows[0]) if rows else None

    async def touch(self, key_id: str, when: int) -> None:
        await self.db.run("UPDATE api_keys SET last_used_at = ? WHERE id = ?", (when, key_id))

    async def insert(self, credential: ApiKeyCredential) -> None:
        await self.db.run(
            "INSERT INTO api_keys (id, key_hash, entity_name, created_at, expires_at, "
            "is_active, notes) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (credential.id, credential.key_hash, credential.entity_name,
             credential.created_at, credential.expires_at,
             1 if credential.is_active else 0, credential.notes),
        )

    async def list_keys(self, include_inactive: bool = False) -> list[ApiKeyCredential]:
        sql = "SELECT * FROM api_keys"
        if not include_inactive:
            sql += " WHERE is_active = 1"
        rows = await self.db.run(sql + " ORDER BY created_at DESC")
        return [_credential_from_row(r) for r in rows]

    async def set_active(self, key_id: str, active: bool) -> bool:
        flag = 1 if active else 0
        rows = await self.db.run(
            "UPDATE api_keys SET is_active = ? WHERE id = ? AND is_active != ? RETURNING id",
            (flag, key_id, flag),
        )
        return bool(rows)

    async def update(self, key_id: str, entity_name: str | None = None,
                     notes: str | None = None) -> bool:
        rows = await self.db.run(
            "UPDATE api_keys SET entity_name = COALESCE(?, entity_name), "
            "notes = COALESCE(?, notes) WHERE id = ? RETURNING id",
            (entity_name, notes, key_id),
        )
        return bool(rows)


# ---------------------------------------------------------------------------
# API key management
# ---------------------------------------------------------------------------

async def create_api_key(
    store: CredentialStore,
    entity_name: str,
    notes: str | None = None,
    expires_in_days: int | None = None,
) -> tuple[ApiKeyCredential, str]:
    """Create a key and return (record, plaintext). The plaintext is not kept."""
    entity_name = entity_name.strip()
    if not entity_name:
        raise ValueError("entity_name is required")
    plaintext = new_api_key()
    now = int(time.time())
    expires_at = now + expires_in_days * 86400 if expires_in_days and expires_in_days > 0 else None
    credential = ApiKeyCredential(
        id=secrets.token_hex(16),
        key_hash=hash_api_key(plaintext),
        entity_name=entity_name,
        created_at=now,
        expires_at=expires_at,
        notes=notes,
    )
    await store.insert(credential)
    logger.info("api_key_created: id=%s entity=%s", credential.id, entity_name)
    return credential, plaintext


async def revoke_api_key(store: CredentialStore, key_id: str) -> bool:
    revoked = await store.set_active(key_id, False)
    if revoked:
        logger.info("api_key_revoked: id=%s", key_id)
    return revoked


async def update_api_key(
    store: CredentialStore,
    key_id: str,
    entity_name: str | None = None,
    notes: str | None = None,
) -> ApiKeyCredential | None:
    """Rename a key and/or replace its notes. Returns the updated record, None if unknown."""
    if entity_name is None and notes is None:
        raise ValueError("at least one of entity_name or notes is required")
    if entity_name is not None:
        entity_name = entity_name.strip()
        if not entity_name:
            raise ValueError("entity_name cannot be empty")
    if not await store.update(key_id, entity_name=entity_name, notes=notes):
        return None
    logger.info("api_key_updated: id=%s", key_id)
    return await store.get_by_id(key_id)
