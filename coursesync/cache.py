"""
Session cache for the captured portal session cookie.

The token is stored under one well-known key with a fixed TTL.
Expiry is indistinguishable from never having been set: `get()` returns
None in both cases, and sync runs treat that as "missing session".

Backends:
- RedisBackend: shared Redis instance (when REDIS_URL is configured)
- SqliteBackend: the application database (default for the CLI)
- MemoryBackend: process-local dict with expiry timestamps
"""

from __future__ import annotations

import logging
import sqlite3
import time
from typing import Callable, Optional, Protocol

import redis

from coursesync.config import Settings
from coursesync.errors import CacheError
from coursesync.storage import Database

log = logging.getLogger(__name__)

SESSION_CACHE_KEY = "sync:session-id"


class CacheBackend(Protocol):
    def set(self, key: str, value: str, ttl: int) -> None: ...

    def get(self, key: str) -> Optional[str]: ...


class MemoryBackend:
    """
    Minimal in-process TTL store. `clock` is injectable for tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    def set(self, key: str, value: str, ttl: int) -> None:
        self._entries[key] = (value, self._clock() + ttl)

    def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value


class SqliteBackend:
    """
    TTL store in the application database, so a session captured by one
    CLI invocation is visible to the next one.
    """

    def __init__(self, db: Database, clock: Callable[[], float] = time.time) -> None:
        self.db = db
        self._clock = clock

    def set(self, key: str, value: str, ttl: int) -> None:
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)",
                    (key, value, self._clock() + ttl),
                )
        except sqlite3.Error as e:
            raise CacheError(f"Could not save session ID to cache: {e}") from e

    def get(self, key: str) -> Optional[str]:
        with self.db.transaction() as conn:
            row = conn.execute("SELECT value, expires_at FROM cache_entries WHERE key = ?", (key,)).fetchone()
            if row is None:
                return None
            if self._clock() >= row["expires_at"]:
                conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                return None
            return row["value"]


class RedisBackend:
    def __init__(self, client: "redis.Redis") -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisBackend":
        return cls(redis.from_url(url))

    def set(self, key: str, value: str, ttl: int) -> None:
        try:
            self._client.setex(key, ttl, value)
        except redis.RedisError as e:
            raise CacheError(f"Could not save session ID to cache: {e}") from e

    def get(self, key: str) -> Optional[str]:
        try:
            cached = self._client.get(key)
        except redis.RedisError as e:
            # An unreachable cache reads as "no session"
            log.warning("[Cache] Get error for key %r: %s", key, e)
            return None
        if cached is None:
            return None
        if isinstance(cached, bytes):
            return cached.decode("utf-8")
        return str(cached)


class SessionCache:
    """
    Holds the portal session token under a fixed key with a fixed TTL.
    """

    def __init__(self, backend: CacheBackend, ttl: int = 60 * 60 * 24, key: str = SESSION_CACHE_KEY) -> None:
        self.backend = backend
        self.ttl = ttl
        self.key = key

    def set(self, token: str) -> None:
        self.backend.set(self.key, token, self.ttl)

    def get(self) -> Optional[str]:
        return self.backend.get(self.key)


def build_session_cache(settings: Settings, db: Optional[Database] = None) -> SessionCache:
    """
    Pick the backend from settings: Redis if REDIS_URL is set, otherwise
    the application database, otherwise process memory.
    """
    if settings.redis_url:
        backend: CacheBackend = RedisBackend.from_url(settings.redis_url)
    elif db is not None:
        backend = SqliteBackend(db)
    else:
        backend = MemoryBackend()
    return SessionCache(backend, ttl=settings.session_ttl)
