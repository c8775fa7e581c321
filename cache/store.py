"""
cache/store.py -- Ephemeral key -> bytes store with per-key TTL.

Holds the short-lived counters the auth services need: failed-login
counters (login_attempts:<email>) and one-request-per-minute markers for
password reset and verification emails. Nothing here is durable state;
losing the cache only relaxes those controls until the keys are re-created.

Two backends share one interface:
  SQLiteCache -- single-node default; also what the tests use (":memory:").
  RedisCache  -- shared by every API worker behind a load balancer.

Backend I/O failures are raised as CacheError so callers never need to know
which driver is behind the interface.

Usage:
    cache = build_cache(get_settings())
    cache.set("login_attempts:a@x.com", b"1", ttl=900)
    cache.get("login_attempts:a@x.com")   # b"1" or None once expired
    cache.purge_expired()                 # no-op on Redis, which expires keys itself
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional, Protocol, Union

import redis

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("idcore.cache")

_DEFAULT_DB = Path(__file__).parent / "idcore_cache.db"

_DDL = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key         TEXT PRIMARY KEY,
    value       BLOB NOT NULL,
    expires_at  REAL
);
"""


class CacheError(Exception):
    """The cache backend could not complete an operation."""


class Cache(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, value: bytes, ttl: int = 0) -> None: ...

    def delete(self, key: str) -> None: ...

    def exists(self, key: str) -> bool: ...

    def purge_expired(self) -> int: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


class SQLiteCache:
    """SQLite-backed cache. ttl is in seconds; 0 means no expiry.

    One connection is shared by all threads, so every statement runs under a
    lock. clock is injectable so tests can move time forward.
    """

    def __init__(
        self,
        db_path: Union[Path, str] = _DEFAULT_DB,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def get(self, key: str) -> Optional[bytes]:
        """Return the value for key if it exists and hasn't expired."""
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT value, expires_at FROM cache_entries WHERE key = ?",
                    (key,),
                ).fetchone()
                if row is None:
                    return None
                value, expires_at = row
                if expires_at is not None and self._clock() >= expires_at:
                    self._conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                    self._conn.commit()
                    return None
                return bytes(value)
        except sqlite3.Error as exc:
            raise CacheError(f"cache get failed: {exc}") from exc

    def set(self, key: str, value: bytes, ttl: int = 0) -> None:
        """Store value for key, replacing any existing entry and its TTL."""
        expires_at = self._clock() + ttl if ttl > 0 else None
        try:
            with self._lock:
                self._conn.execute(
                    "INSERT OR REPLACE INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)",
                    (key, value, expires_at),
                )
                self._conn.commit()
        except sqlite3.Error as exc:
            raise CacheError(f"cache set failed: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            with self._lock:
                self._conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                self._conn.commit()
        except sqlite3.Error as exc:
            raise CacheError(f"cache delete failed: {exc}") from exc

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        try:
            with self._lock:
                cursor = self._conn.execute(
                    "DELETE FROM cache_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
                    (self._clock(),),
                )
                self._conn.commit()
                return cursor.rowcount
        except sqlite3.Error as exc:
            raise CacheError(f"cache purge failed: {exc}") from exc

    def ping(self) -> bool:
        try:
            with self._lock:
                self._conn.execute("SELECT 1")
            return True
        except sqlite3.Error:
            logger.exception("SQLite cache health check failed")
            return False

    def close(self) -> None:
        self._conn.close()


class RedisCache:
    """Redis-backed cache for multi-worker deployments.

    Redis expires keys on its own, so there is no purge step. Values are
    returned as raw bytes (decode_responses=False).
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0) -> None:
        self.redis_url = redis_url
        self.client = redis.Redis.from_url(
            redis_url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self.client.get(key)
        except redis.RedisError as exc:
            raise CacheError(f"cache get failed: {exc}") from exc

    def set(self, key: str, value: bytes, ttl: int = 0) -> None:
        try:
            if ttl > 0:
                self.client.set(key, value, ex=ttl)
            else:
                self.client.set(key, value)
        except redis.RedisError as exc:
            raise CacheError(f"cache set failed: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as exc:
            raise CacheError(f"cache delete failed: {exc}") from exc

    def exists(self, key: str) -> bool:
        try:
            return bool(self.client.exists(key))
        except redis.RedisError as exc:
            raise CacheError(f"cache exists failed: {exc}") from exc

    def purge_expired(self) -> int:
        return 0

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            logger.exception("Redis cache health check failed")
            return False

    def close(self) -> None:
        self.client.close()


def build_cache(settings: Settings) -> Union[SQLiteCache, RedisCache]:
    """Instantiate the backend named by CACHE_DRIVER."""
    if settings.cache_driver == "redis":
        logger.info("Using Redis cache")
        return RedisCache(settings.redis_url)
    logger.info("Using SQLite cache at %s", settings.cache_path)
    return SQLiteCache(settings.cache_path)
