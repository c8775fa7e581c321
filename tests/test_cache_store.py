"""
tests/test_cache_store.py -- Unit tests for SQLiteCache and build_cache.

Covers:
  - get/set/delete/exists with and without TTL
  - expiry driven by the injected clock; set() replaces the TTL
  - purge_expired removes only expired rows
  - build_cache picks the driver from settings
"""

from __future__ import annotations

from cache.store import RedisCache, SQLiteCache, build_cache
from core.config import Settings


class Clock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def test_set_and_get():
    cache = SQLiteCache(":memory:")
    cache.set("k", b"v")
    assert cache.get("k") == b"v"
    assert cache.exists("k")
    assert cache.get("missing") is None


def test_delete():
    cache = SQLiteCache(":memory:")
    cache.set("k", b"v")
    cache.delete("k")
    cache.delete("never-set")
    assert not cache.exists("k")


def test_entry_expires_at_ttl():
    clock = Clock()
    cache = SQLiteCache(":memory:", clock=clock)
    cache.set("k", b"v", ttl=60)
    clock.now += 59
    assert cache.get("k") == b"v"
    clock.now += 1
    assert cache.get("k") is None


def test_set_replaces_ttl():
    clock = Clock()
    cache = SQLiteCache(":memory:", clock=clock)
    cache.set("k", b"1", ttl=60)
    clock.now += 50
    cache.set("k", b"2", ttl=60)
    clock.now += 50
    assert cache.get("k") == b"2"
    cache.set("k", b"3")
    clock.now += 10_000
    assert cache.get("k") == b"3"


def test_purge_expired():
    clock = Clock()
    cache = SQLiteCache(":memory:", clock=clock)
    cache.set("old", b"1", ttl=10)
    cache.set("new", b"1", ttl=100)
    cache.set("forever", b"1")
    clock.now += 10
    assert cache.purge_expired() == 1
    assert cache.exists("new")
    assert cache.exists("forever")


def test_ping_and_close():
    cache = SQLiteCache(":memory:")
    assert cache.ping()
    cache.close()


def test_build_cache_sqlite(tmp_path):
    settings = Settings(debug=True, cache_driver="sqlite", cache_path=str(tmp_path / "cache.db"))
    cache = build_cache(settings)
    try:
        assert isinstance(cache, SQLiteCache)
    finally:
        cache.close()


def test_build_cache_redis_does_not_connect_eagerly():
    settings = Settings(debug=True, cache_driver="redis", redis_url="redis://127.0.0.1:1/0")
    cache = build_cache(settings)
    assert isinstance(cache, RedisCache)
    assert cache.purge_expired() == 0
