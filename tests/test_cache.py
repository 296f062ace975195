# tests/test_cache.py
"""
Cache key derivation plus one behavioural suite run against every cache backend.
"""
import pytest

from blueprint import db as dbmod
from blueprint.cache import (
    CacheSweeper, DatabaseCache, InMemoryCache, TieredCache, build_cache, generate_cache_key,
)
from blueprint.config import CacheConfig


def _config(max_entries=100):
    return CacheConfig(ttl_seconds=60, max_entries=max_entries, sweep_interval_seconds=300)


@pytest.fixture(params=["memory", "database", "tiered"])
def cache(request, test_db, clock):
    if request.param == "memory":
        return InMemoryCache(_config(), clock)
    if request.param == "database":
        return DatabaseCache(_config(), clock)
    return TieredCache(InMemoryCache(_config(), clock), DatabaseCache(_config(), clock))


# ---------------------------------------------------------------------------
# key derivation
# ---------------------------------------------------------------------------
def test_cache_key_ignores_parameter_order():
    a = generate_cache_key({"model": "m1", "task": "overview", "messages": [{"role": "user", "content": "x"}]})
    b = generate_cache_key({"messages": [{"content": "x", "role": "user"}], "task": "overview", "model": "m1"})
    assert a == b


def test_cache_key_is_fixed_width_and_sensitive_to_values():
    a = generate_cache_key({"task": "overview"})
    b = generate_cache_key({"task": "plan"})
    assert a != b
    assert a.startswith("cache:")
    assert len(a) == len("cache:") + 32


def test_cache_key_keeps_keys_and_values_apart():
    # delimiter characters inside a key must not make two parameter sets collide
    assert generate_cache_key({"a": "x", "b": 1}) != generate_cache_key({'a:"x"|b': 1})
    assert generate_cache_key({"a|b": "c"}) != generate_cache_key({"a": "|b:c"})
    assert generate_cache_key({"task": "plan"}) != generate_cache_key({"task": ["plan"]})


# ---------------------------------------------------------------------------
# every backend
# ---------------------------------------------------------------------------
def test_set_then_get(cache):
    cache.set("cache:abc", "hello")
    assert cache.get("cache:abc") == "hello"


def test_missing_key_returns_none(cache):
    assert cache.get("cache:nope") is None


def test_entry_expires_after_ttl(cache, clock):
    cache.set("cache:abc", "hello")
    clock.advance(seconds=59)
    assert cache.get("cache:abc") == "hello"
    clock.advance(seconds=2)
    assert cache.get("cache:abc") is None


def test_invalidate_pattern_removes_only_matching_keys(cache):
    cache.set("cache:session-1:overview", "a")
    cache.set("cache:session-2:overview", "b")
    cache.invalidate("session-1")
    assert cache.get("cache:session-1:overview") is None
    assert cache.get("cache:session-2:overview") == "b"


def test_invalidate_without_pattern_removes_only_expired(cache, clock):
    cache.set("cache:old", "a", ttl_seconds=10)
    cache.set("cache:new", "b", ttl_seconds=600)
    clock.advance(seconds=30)
    assert cache.invalidate() >= 1
    assert cache.get("cache:new") == "b"
    assert cache.get("cache:old") is None


def test_sweep_removes_expired_entries(cache, clock):
    cache.set("cache:a", "1", ttl_seconds=5)
    cache.set("cache:b", "2", ttl_seconds=5)
    clock.advance(seconds=10)
    assert cache.sweep() >= 2
    assert cache.sweep() == 0


# ---------------------------------------------------------------------------
# backend specifics
# ---------------------------------------------------------------------------
def test_memory_tier_evicts_oldest_inserted(clock):
    cache = InMemoryCache(_config(max_entries=3), clock)
    for i in range(4):
        cache.set(f"cache:{i}", str(i))
    assert len(cache) == 3
    assert cache.get("cache:0") is None
    assert cache.get("cache:3") == "3"


def test_durable_hit_backfills_fast_tier_and_counts_hit(test_db, clock):
    fast = InMemoryCache(_config(), clock)
    durable = DatabaseCache(_config(), clock)
    durable.set("cache:warm", "from-db")
    tiered = TieredCache(fast, durable)

    assert tiered.get("cache:warm") == "from-db"
    assert len(fast) == 1
    assert dbmod.get_cache_entry("cache:warm", clock())["hit_count"] == 1

    # second read is served by the fast tier
    assert tiered.get("cache:warm") == "from-db"
    assert dbmod.get_cache_entry("cache:warm", clock())["hit_count"] == 1


def test_durable_read_failure_is_a_miss(test_db, clock, monkeypatch):
    durable = DatabaseCache(_config(), clock)
    tiered = TieredCache(InMemoryCache(_config(), clock), durable)

    def boom(key):
        raise RuntimeError("db down")

    monkeypatch.setattr(durable, "get_entry", boom)
    assert tiered.get("cache:any") is None


def test_build_cache_selects_backend(monkeypatch):
    assert isinstance(build_cache("memory"), InMemoryCache)
    assert isinstance(build_cache("database"), DatabaseCache)
    monkeypatch.setenv("CACHE_BACKEND", "tiered")
    assert isinstance(build_cache(), TieredCache)


def test_sweeper_run_once_and_lifecycle(clock):
    cache = InMemoryCache(_config(), clock)
    cache.set("cache:a", "1", ttl_seconds=1)
    clock.advance(seconds=5)
    sweeper = CacheSweeper(cache, interval=3600)
    assert sweeper.run_once() == 1

    sweeper.start()
    assert sweeper.running
    sweeper.stop()
    assert not sweeper.running


def test_sweeper_survives_sweep_errors():
    class Broken:
        def sweep(self):
            raise RuntimeError("boom")

    assert CacheSweeper(Broken(), interval=3600).run_once() == 0
