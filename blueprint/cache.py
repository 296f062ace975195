# blueprint/cache.py
"""
Response cache for model gateway calls.

Two tiers share one interface (get / set / invalidate / sweep):
  - InMemoryCache: process-local, bounded, evicts the oldest-inserted key.
  - DatabaseCache: durable rows in `ai_cache`, filtered by expiry.
TieredCache composes them: fast tier first, durable on miss with backfill.

CACHE_BACKEND selects the composition: tiered (default) | memory | database.
"""

import datetime
import hashlib
import json
import os
import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

from blueprint import db as dbmod
from blueprint.config import CACHE_CONFIG, CacheConfig
from blueprint.monitoring import logger, inc_cache_lookup

Clock = Callable[[], datetime.datetime]


def generate_cache_key(params: Dict[str, Any]) -> str:
    """Deterministic key for a parameter set; key order does not matter."""
    payload = json.dumps(params, sort_keys=True, default=str, separators=(",", ":"))
    return "cache:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]


class InMemoryCache:
    tier = "memory"

    def __init__(self, config: CacheConfig = CACHE_CONFIG, clock: Clock = dbmod.utcnow):
        self.config = config
        self.clock = clock
        self._entries: "OrderedDict[str, Tuple[str, datetime.datetime]]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self.clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None,
            expires_at: Optional[datetime.datetime] = None) -> None:
        if expires_at is None:
            ttl = self.config.ttl_seconds if ttl_seconds is None else ttl_seconds
            expires_at = self.clock() + datetime.timedelta(seconds=ttl)
        with self._lock:
            # re-setting a key keeps its original insertion slot
            self._entries[key] = (value, expires_at)
            while len(self._entries) > self.config.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, pattern: Optional[str] = None) -> int:
        if pattern is None:
            return self.sweep()
        with self._lock:
            doomed = [k for k in self._entries if pattern in k]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def sweep(self) -> int:
        now = self.clock()
        with self._lock:
            doomed = [k for k, (_, exp) in self._entries.items() if exp <= now]
            for k in doomed:
                del self._entries[k]
        return len(doomed)


class DatabaseCache:
    tier = "database"

    def __init__(self, config: CacheConfig = CACHE_CONFIG, clock: Clock = dbmod.utcnow):
        self.config = config
        self.clock = clock

    def get_entry(self, key: str) -> Optional[Dict[str, Any]]:
        row = dbmod.get_cache_entry(key, self.clock())
        if row is None:
            return None
        try:
            dbmod.increment_cache_hits(key)
        except Exception as e:
            logger.warning("cache hit counter update failed", extra={"key": key, "error": str(e)})
        return row

    def get(self, key: str) -> Optional[str]:
        row = self.get_entry(key)
        return row["value"] if row else None

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None,
            expires_at: Optional[datetime.datetime] = None) -> None:
        if expires_at is None:
            ttl = self.config.ttl_seconds if ttl_seconds is None else ttl_seconds
            expires_at = self.clock() + datetime.timedelta(seconds=ttl)
        dbmod.upsert_cache_entry(key, value, expires_at)

    def invalidate(self, pattern: Optional[str] = None) -> int:
        if pattern is None:
            return self.sweep()
        return dbmod.delete_cache_entries(pattern=pattern)

    def sweep(self) -> int:
        return dbmod.delete_cache_entries(expired_before=self.clock())


class TieredCache:
    tier = "tiered"

    def __init__(self, fast: InMemoryCache, durable: DatabaseCache):
        self.fast = fast
        self.durable = durable

    def get(self, key: str) -> Optional[str]:
        value = self.fast.get(key)
        if value is not None:
            inc_cache_lookup(self.fast.tier, "hit")
            return value
        inc_cache_lookup(self.fast.tier, "miss")
        try:
            row = self.durable.get_entry(key)
        except Exception as e:
            logger.warning("durable cache read failed", extra={"key": key, "error": str(e)})
            return None
        if row is None:
            inc_cache_lookup(self.durable.tier, "miss")
            return None
        inc_cache_lookup(self.durable.tier, "hit")
        self.fast.set(key, row["value"], expires_at=row["expires_at"])
        return row["value"]

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ttl = self.fast.config.ttl_seconds if ttl_seconds is None else ttl_seconds
        expires_at = self.fast.clock() + datetime.timedelta(seconds=ttl)
        self.fast.set(key, value, expires_at=expires_at)
        try:
            self.durable.set(key, value, expires_at=expires_at)
        except Exception as e:
            logger.warning("durable cache write failed", extra={"key": key, "error": str(e)})

    def invalidate(self, pattern: Optional[str] = None) -> int:
        return self.fast.invalidate(pattern) + self.durable.invalidate(pattern)

    def sweep(self) -> int:
        return self.fast.sweep() + self.durable.sweep()


def build_cache(backend: Optional[str] = None, config: CacheConfig = CACHE_CONFIG):
    backend = (backend or os.getenv("CACHE_BACKEND", "tiered")).lower()
    if backend == "memory":
        return InMemoryCache(config)
    if backend == "database":
        return DatabaseCache(config)
    return TieredCache(InMemoryCache(config), DatabaseCache(config))


class CacheSweeper:
    """Background worker that calls `cache.sweep()` every `interval` seconds.

    Owned by the application lifespan: start() on startup, stop() on shutdown.
    """

    def __init__(self, cache, interval: Optional[float] = None):
        self.cache = cache
        self.interval = CACHE_CONFIG.sweep_interval_seconds if interval is None else interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._worker, name="cache-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None

    def run_once(self) -> int:
        try:
            removed = self.cache.sweep()
        except Exception as e:
            logger.warning("cache sweep failed", extra={"error": str(e)})
            return 0
        if removed:
            logger.info("cache sweep", extra={"removed": removed})
        return removed

    def _worker(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once()
