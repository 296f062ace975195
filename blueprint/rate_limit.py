# blueprint/rate_limit.py
"""
Per-user model-call rate limiting across minute / hour / day windows.

A RateCounter stores timestamped call events; RateLimiter turns counts into a
status against the user's tier ceilings. Windows slide: an event stops counting
exactly `window` seconds after it was recorded, so the reset time of a blocked
window is its oldest event plus the window length.

Env vars:
- RATE_LIMIT_BACKEND (default: database): database | memory | redis
- REDIS_URL: required for the redis backend
"""

import datetime
import os
import threading
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

from blueprint import db as dbmod
from blueprint.config import DEFAULT_TIER, RATE_LIMITS, RATE_WINDOWS, TierLimits
from blueprint.monitoring import logger, inc_rate_limit_block

REDIS_URL = os.getenv("REDIS_URL", "")

Clock = Callable[[], datetime.datetime]


@dataclass
class RateLimitStatus:
    remaining: int
    limit: int
    reset_at: datetime.datetime
    blocked: bool
    window: Optional[str] = None

    def to_dict(self):
        return {
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat(),
            "blocked": self.blocked,
            "window": self.window,
        }


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------
class InMemoryRateCounter:
    """Thread-safe per-process event log (per user deque of timestamps)."""

    def __init__(self, horizon_seconds: int = RATE_WINDOWS[-1][1]):
        self.horizon = datetime.timedelta(seconds=horizon_seconds)
        self._events: Dict[str, Deque[datetime.datetime]] = defaultdict(deque)
        self._lock = threading.Lock()

    def _count(self, user_id: str, window_seconds: int, now: datetime.datetime
               ) -> Tuple[int, Optional[datetime.datetime]]:
        # caller holds self._lock
        events = self._events.get(user_id)
        if not events:
            return 0, None
        since = now - datetime.timedelta(seconds=window_seconds)
        inside = [t for t in events if t > since]
        return len(inside), (inside[0] if inside else None)

    def _append(self, user_id: str, now: datetime.datetime) -> None:
        events = self._events[user_id]
        events.append(now)
        while events and events[0] <= now - self.horizon:
            events.popleft()

    def count(self, user_id: str, window_seconds: int, now: datetime.datetime
              ) -> Tuple[int, Optional[datetime.datetime]]:
        with self._lock:
            return self._count(user_id, window_seconds, now)

    def hit(self, user_id: str, now: datetime.datetime) -> None:
        with self._lock:
            self._append(user_id, now)

    def acquire(self, user_id: str, windows: Sequence[Tuple[int, int]], now: datetime.datetime
                ) -> Tuple[List[Tuple[int, Optional[datetime.datetime]]], bool]:
        """Count every (seconds, ceiling) window and record `now` if none is full."""
        with self._lock:
            counts = [self._count(user_id, seconds, now) for seconds, _ in windows]
            allowed = all(c < ceiling for (c, _), (_, ceiling) in zip(counts, windows))
            if allowed:
                self._append(user_id, now)
        return counts, allowed

    def reset(self):
        """Reset all state (useful for tests)."""
        with self._lock:
            self._events.clear()


class DatabaseRateCounter:
    """Durable counter over `rate_limit_events` rows."""

    def count(self, user_id: str, window_seconds: int, now: datetime.datetime
              ) -> Tuple[int, Optional[datetime.datetime]]:
        return dbmod.count_rate_events(user_id, now - datetime.timedelta(seconds=window_seconds))

    def hit(self, user_id: str, now: datetime.datetime) -> None:
        dbmod.insert_rate_event(user_id, now)

    def acquire(self, user_id: str, windows: Sequence[Tuple[int, int]], now: datetime.datetime
                ) -> Tuple[List[Tuple[int, Optional[datetime.datetime]]], bool]:
        return dbmod.acquire_rate_event(user_id, now, list(windows))

    def reset(self):
        dbmod.purge_rate_events(dbmod.utcnow() + datetime.timedelta(days=1))


def _epoch(ts: datetime.datetime) -> float:
    return ts.replace(tzinfo=datetime.timezone.utc).timestamp()


# Trims the set, counts each window (ARGV pairs of seconds and ceiling) and adds
# the new member only when every window has room. Replies with the blocked flag
# followed by (count, oldest score) per window.
_ACQUIRE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local horizon = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - horizon)
local out = {0}
for i = 4, #ARGV, 2 do
  local low = '(' .. (now - tonumber(ARGV[i]))
  local count = redis.call('ZCOUNT', key, low, '+inf')
  local oldest = ''
  if count > 0 then
    oldest = redis.call('ZRANGEBYSCORE', key, low, '+inf', 'WITHSCORES', 'LIMIT', 0, 1)[2]
  end
  if count >= tonumber(ARGV[i + 1]) then out[1] = 1 end
  table.insert(out, count)
  table.insert(out, oldest)
end
if out[1] == 0 then
  redis.call('ZADD', key, now, ARGV[2])
  redis.call('EXPIRE', key, horizon + 60)
end
return out
"""


def _from_epoch(score) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(float(score), datetime.timezone.utc).replace(tzinfo=None)


class RedisRateCounter:
    """Sorted set per user (`rate:<user>`), scored by event epoch seconds."""

    def __init__(self, redis_url: str, horizon_seconds: int = RATE_WINDOWS[-1][1], client=None):
        if client is None:
            import redis
            client = redis.from_url(redis_url, decode_responses=True)
        self._client = client
        self.horizon = horizon_seconds

    @staticmethod
    def _key(user_id: str) -> str:
        return f"rate:{user_id}"

    def count(self, user_id: str, window_seconds: int, now: datetime.datetime
              ) -> Tuple[int, Optional[datetime.datetime]]:
        low = f"({_epoch(now) - window_seconds}"
        try:
            key = self._key(user_id)
            count = int(self._client.zcount(key, low, "+inf"))
            if not count:
                return 0, None
            first = self._client.zrangebyscore(key, low, "+inf", start=0, num=1, withscores=True)
        except Exception as e:
            # Fail open on Redis errors
            logger.warning("redis rate counter unavailable", extra={"error": str(e)})
            return 0, None
        return count, (_from_epoch(first[0][1]) if first else None)

    def hit(self, user_id: str, now: datetime.datetime) -> None:
        key = self._key(user_id)
        score = _epoch(now)
        try:
            pipe = self._client.pipeline()
            pipe.zadd(key, {f"{score}:{uuid.uuid4().hex[:8]}": score})
            pipe.zremrangebyscore(key, "-inf", score - self.horizon)
            pipe.expire(key, self.horizon + 60)
            pipe.execute()
        except Exception as e:
            logger.warning("redis rate counter write failed", extra={"error": str(e)})

    def acquire(self, user_id: str, windows: Sequence[Tuple[int, int]], now: datetime.datetime
                ) -> Tuple[List[Tuple[int, Optional[datetime.datetime]]], bool]:
        score = _epoch(now)
        args = [score, f"{score}:{uuid.uuid4().hex[:8]}", self.horizon]
        for seconds, ceiling in windows:
            args.extend([seconds, ceiling])
        try:
            reply = self._client.eval(_ACQUIRE_SCRIPT, 1, self._key(user_id), *args)
        except Exception as e:
            # Fail open on Redis errors
            logger.warning("redis rate counter unavailable", extra={"error": str(e)})
            return [(0, None) for _ in windows], True
        counts = [
            (int(reply[i]), _from_epoch(reply[i + 1]) if reply[i + 1] else None)
            for i in range(1, len(reply), 2)
        ]
        return counts, not int(reply[0])

    def reset(self):
        for key in self._client.scan_iter("rate:*"):
            self._client.delete(key)


def build_rate_counter(backend: Optional[str] = None):
    backend = (backend or os.getenv("RATE_LIMIT_BACKEND", "database")).lower()
    if backend == "memory":
        return InMemoryRateCounter()
    if backend == "redis":
        if not REDIS_URL:
            raise RuntimeError("RATE_LIMIT_BACKEND=redis requires REDIS_URL")
        return RedisRateCounter(REDIS_URL)
    return DatabaseRateCounter()


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------
def resolve_tier(user_id: str) -> str:
    try:
        tier = dbmod.get_user_tier(user_id)
    except Exception as e:
        logger.warning("tier lookup failed", extra={"user_id": user_id, "error": str(e)})
        tier = None
    return tier if tier in RATE_LIMITS else DEFAULT_TIER


class RateLimiter:
    def __init__(self, counter=None, tier_resolver: Callable[[str], str] = resolve_tier,
                 clock: Clock = dbmod.utcnow):
        self.counter = counter if counter is not None else build_rate_counter()
        self.tier_resolver = tier_resolver
        self.clock = clock
        self._lock = threading.Lock()

    def limits_for(self, user_id: str) -> TierLimits:
        return RATE_LIMITS.get(self.tier_resolver(user_id), RATE_LIMITS[DEFAULT_TIER])

    def _windows(self, user_id: str) -> Tuple[TierLimits, List[Tuple[str, int, int]]]:
        limits = self.limits_for(user_id)
        ceilings = {"minute": limits.per_minute, "hour": limits.per_hour, "day": limits.per_day}
        return limits, [(name, seconds, ceilings[name]) for name, seconds in RATE_WINDOWS]

    def _status(self, limits: TierLimits, windows, counts, now: datetime.datetime
                ) -> RateLimitStatus:
        """Windows are evaluated narrowest first; the first exhausted one blocks."""
        remaining = []
        for (name, seconds, ceiling), (count, oldest) in zip(windows, counts):
            if count >= ceiling:
                inc_rate_limit_block(name)
                reset_at = (oldest or now) + datetime.timedelta(seconds=seconds)
                return RateLimitStatus(remaining=0, limit=ceiling, reset_at=reset_at,
                                       blocked=True, window=name)
            remaining.append(ceiling - count)
        return RateLimitStatus(
            remaining=min(remaining),
            limit=limits.per_day,
            reset_at=now + datetime.timedelta(seconds=RATE_WINDOWS[-1][1]),
            blocked=False,
        )

    def check(self, user_id: str) -> RateLimitStatus:
        """Status for `user_id` without recording a call."""
        now = self.clock()
        limits, windows = self._windows(user_id)
        counts = [self.counter.count(user_id, seconds, now) for _, seconds, _ in windows]
        return self._status(limits, windows, counts, now)

    def hit(self, user_id: str) -> None:
        self.counter.hit(user_id, self.clock())

    def try_acquire(self, user_id: str) -> RateLimitStatus:
        """
        Check and record one call as a single step. When the returned status
        is not blocked the call has already been counted, so concurrent callers
        can never pass more calls than a window allows.
        """
        limits, windows = self._windows(user_id)
        with self._lock:
            now = self.clock()
            counts, recorded = self.counter.acquire(
                user_id, [(seconds, ceiling) for _, seconds, ceiling in windows], now)
        status = self._status(limits, windows, counts, now)
        if recorded:
            # counts were taken before this call was added
            status.remaining = max(0, status.remaining - 1)
        return status
