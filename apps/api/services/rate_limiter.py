"""Per-identity, per-tier admission control backed by Redis counters."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from services.plans import get_plan

logger = logging.getLogger(__name__)

ACTION_GENERATION = "generation"
ACTION_READ = "read"
ACTION_ACCOUNT = "account"
ACTION_PAYMENT = "payment"

# Only these actions deny when the counter store is down; every other
# action class is treated as read-only and admitted.
FAIL_CLOSED_ACTIONS = frozenset({ACTION_GENERATION})


@dataclass(frozen=True)
class RateWindow:
    name: str
    limit: int
    window_seconds: int


DEFAULT_WINDOWS: Dict[str, List[RateWindow]] = {
    ACTION_READ: [RateWindow("minute", 60, 60)],
    ACTION_ACCOUNT: [RateWindow("minute", 60, 60)],
    ACTION_PAYMENT: [RateWindow("hour", 20, 3600)],
}


def windows_for(tier: Optional[str], action_class: str) -> List[RateWindow]:
    """Return the windows checked, in order, for a tier and action class."""
    if action_class == ACTION_GENERATION:
        plan = get_plan(tier)
        return [
            RateWindow("minute", plan.generations_per_minute, 60),
            RateWindow("hour", plan.generations_per_hour, 3600),
        ]
    return DEFAULT_WINDOWS.get(action_class, DEFAULT_WINDOWS[ACTION_READ])


class CounterStoreError(Exception):
    """Raised when the counter backend cannot be reached."""


# KEYS[1] = counter key
# ARGV[1] = window seconds
# Returns {count, ttl_seconds}; increment and expiry happen in one step.
_LUA_INCR_WINDOW = r"""
local current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {current, ttl}
"""


class RedisCounterStore:
    """Fixed-window counters shared by every API process."""

    def __init__(self, url: str):
        self._redis = redis.from_url(url, decode_responses=True)
        self._incr_window = self._redis.register_script(_LUA_INCR_WINDOW)

    async def incr(self, key: str, window_seconds: int) -> Tuple[int, float]:
        try:
            count, ttl = await self._incr_window(keys=[key], args=[int(window_seconds)])
        except (RedisError, OSError) as exc:
            raise CounterStoreError(str(exc)) from exc
        return int(count), float(ttl)

    async def aclose(self) -> None:
        await self._redis.aclose()


class LocalCounterStore:
    """In-process counters for development and tests.

    Expired windows are swept once the map grows past ``prune_threshold`` keys.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, prune_threshold: int = 10_000):
        self._clock = clock
        self.prune_threshold = max(int(prune_threshold), 1)
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    async def incr(self, key: str, window_seconds: int) -> Tuple[int, float]:
        now = self._clock()
        async with self._lock:
            count, reset_at = self._counters.get(key, (0, now + window_seconds))
            if now >= reset_at:
                count = 0
                reset_at = now + window_seconds
            count += 1
            self._counters[key] = (count, reset_at)
            if len(self._counters) > self.prune_threshold:
                self._prune(now)
            return count, reset_at - now

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._counters.items() if now >= reset_at]
        for key in expired:
            del self._counters[key]

    @property
    def size(self) -> int:
        return len(self._counters)

    def clear(self) -> None:
        self._counters.clear()

    async def aclose(self) -> None:
        return None


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: Optional[int] = None
    window: Optional[str] = None


def rate_limit_headers(decision: RateLimitDecision) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(decision.reset_at),
    }
    if decision.retry_after:
        headers["Retry-After"] = str(decision.retry_after)
    return headers


class RateLimiter:
    """Checks every window for an identity and action; every attempt counts."""

    def __init__(self, store, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    async def check(self, identity: str, tier: Optional[str], action_class: str) -> RateLimitDecision:
        decision: Optional[RateLimitDecision] = None
        for window in windows_for(tier, action_class):
            key = f"rl:{identity}:{action_class}:{window.name}"
            now = self._clock()
            try:
                count, ttl = await self.store.incr(key, window.window_seconds)
            except CounterStoreError as exc:
                return self._store_failure(identity, action_class, window, now, exc)

            reset_at = int(now + ttl)
            if count > window.limit:
                retry_after = max(int(math.ceil(ttl)), 1)
                logger.warning(
                    "Rate limit exceeded for %s action=%s window=%s count=%s limit=%s",
                    identity,
                    action_class,
                    window.name,
                    count,
                    window.limit,
                )
                return RateLimitDecision(
                    allowed=False,
                    limit=window.limit,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=retry_after,
                    window=window.name,
                )
            decision = RateLimitDecision(
                allowed=True,
                limit=window.limit,
                remaining=max(window.limit - count, 0),
                reset_at=reset_at,
                window=window.name,
            )
        assert decision is not None
        return decision

    def _store_failure(
        self,
        identity: str,
        action_class: str,
        window: RateWindow,
        now: float,
        exc: Exception,
    ) -> RateLimitDecision:
        reset_at = int(now + window.window_seconds)
        if action_class in FAIL_CLOSED_ACTIONS:
            logger.error(
                "Rate limit store unavailable, denying %s for %s: %s", action_class, identity, exc
            )
            return RateLimitDecision(
                allowed=False,
                limit=window.limit,
                remaining=0,
                reset_at=reset_at,
                retry_after=window.window_seconds,
                window=window.name,
            )
        logger.error("Rate limit store unavailable, admitting %s for %s: %s", action_class, identity, exc)
        return RateLimitDecision(
            allowed=True,
            limit=window.limit,
            remaining=max(window.limit - 1, 0),
            reset_at=reset_at,
            window=window.name,
        )


_rate_limiter: Optional[RateLimiter] = None


def build_rate_limiter() -> RateLimiter:
    backend = (settings.RATE_LIMIT_BACKEND or "redis").strip().lower()
    if backend == "memory":
        return RateLimiter(LocalCounterStore())
    return RateLimiter(RedisCounterStore(settings.REDIS_URL))


def get_rate_limiter() -> RateLimiter:
    """Return the process-wide limiter, building it on first use."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = build_rate_limiter()
    return _rate_limiter


def set_rate_limiter(limiter: Optional[RateLimiter]) -> None:
    global _rate_limiter
    _rate_limiter = limiter
