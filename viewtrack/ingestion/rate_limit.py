"""
Per-viewer token bucket.

Each viewer identity gets a bucket holding up to ``burst`` tokens, refilled
continuously at ``rate_per_minute``. A view start spends one token. Over any
interval of ``t`` minutes at most ``burst + rate * t`` starts are admitted.

Buckets live in Redis as a hash (``tokens``, ``updated``) under
``viewtrack:ratelimit:<viewer_key>`` and are refilled and spent by one Lua
script, so every API instance draws from the same bucket. A bucket expires
once it would have refilled completely; a missing bucket is a full one.
Bucket time is the wall clock in epoch seconds, shared by all instances.
"""

import math
from typing import Optional

import structlog
from redis.asyncio import Redis

from viewtrack.clock import SystemClock, to_epoch
from viewtrack.errors import RateLimited
from viewtrack.resilience import guarded

logger = structlog.get_logger(__name__)

KEY_PREFIX = "viewtrack:ratelimit"

# KEYS[1] bucket hash
# ARGV capacity, refill rate per second, now, ttl
TOKEN_BUCKET_SCRIPT = """
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])

local bucket = redis.call('HMGET', KEYS[1], 'tokens', 'updated')
local tokens = tonumber(bucket[1])
local updated = tonumber(bucket[2])
if tokens == nil or updated == nil then
    tokens = capacity
    updated = now
end

tokens = math.min(capacity, tokens + math.max(0, now - updated) * rate)

local allowed = 0
if tokens >= 1 then
    tokens = tokens - 1
    allowed = 1
end

redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'updated', tostring(now))
redis.call('EXPIRE', KEYS[1], ttl)
return {allowed, tostring(tokens)}
"""

# Bucket lifetime when there is no refill at all
IDLE_TTL_SECONDS = 3600


class TokenBucketLimiter:
    """
    Redis-backed token buckets keyed by viewer identity.

    Example:
        limiter = TokenBucketLimiter(redis, rate_per_minute=30, burst=10)
        await limiter.acquire("a:3f2c...")
    """

    def __init__(
        self,
        redis: Redis,
        rate_per_minute: int = 30,
        burst: int = 10,
        clock=None,
        timeout: Optional[float] = None,
    ):
        if burst < 1 or rate_per_minute < 0:
            raise ValueError("burst must be >= 1 and rate_per_minute >= 0")
        self.redis = redis
        self.rate_per_second = rate_per_minute / 60.0
        self.burst = burst
        self.clock = clock or SystemClock()
        self.timeout = timeout
        self._script = redis.register_script(TOKEN_BUCKET_SCRIPT)

    @property
    def ttl_seconds(self) -> int:
        if self.rate_per_second <= 0:
            return IDLE_TTL_SECONDS
        return math.ceil(self.burst / self.rate_per_second) + 1

    def key(self, viewer_key: str) -> str:
        return f"{KEY_PREFIX}:{viewer_key}"

    def _now(self) -> float:
        return to_epoch(self.clock.now())

    async def acquire(self, key: str) -> None:
        """
        Spend one token for ``key``.

        Raises:
            RateLimited: bucket empty; ``retry_after`` is the wait for the next token
            Unavailable: Redis did not answer in time
        """
        allowed, tokens = await guarded(
            self._script(
                keys=[self.key(key)],
                args=[self.burst, repr(self.rate_per_second), repr(self._now()), self.ttl_seconds],
            ),
            name="rate_limit",
            timeout=self.timeout,
        )
        if int(allowed):
            return

        retry_after = self._retry_after(float(tokens))
        logger.warning("Rate limit exceeded", viewer=key, retry_after=retry_after)
        raise RateLimited(retry_after=retry_after)

    def _retry_after(self, tokens: float) -> Optional[float]:
        if self.rate_per_second <= 0:
            return None
        return round((1.0 - tokens) / self.rate_per_second, 3)

    async def remaining(self, key: str) -> int:
        """Whole tokens left for ``key`` right now."""
        tokens, updated = await self.redis.hmget(self.key(key), "tokens", "updated")
        if tokens is None or updated is None:
            return self.burst
        elapsed = max(0.0, self._now() - float(updated))
        return int(min(float(self.burst), float(tokens) + elapsed * self.rate_per_second))
