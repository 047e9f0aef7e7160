"""
Unit Tests - Token Bucket and Dedup Store
"""
from datetime import timedelta

import pytest

from viewtrack.errors import RateLimited
from viewtrack.ingestion.dedup import DedupStore
from viewtrack.ingestion.rate_limit import TokenBucketLimiter


class TestTokenBucketLimiter:
    """Tests for the per-viewer token bucket"""

    @pytest.mark.asyncio
    async def test_burst_then_rejects(self, redis, clock):
        limiter = TokenBucketLimiter(redis, rate_per_minute=30, burst=10, clock=clock)

        for _ in range(10):
            await limiter.acquire("a:viewer")

        with pytest.raises(RateLimited) as exc_info:
            await limiter.acquire("a:viewer")
        assert exc_info.value.retry_after == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_admitted_never_exceeds_burst_plus_rate(self, redis, clock):
        """40 starts spread over 60 s admit at most burst + rate x elapsed"""
        limiter = TokenBucketLimiter(redis, rate_per_minute=30, burst=10, clock=clock)

        accepted = rejected = 0
        for _ in range(40):
            try:
                await limiter.acquire("a:fingerprint")
                accepted += 1
            except RateLimited:
                rejected += 1
            clock.advance(seconds=1.5)

        elapsed_minutes = 40 * 1.5 / 60
        assert accepted <= 10 + 30 * elapsed_minutes
        assert accepted + rejected == 40
        assert rejected > 0

    @pytest.mark.asyncio
    async def test_refills_over_time(self, redis, clock):
        limiter = TokenBucketLimiter(redis, rate_per_minute=60, burst=2, clock=clock)
        await limiter.acquire("u:1")
        await limiter.acquire("u:1")
        assert await limiter.remaining("u:1") == 0

        clock.advance(seconds=1)
        assert await limiter.remaining("u:1") == 1
        await limiter.acquire("u:1")

    @pytest.mark.asyncio
    async def test_buckets_are_per_viewer(self, redis, clock):
        limiter = TokenBucketLimiter(redis, rate_per_minute=30, burst=1, clock=clock)
        await limiter.acquire("u:1")
        await limiter.acquire("u:2")
        with pytest.raises(RateLimited):
            await limiter.acquire("u:1")

    @pytest.mark.asyncio
    async def test_limiters_share_buckets_through_redis(self, redis, clock):
        """Two instances alternating on one viewer admit one burst between them"""
        first = TokenBucketLimiter(redis, rate_per_minute=30, burst=10, clock=clock)
        second = TokenBucketLimiter(redis, rate_per_minute=30, burst=10, clock=clock)

        accepted = 0
        for attempt in range(20):
            limiter = first if attempt % 2 == 0 else second
            try:
                await limiter.acquire("u:shared")
                accepted += 1
            except RateLimited:
                pass

        assert accepted == 10

    @pytest.mark.asyncio
    async def test_bucket_key_expires_once_refilled(self, redis, clock):
        limiter = TokenBucketLimiter(redis, rate_per_minute=30, burst=10, clock=clock)
        await limiter.acquire("u:1")

        ttl = await redis.ttl(limiter.key("u:1"))
        assert limiter.ttl_seconds == 21
        assert 0 < ttl <= limiter.ttl_seconds

    @pytest.mark.asyncio
    async def test_unknown_viewer_has_full_bucket(self, redis, clock):
        limiter = TokenBucketLimiter(redis, rate_per_minute=30, burst=10, clock=clock)
        assert await limiter.remaining("u:new") == 10

    def test_rejects_invalid_configuration(self, redis):
        with pytest.raises(ValueError):
            TokenBucketLimiter(redis, rate_per_minute=30, burst=0)


class TestDedupStore:
    """Tests for unique-view claims"""

    @pytest.mark.asyncio
    async def test_first_claim_wins(self, redis, clock):
        dedup = DedupStore(redis, window=timedelta(hours=24))
        assert await dedup.claim("p1", "u:1", clock.now())
        assert not await dedup.claim("p1", "u:1", clock.now() + timedelta(hours=2))

    @pytest.mark.asyncio
    async def test_claim_after_window(self, redis, clock):
        dedup = DedupStore(redis, window=timedelta(hours=24))
        assert await dedup.claim("p1", "u:1", clock.now())
        assert await dedup.claim("p1", "u:1", clock.now() + timedelta(hours=24))
        assert not await dedup.claim("p1", "u:1", clock.now() + timedelta(hours=30))

    @pytest.mark.asyncio
    async def test_window_slides_from_last_unique(self, redis, clock):
        """A non-unique view does not extend the window"""
        dedup = DedupStore(redis, window=timedelta(hours=24))
        start = clock.now()
        assert await dedup.claim("p1", "a:f", start)
        assert not await dedup.claim("p1", "a:f", start + timedelta(hours=20))
        assert await dedup.claim("p1", "a:f", start + timedelta(hours=25))

    @pytest.mark.asyncio
    async def test_identities_and_products_are_independent(self, redis, clock):
        dedup = DedupStore(redis)
        assert await dedup.claim("p1", "u:1", clock.now())
        assert await dedup.claim("p1", "u:2", clock.now())
        assert await dedup.claim("p2", "u:1", clock.now())

    @pytest.mark.asyncio
    async def test_key_carries_ttl(self, redis, clock):
        dedup = DedupStore(redis, window=timedelta(hours=24))
        await dedup.claim("p1", "u:1", clock.now())
        ttl = await redis.ttl(dedup.key("p1", "u:1"))
        assert 0 < ttl <= 24 * 3600
        assert await dedup.last_unique("p1", "u:1") is not None

    @pytest.mark.asyncio
    async def test_retried_claim_finds_its_own_token(self, redis, clock):
        """A claim that landed but lost its reply still wins on retry"""
        dedup = DedupStore(redis)
        assert await dedup.claim("p1", "u:1", clock.now(), claimant="event-1")
        assert await dedup.claim("p1", "u:1", clock.now(), claimant="event-1")

    @pytest.mark.asyncio
    async def test_same_instant_other_view_is_not_unique(self, redis, clock):
        dedup = DedupStore(redis)
        assert await dedup.claim("p1", "u:1", clock.now(), claimant="event-1")
        assert not await dedup.claim("p1", "u:1", clock.now(), claimant="event-2")

    @pytest.mark.asyncio
    async def test_release_frees_the_slot(self, redis, clock):
        dedup = DedupStore(redis)
        await dedup.claim("p1", "u:1", clock.now(), claimant="event-1")

        assert await dedup.release("p1", "u:1", clock.now(), "event-1")
        assert await dedup.last_unique("p1", "u:1") is None
        assert await dedup.claim("p1", "u:1", clock.now(), claimant="event-2")

    @pytest.mark.asyncio
    async def test_release_leaves_other_claims(self, redis, clock):
        dedup = DedupStore(redis)
        await dedup.claim("p1", "u:1", clock.now(), claimant="event-2")

        assert not await dedup.release("p1", "u:1", clock.now(), "event-1")
        assert await dedup.last_unique("p1", "u:1") is not None
