"""
Unit Tests - Ingress and Ingestor
"""
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from viewtrack.database.connection import session_scope
from viewtrack.database.models import DeviceType, ProductCounters, UserViewIndex, ViewEvent, ViewSource
from viewtrack.errors import Conflict, NotFound, RateLimited, Unavailable
from viewtrack.pipeline import ViewPipeline
from tests.conftest import BOT_UA, MOBILE_UA, anonymous_context, no_sleep, user_context


async def counters_for(factory, product_id):
    async with session_scope(factory) as db:
        return await db.get(ProductCounters, product_id)


async def events_for(factory, product_id):
    async with session_scope(factory) as db:
        rows = await db.scalars(
            select(ViewEvent).where(ViewEvent.product_id == product_id).order_by(ViewEvent.created_at)
        )
        return list(rows)


class TestViewStart:
    """Tests for recording view starts"""

    @pytest.mark.asyncio
    async def test_single_viewer_multiple_sessions(self, pipeline, product, clock, session_factory):
        """Unique at t and t+30h, not at t+2h; counters and mean duration follow"""
        start = clock.now()
        for offset_hours, duration in ((0, 50), (2, 80), (30, 40)):
            clock.current = start + timedelta(hours=offset_hours)
            outcome = await pipeline.ingress.start_view(product.product_id, user_context("u-1"))
            await pipeline.ingress.end_view(outcome.handle, duration)

        events = await events_for(session_factory, product.product_id)
        assert [event.is_unique for event in events] == [True, False, True]

        counters = await counters_for(session_factory, product.product_id)
        assert counters.total_views == 3
        assert counters.unique_views == 2
        assert counters.avg_duration_seconds == pytest.approx(56.67, abs=0.01)
        assert counters.duration_samples == 3

    @pytest.mark.asyncio
    async def test_classification_is_stored(self, pipeline, product, session_factory):
        await pipeline.ingress.start_view(
            product.product_id,
            user_context("u-1", user_agent=MOBILE_UA, country="gb"),
            referrer="https://www.google.com/search?q=launch",
        )

        event = (await events_for(session_factory, product.product_id))[0]
        assert event.device == DeviceType.MOBILE
        assert event.source == ViewSource.SEARCH
        assert event.referrer_host == "google.com"
        assert event.country_code == "GB"
        assert event.viewer_key == "u:u-1"
        assert event.counters_applied is True

    @pytest.mark.asyncio
    async def test_anonymous_views_use_fingerprint(self, pipeline, product, session_factory):
        await pipeline.ingress.start_view(product.product_id, anonymous_context())
        await pipeline.ingress.start_view(product.product_id, anonymous_context())
        await pipeline.ingress.start_view(product.product_id, anonymous_context(ip="198.51.100.77"))

        events = await events_for(session_factory, product.product_id)
        assert all(event.user_id is None and event.fingerprint for event in events)
        assert sum(event.is_unique for event in events) == 2

        async with session_scope(session_factory) as db:
            indexed = await db.scalar(select(func.count()).select_from(UserViewIndex))
        assert indexed == 0

    @pytest.mark.asyncio
    async def test_authenticated_views_are_indexed(self, pipeline, product, session_factory):
        outcome = await pipeline.ingress.start_view(product.product_id, user_context("u-9"))

        async with session_scope(session_factory) as db:
            rows = list(await db.scalars(select(UserViewIndex)))
        assert len(rows) == 1
        assert rows[0].user_id == "u-9"
        assert str(rows[0].event_id) == outcome.handle

    @pytest.mark.asyncio
    async def test_authenticated_only_uniqueness(self, pipeline, product, session_factory):
        pipeline.ingestor.tracking.authenticated_only_uniqueness = True

        await pipeline.ingress.start_view(product.product_id, anonymous_context())
        await pipeline.ingress.start_view(product.product_id, user_context("u-1"))

        events = await events_for(session_factory, product.product_id)
        assert sorted(event.is_unique for event in events) == [False, True]

    @pytest.mark.asyncio
    async def test_unknown_product(self, pipeline):
        with pytest.raises(NotFound):
            await pipeline.ingress.start_view(uuid.uuid4(), user_context("u-1"))

    @pytest.mark.asyncio
    async def test_bots_are_ignored(self, pipeline, product, session_factory):
        outcome = await pipeline.ingress.start_view(product.product_id, anonymous_context(user_agent=BOT_UA))

        assert outcome.ignored
        assert outcome.handle is None
        assert await events_for(session_factory, product.product_id) == []

    @pytest.mark.asyncio
    async def test_rate_limited_viewer(self, pipeline, product, session_factory):
        for _ in range(pipeline.settings.tracking.burst):
            await pipeline.ingress.start_view(product.product_id, anonymous_context())

        with pytest.raises(RateLimited):
            await pipeline.ingress.start_view(product.product_id, anonymous_context())

        events = await events_for(session_factory, product.product_id)
        assert len(events) == pipeline.settings.tracking.burst

    @pytest.mark.asyncio
    async def test_counter_failure_keeps_raw_event(self, pipeline, product, session_factory):
        """A failed counter update leaves the raw event for reconciliation"""
        async def broken(_event_id):
            raise ConnectionError("counter store down")

        pipeline.ingestor.apply_counters = broken
        outcome = await pipeline.ingress.start_view(product.product_id, user_context("u-1"))

        assert outcome.result.counters_applied is False
        events = await events_for(session_factory, product.product_id)
        assert len(events) == 1
        assert events[0].counters_applied is False
        assert await counters_for(session_factory, product.product_id) is None

        await pipeline.aggregator.reconcile_counters({product.product_id})
        counters = await counters_for(session_factory, product.product_id)
        assert counters.total_views == 1
        assert counters.unique_views == 1

    @pytest.mark.asyncio
    async def test_failed_raw_write_releases_unique_claim(self, pipeline, product, session_factory):
        """A view that never reached the store does not keep the viewer's unique slot"""
        async def broken(_event):
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        healthy = pipeline.ingestor._write_raw
        pipeline.ingestor._write_raw = broken
        with pytest.raises(Unavailable):
            await pipeline.ingress.start_view(product.product_id, user_context("u-1"))
        assert await pipeline.dedup.last_unique(product.product_id, "u:u-1") is None

        pipeline.ingestor._write_raw = healthy
        await pipeline.ingress.start_view(product.product_id, user_context("u-1"))

        events = await events_for(session_factory, product.product_id)
        assert [event.is_unique for event in events] == [True]

    @pytest.mark.asyncio
    async def test_claim_with_lost_reply_stays_unique(self, pipeline, product, session_factory):
        real_claim = pipeline.dedup.claim
        calls = []

        async def reply_lost_once(*args, **kwargs):
            won = await real_claim(*args, **kwargs)
            calls.append(won)
            if len(calls) == 1:
                raise ConnectionError("reply lost")
            return won

        pipeline.dedup.claim = reply_lost_once
        await pipeline.ingress.start_view(product.product_id, user_context("u-1"))

        assert calls == [True, True]
        events = await events_for(session_factory, product.product_id)
        assert events[0].is_unique is True

    @pytest.mark.asyncio
    async def test_pipelines_share_rate_limit(self, pipeline, redis, session_factory, test_settings, clock, product):
        """Alternating starts across two instances on one Redis admit a single burst"""
        other = ViewPipeline(session_factory, redis, settings=test_settings, clock=clock, sleep=no_sleep)

        accepted = 0
        for attempt in range(20):
            instance = pipeline if attempt % 2 == 0 else other
            try:
                await instance.ingress.start_view(product.product_id, user_context("u-1"))
                accepted += 1
            except RateLimited:
                pass

        await other.stop()
        assert accepted == 10
        assert len(await events_for(session_factory, product.product_id)) == 10

    @pytest.mark.asyncio
    async def test_counter_application_is_idempotent(self, pipeline, product, session_factory):
        outcome = await pipeline.ingress.start_view(product.product_id, user_context("u-1"))

        assert await pipeline.ingestor.apply_counters(outcome.result.event_id) is None
        counters = await counters_for(session_factory, product.product_id)
        assert counters.total_views == 1


class TestViewEnd:
    """Tests for recording view ends"""

    @pytest.mark.asyncio
    async def test_second_end_is_noop(self, pipeline, product, session_factory):
        outcome = await pipeline.ingress.start_view(product.product_id, user_context("u-1"))
        await pipeline.ingress.end_view(outcome.handle, 42)

        with pytest.raises(Conflict) as exc_info:
            await pipeline.ingress.end_view(outcome.handle, 99)
        assert exc_info.value.details["duration_seconds"] == 42

        event = (await events_for(session_factory, product.product_id))[0]
        counters = await counters_for(session_factory, product.product_id)
        assert event.duration_seconds == 42
        assert counters.avg_duration_seconds == 42
        assert counters.duration_samples == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("submitted,stored", [(-5, 0.0), (7200, 3600.0), (12.5, 12.5)])
    async def test_duration_is_clamped(self, pipeline, product, session_factory, submitted, stored):
        outcome = await pipeline.ingress.start_view(product.product_id, user_context("u-1"))
        result = await pipeline.ingress.end_view(outcome.handle, submitted)

        assert result.duration_seconds == stored

    @pytest.mark.asyncio
    async def test_expired_handle(self, pipeline, product, clock):
        outcome = await pipeline.ingress.start_view(product.product_id, user_context("u-1"))
        clock.advance(hours=1, seconds=1)

        with pytest.raises(NotFound):
            await pipeline.ingress.end_view(outcome.handle, 30)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("handle", ["not-a-handle", str(uuid.uuid4())])
    async def test_unknown_handle(self, pipeline, handle):
        with pytest.raises(NotFound):
            await pipeline.ingress.end_view(handle, 30)
