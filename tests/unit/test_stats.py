"""
Unit Tests - Analytics Query Service
"""
import uuid
from datetime import date, datetime, timedelta

import pytest

from viewtrack.analytics.stats import distribute_percentages, rank_buckets
from viewtrack.errors import BadRequest, NotFound
from tests.conftest import DESKTOP_UA, MOBILE_UA, TABLET_UA, ManualClock, user_context


class TestPercentages:
    """Tests for share rounding"""

    def test_exact_shares(self):
        assert distribute_percentages([7, 2, 1]) == [70.0, 20.0, 10.0]

    def test_residual_goes_to_largest_bucket(self):
        assert distribute_percentages([1, 1, 1]) == [33.4, 33.3, 33.3]
        assert distribute_percentages([2, 1]) == [66.7, 33.3]

    @pytest.mark.parametrize("counts", [[5, 3, 1], [9, 9, 1, 1], [13, 7, 5, 3, 2, 1], [1]])
    def test_shares_sum_to_hundred(self, counts):
        assert sum(distribute_percentages(counts)) == pytest.approx(100.0, abs=1e-9)

    def test_empty_window(self):
        assert distribute_percentages([]) == []
        assert distribute_percentages([0, 0]) == [0.0, 0.0]

    def test_rank_buckets_breaks_ties_by_key(self):
        ranked = rank_buckets({"social": (3, 1), "direct": (3, 2), "search": (5, 5), "other": (0, 0)})
        assert [key for key, _, _ in ranked] == ["search", "direct", "social"]


class TestViewStats:
    """Tests for the per-product analytics bundle"""

    @pytest.mark.asyncio
    async def test_daily_series_is_zero_filled_and_ascending(self, pipeline, product, clock):
        for day, count in ((date(2024, 1, 15), 5), (date(2024, 1, 16), 2)):
            for i in range(count):
                clock.current = datetime.combine(day, datetime.min.time()) + timedelta(hours=1 + i)
                await pipeline.ingress.start_view(product.product_id, user_context(f"u-{day.day}-{i}"))
        await pipeline.aggregator.process_pending()

        stats = await pipeline.stats.get_stats(product.product_id, days=7)

        assert len(stats.daily_views) == 7
        assert [point.day for point in stats.daily_views] == [
            date(2024, 1, 10) + timedelta(days=offset) for offset in range(7)
        ]
        counts = {point.day: point.count for point in stats.daily_views}
        assert counts[date(2024, 1, 15)] == 5
        assert counts[date(2024, 1, 16)] == 2
        assert sum(counts.values()) == 7

    @pytest.mark.asyncio
    async def test_device_breakdown_percentages(self, pipeline, product, clock):
        agents = [MOBILE_UA] * 7 + [DESKTOP_UA] * 2 + [TABLET_UA]
        for i, agent in enumerate(agents):
            clock.advance(minutes=1)
            await pipeline.ingress.start_view(product.product_id, user_context(f"u-{i}", user_agent=agent))
        await pipeline.aggregator.process_pending()

        stats = await pipeline.stats.get_stats(product.product_id, days=7)

        assert [(d.device, d.count, d.percentage) for d in stats.devices] == [
            ("mobile", 7, 70.0),
            ("desktop", 2, 20.0),
            ("tablet", 1, 10.0),
        ]
        assert [(s.source, s.percentage) for s in stats.sources] == [("direct", 100.0)]
        assert [(g.country, g.count) for g in stats.geography] == [("unknown", 10)]
        assert stats.totals.total_views == 10
        assert stats.totals.unique_viewers == 10

    @pytest.mark.asyncio
    async def test_totals_come_from_counters(self, pipeline, product):
        first = await pipeline.ingress.start_view(product.product_id, user_context("u-1"))
        second = await pipeline.ingress.start_view(product.product_id, user_context("u-2"))
        await pipeline.ingress.end_view(first.handle, 30)
        await pipeline.ingress.end_view(second.handle, 61)

        stats = await pipeline.stats.get_stats(product.product_id)

        assert stats.totals.total_views == 2
        assert stats.totals.avg_duration == 45.5

    @pytest.mark.asyncio
    async def test_product_without_views(self, pipeline, product):
        stats = await pipeline.stats.get_stats(product.product_id, days=30)

        assert stats.totals.model_dump() == {"total_views": 0, "unique_viewers": 0, "avg_duration": 0.0}
        assert len(stats.daily_views) == 30
        assert all(point.count == 0 for point in stats.daily_views)
        assert stats.devices == [] and stats.sources == [] and stats.geography == []
        assert stats.insights.summary == ["New product with limited history"]
        assert stats.insights.reliability == "low"

    @pytest.mark.asyncio
    async def test_unknown_product(self, pipeline):
        with pytest.raises(NotFound):
            await pipeline.stats.get_stats(uuid.uuid4())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("days", [0, 366])
    async def test_days_out_of_range(self, pipeline, product, days):
        with pytest.raises(BadRequest):
            await pipeline.stats.get_stats(product.product_id, days=days)

    @pytest.mark.asyncio
    async def test_breakdowns_limited_to_window(self, pipeline, product, clock):
        clock.current = ManualClock().now() - timedelta(days=20)
        await pipeline.ingress.start_view(product.product_id, user_context("u-old", user_agent=MOBILE_UA))
        clock.current = ManualClock().now()
        await pipeline.ingress.start_view(product.product_id, user_context("u-new"))
        await pipeline.aggregator.process_pending()

        stats = await pipeline.stats.get_stats(product.product_id, days=7)

        assert [d.device for d in stats.devices] == ["desktop"]
        assert stats.totals.total_views == 2
