"""
Unit Tests - Insight Generator
"""
from datetime import date, timedelta

import pytest

from viewtrack.analytics.insights import (
    LIMITED_DATA,
    NEW_PRODUCT,
    InsightGenerator,
    WindowAggregates,
    period_change,
)


def window(current, previous, avg_duration=None, sources=None):
    dates = [date(2025, 3, 1) + timedelta(days=offset) for offset in range(len(current))]
    return WindowAggregates(
        dates=dates,
        current=list(current),
        previous=list(previous),
        avg_duration=avg_duration,
        sources=sources or [],
    )


@pytest.fixture
def generator() -> InsightGenerator:
    return InsightGenerator()


class TestPeriodChange:
    """Tests for period-over-period math"""

    def test_plain_ratio(self):
        assert period_change([12] * 10, [8] * 10) == pytest.approx(50.0)

    def test_both_empty(self):
        assert period_change([0] * 7, [0] * 7) == 0.0

    def test_previous_empty(self):
        assert period_change([1] * 7, [0] * 7) is None

    def test_clamped(self):
        assert period_change([200] * 4, [1] * 4) == 1000.0
        assert period_change([0] * 4, [5] * 4) == -100.0

    def test_sparse_window_uses_daily_averages(self):
        """Previous window active on 1 of 10 days"""
        previous = [10] + [0] * 9
        current = [10] * 10
        assert period_change(current, previous) == pytest.approx(0.0)


class TestTrend:
    def test_upward(self, generator):
        current = [12] * 10
        previous = [8] * 10
        result = generator.generate(window(current, previous))
        assert result.summary[0] == "Views are trending upward (+50.0%)"
        assert result.change_percent == 50.0

    def test_downward(self, generator):
        result = generator.generate(window([6] * 10, [8] * 10))
        assert result.summary[0] == "Views are trending downward (−25.0%)"

    def test_steady(self, generator):
        result = generator.generate(window([10] * 10, [10] * 10))
        assert result.summary[0] == "Views are steady"

    def test_new_product_with_enough_active_days(self, generator):
        current = [0] * 26 + [3, 3, 2, 2]
        result = generator.generate(window(current, [0] * 30))

        assert result.summary[0] == "Views are trending upward (+100.0%)"
        assert result.summary[-1] == NEW_PRODUCT
        assert result.reliability == "low"

    def test_new_product_with_little_data(self, generator):
        result = generator.generate(window([0] * 5 + [4, 0], [0] * 7))
        assert result.summary[-1] == NEW_PRODUCT
        assert result.summary.count(NEW_PRODUCT) == 1
        assert result.change_percent is None


class TestFindings:
    def test_engagement_bands(self, generator):
        assert "significant time" in generator.engagement(200, 10)
        assert "Good engagement" in generator.engagement(90, 10)
        assert "brief visits" in generator.engagement(20, 10)
        assert generator.engagement(None, 10) is None
        assert generator.engagement(90, 0) is None

    def test_dominant_source(self, generator):
        assert (
            generator.dominant_source([("search", 6), ("direct", 4)])
            == "Most traffic comes from search engines (60.0%)"
        )
        assert (
            generator.dominant_source([("search", 4), ("direct", 3), ("social", 3)])
            == "Traffic is well distributed across sources"
        )
        assert generator.dominant_source([]) is None

    def test_peak_day(self, generator):
        dates = [date(2025, 3, 1) + timedelta(days=offset) for offset in range(5)]
        assert generator.peak_day(dates, [1, 1, 10, 1, 1]) == "Peak day: 2025-03-03 with 10 views"
        assert generator.peak_day(dates, [3, 3, 4, 3, 3]) is None

    def test_limited_data(self, generator):
        current = [5] + [0] * 9
        previous = [5] * 10
        result = generator.generate(window(current, previous))
        assert result.summary[-1] == LIMITED_DATA
        assert result.reliability == "low"

    def test_at_most_four_insights(self, generator):
        current = [2] * 9 + [40]
        result = generator.generate(
            window(current, [3] * 10, avg_duration=75, sources=[("social", 50), ("direct", 8)])
        )
        assert len(result.summary) == 4
        assert result.reliability == "high"
        assert result.summary[1] == "Good engagement with 75s average view time"
        assert result.summary[2] == "Most traffic comes from social media (86.2%)"
        assert result.summary[3].startswith("Peak day: 2025-03-10")

    def test_never_raises(self, generator):
        broken = WindowAggregates(dates=[], current=[0, 0, 9], previous=[1, 1, 1], sources=[("direct", 1)])
        result = generator.generate(broken)
        assert result.summary == [NEW_PRODUCT]
        assert result.reliability == "low"
