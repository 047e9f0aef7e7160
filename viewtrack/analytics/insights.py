"""
Insight Generator

Deterministic, human-readable findings from a product's window aggregates
compared against the preceding window of equal length.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional, Sequence, Tuple

import structlog

from viewtrack.analytics.schemas import Insights

logger = structlog.get_logger(__name__)

MAX_INSIGHTS = 4
STEADY_THRESHOLD_PERCENT = 5.0
CHANGE_FLOOR = -100.0
CHANGE_CEILING = 1000.0
NEW_PRODUCT_CHANGE = 100.0
MIN_ACTIVE_DAYS_FOR_TREND = 3
SIGNIFICANT_SECONDS = 180.0
GOOD_SECONDS = 60.0
DOMINANT_SHARE = 50.0
PEAK_FACTOR = 2.0
MIN_COVERAGE = 0.3

NEW_PRODUCT = "New product with limited history"
LIMITED_DATA = "Limited historical data"

SOURCE_LABELS = {
    "direct": "direct visits",
    "search": "search engines",
    "social": "social media",
    "recommendation_feed": "the recommendation feed",
    "recommendation_similar": "similar-product recommendations",
    "other": "other websites",
}


@dataclass
class WindowAggregates:
    """Inputs for one analytics request"""
    dates: List[date]
    current: List[int]
    previous: List[int]
    avg_duration: Optional[float] = None
    sources: List[Tuple[str, int]] = field(default_factory=list)


def _active_days(series: Sequence[int]) -> int:
    return sum(1 for count in series if count > 0)


def clamp_change(value: float) -> float:
    return max(CHANGE_FLOOR, min(CHANGE_CEILING, value))


def period_change(current: Sequence[int], previous: Sequence[int]) -> Optional[float]:
    """
    Percent change between two equal-length windows.

    Daily averages over active days replace totals when either window has
    data on fewer than half its days. Returns None when the previous window
    is empty and the current one is not (no meaningful ratio).
    """
    current_total = sum(current)
    previous_total = sum(previous)

    if previous_total == 0:
        return 0.0 if current_total == 0 else None

    current_value: float = current_total
    previous_value: float = previous_total
    expected = max(len(current), len(previous), 1)
    current_active = _active_days(current)
    previous_active = _active_days(previous)
    if current_active < expected / 2 or previous_active < expected / 2:
        current_value = current_total / max(current_active, 1)
        previous_value = previous_total / previous_active

    return clamp_change((current_value - previous_value) / previous_value * 100.0)


def format_percent(value: float) -> str:
    return f"{abs(value):.1f}%"


class InsightGenerator:
    """
    Rule set applied in order: trend, engagement, dominant source, peak day,
    data quality. At most four findings are returned; the data quality
    finding is always kept.
    """

    def generate(self, aggregates: WindowAggregates) -> Insights:
        try:
            return self._generate(aggregates)
        except Exception as e:
            logger.error("Insight generation failed", error=str(e), exc_info=True)
            return Insights(summary=[NEW_PRODUCT], reliability="low")

    def _generate(self, agg: WindowAggregates) -> Insights:
        findings: List[str] = []
        trend, change = self.trend(agg.current, agg.previous)
        findings.append(trend)

        engagement = self.engagement(agg.avg_duration, sum(agg.current))
        if engagement:
            findings.append(engagement)

        source = self.dominant_source(agg.sources)
        if source:
            findings.append(source)

        peak = self.peak_day(agg.dates, agg.current)
        if peak:
            findings.append(peak)

        quality = self.data_quality(agg.current, agg.previous)
        if quality and quality in findings:
            findings.remove(quality)

        if quality:
            summary = findings[:MAX_INSIGHTS - 1] + [quality]
        else:
            summary = findings[:MAX_INSIGHTS]

        return Insights(
            summary=summary,
            reliability="low" if quality else "high",
            change_percent=None if change is None else round(change, 1),
        )

    def trend(self, current: Sequence[int], previous: Sequence[int]) -> Tuple[str, Optional[float]]:
        if sum(previous) == 0:
            if _active_days(current) >= MIN_ACTIVE_DAYS_FOR_TREND:
                return f"Views are trending upward (+{NEW_PRODUCT_CHANGE:.1f}%)", NEW_PRODUCT_CHANGE
            return NEW_PRODUCT, None

        change = period_change(current, previous)
        if abs(change) < STEADY_THRESHOLD_PERCENT:
            return "Views are steady", change
        if change > 0:
            return f"Views are trending upward (+{format_percent(change)})", change
        return f"Views are trending downward (−{format_percent(change)})", change

    def engagement(self, avg_duration: Optional[float], window_views: int) -> Optional[str]:
        if avg_duration is None or window_views == 0:
            return None
        seconds = round(avg_duration)
        if avg_duration >= SIGNIFICANT_SECONDS:
            return f"Visitors spend significant time on this product ({seconds}s on average)"
        if avg_duration >= GOOD_SECONDS:
            return f"Good engagement with {seconds}s average view time"
        return f"Mostly brief visits ({seconds}s on average)"

    def dominant_source(self, sources: Sequence[Tuple[str, int]]) -> Optional[str]:
        total = sum(count for _, count in sources)
        if total == 0:
            return None
        top_source, top_count = min(sources, key=lambda item: (-item[1], item[0]))
        share = top_count / total * 100.0
        if share >= DOMINANT_SHARE:
            label = SOURCE_LABELS.get(top_source, top_source)
            return f"Most traffic comes from {label} ({share:.1f}%)"
        return "Traffic is well distributed across sources"

    def peak_day(self, dates: Sequence[date], current: Sequence[int]) -> Optional[str]:
        if not current or sum(current) == 0:
            return None
        average = sum(current) / len(current)
        peak_count = max(current)
        if peak_count < PEAK_FACTOR * average:
            return None
        peak_date = dates[current.index(peak_count)]
        noun = "view" if peak_count == 1 else "views"
        return f"Peak day: {peak_date.isoformat()} with {peak_count} {noun}"

    def data_quality(self, current: Sequence[int], previous: Sequence[int]) -> Optional[str]:
        if sum(previous) == 0:
            return NEW_PRODUCT
        for series in (current, previous):
            if series and _active_days(series) / len(series) < MIN_COVERAGE:
                return LIMITED_DATA
        return None
