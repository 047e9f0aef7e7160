"""
Analytics Query Service

Per-product view statistics: lifetime totals from the counters, a
zero-filled daily series, device / source / country breakdowns over the
window, and insights comparing the window with the one before it.
Missing aggregates read as zeros.
"""

import uuid
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from viewtrack.analytics.insights import InsightGenerator, WindowAggregates
from viewtrack.analytics.schemas import (
    CountryShare,
    DailyPoint,
    DeviceShare,
    SourceShare,
    Totals,
    ViewStats,
)
from viewtrack.clock import SystemClock
from viewtrack.config.settings import DatabaseSettings
from viewtrack.database.connection import session_scope
from viewtrack.database.models import (
    BreakdownDimension,
    DailyRollup,
    Product,
    ProductCounters,
    ViewBreakdown,
)
from viewtrack.errors import BadRequest, NotFound
from viewtrack.resilience import guarded

logger = structlog.get_logger(__name__)

DEFAULT_DAYS = 30
MAX_DAYS = 365

_TENTH = Decimal("0.1")


def rank_buckets(buckets: Dict[str, Tuple[int, int]]) -> List[Tuple[str, int, int]]:
    """Buckets as ``(key, count, unique)`` sorted by count desc, then key asc."""
    return sorted(
        ((key, count, unique) for key, (count, unique) in buckets.items() if count > 0),
        key=lambda item: (-item[1], item[0]),
    )


def distribute_percentages(counts: Sequence[int]) -> List[float]:
    """
    Shares of the total rounded to one decimal.

    The rounding residual goes to the largest bucket so the shares sum to
    exactly 100.0. ``counts`` is expected in descending order.
    """
    total = sum(counts)
    if total <= 0:
        return [0.0 for _ in counts]

    shares = [
        (Decimal(count) * 100 / Decimal(total)).quantize(_TENTH, rounding=ROUND_HALF_UP)
        for count in counts
    ]
    largest = max(range(len(counts)), key=lambda i: (counts[i], -i))
    shares[largest] += Decimal(100) - sum(shares)
    return [float(share) for share in shares]


class ViewStatsService:
    """
    Example:
        stats = ViewStatsService(session_factory)
        bundle = await stats.get_stats(product_id, days=30)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        database: Optional[DatabaseSettings] = None,
        clock=None,
        insights: Optional[InsightGenerator] = None,
    ):
        self.session_factory = session_factory
        self.database = database or DatabaseSettings()
        self.clock = clock or SystemClock()
        self.insights = insights or InsightGenerator()

    async def get_stats(self, product_id: uuid.UUID, days: int = DEFAULT_DAYS) -> ViewStats:
        """
        Analytics bundle for ``product_id`` over the last ``days`` UTC days.

        Raises:
            BadRequest: days outside 1..365
            NotFound: unknown product
            Unavailable: store deadline exceeded
        """
        if not 1 <= days <= MAX_DAYS:
            raise BadRequest(f"days must be between 1 and {MAX_DAYS}")
        return await guarded(
            self._read(product_id, days),
            name="view_stats",
            timeout=self.database.read_timeout_seconds,
        )

    async def _read(self, product_id: uuid.UUID, days: int) -> ViewStats:
        today = self.clock.today()
        window_start = today - timedelta(days=days - 1)
        previous_start = window_start - timedelta(days=days)

        async with session_scope(self.session_factory) as db:
            exists = await db.scalar(select(Product.product_id).where(Product.product_id == product_id))
            if exists is None:
                raise NotFound("Product not found", product_id=str(product_id))

            counters = await db.get(ProductCounters, product_id)

            rollups = (
                await db.execute(
                    select(DailyRollup.day, DailyRollup.view_count, DailyRollup.unique_count)
                    .where(
                        DailyRollup.product_id == product_id,
                        DailyRollup.day >= previous_start,
                        DailyRollup.day <= today,
                    )
                )
            ).all()

            breakdown_rows = (
                await db.execute(
                    select(
                        ViewBreakdown.dimension,
                        ViewBreakdown.key,
                        func.sum(ViewBreakdown.view_count),
                        func.sum(ViewBreakdown.unique_count),
                    )
                    .where(
                        ViewBreakdown.product_id == product_id,
                        ViewBreakdown.day >= window_start,
                        ViewBreakdown.day <= today,
                    )
                    .group_by(ViewBreakdown.dimension, ViewBreakdown.key)
                )
            ).all()

        by_day: Dict[date, Tuple[int, int]] = {row.day: (row.view_count, row.unique_count) for row in rollups}
        window_days = [window_start + timedelta(days=offset) for offset in range(days)]
        previous_days = [previous_start + timedelta(days=offset) for offset in range(days)]

        daily_views = [
            DailyPoint(day=day, count=by_day.get(day, (0, 0))[0], unique_count=by_day.get(day, (0, 0))[1])
            for day in window_days
        ]
        previous_series = [by_day.get(day, (0, 0))[0] for day in previous_days]

        buckets: Dict[BreakdownDimension, Dict[str, Tuple[int, int]]] = {
            dimension: {} for dimension in BreakdownDimension
        }
        for dimension, key, count, unique in breakdown_rows:
            buckets[BreakdownDimension(dimension)][key] = (int(count or 0), int(unique or 0))

        devices = self._devices(buckets[BreakdownDimension.DEVICE])
        sources = self._sources(buckets[BreakdownDimension.SOURCE])
        geography = self._geography(buckets[BreakdownDimension.COUNTRY])

        has_durations = counters is not None and counters.duration_samples > 0
        totals = Totals(
            total_views=counters.total_views if counters else 0,
            unique_viewers=counters.unique_views if counters else 0,
            avg_duration=round(counters.avg_duration_seconds, 2) if has_durations else 0.0,
        )

        insights = self.insights.generate(
            WindowAggregates(
                dates=window_days,
                current=[point.count for point in daily_views],
                previous=previous_series,
                avg_duration=counters.avg_duration_seconds if has_durations else None,
                sources=[(share.source, share.count) for share in sources],
            )
        )

        logger.debug(
            "View stats computed",
            product_id=str(product_id),
            days=days,
            window_views=sum(point.count for point in daily_views),
        )
        return ViewStats(
            product_id=product_id,
            days=days,
            totals=totals,
            daily_views=daily_views,
            devices=devices,
            sources=sources,
            geography=geography,
            insights=insights,
        )

    @staticmethod
    def _devices(buckets: Dict[str, Tuple[int, int]]) -> List[DeviceShare]:
        ranked = rank_buckets(buckets)
        percentages = distribute_percentages([count for _, count, _ in ranked])
        return [
            DeviceShare(device=key, count=count, unique_count=unique, percentage=pct)
            for (key, count, unique), pct in zip(ranked, percentages)
        ]

    @staticmethod
    def _sources(buckets: Dict[str, Tuple[int, int]]) -> List[SourceShare]:
        ranked = rank_buckets(buckets)
        percentages = distribute_percentages([count for _, count, _ in ranked])
        return [
            SourceShare(source=key, count=count, percentage=pct)
            for (key, count, _), pct in zip(ranked, percentages)
        ]

    @staticmethod
    def _geography(buckets: Dict[str, Tuple[int, int]]) -> List[CountryShare]:
        ranked = rank_buckets(buckets)
        percentages = distribute_percentages([count for _, count, _ in ranked])
        return [
            CountryShare(country=key, count=count, percentage=pct)
            for (key, count, _), pct in zip(ranked, percentages)
        ]
