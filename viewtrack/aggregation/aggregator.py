"""
Rollup Aggregator

Maintains ``agg_daily_views`` and ``agg_view_breakdowns``.

Incremental mode consumes event ids signalled by the Ingestor and applies
each event once (guarded by ``ViewEvent.rolled_up``), one upsert per row.
Reconciliation recomputes the live and previous UTC day from the raw log and
rewrites the counters, correcting drift from shed or failed increments.
Days past the seal horizon are only rewritten through ``reseal``.
"""

import asyncio
import time
import uuid
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple

import structlog
from prometheus_client import Counter, Gauge, Histogram
from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from viewtrack.clock import SystemClock, day_bounds
from viewtrack.config.settings import AggregationSettings, DatabaseSettings
from viewtrack.database.connection import run_in_snapshot, session_scope, upsert_increment, upsert_replace
from viewtrack.database.models import (
    UNKNOWN_COUNTRY,
    BreakdownDimension,
    DailyRollup,
    ProductCounters,
    ViewBreakdown,
    ViewEvent,
)
from viewtrack.resilience import with_deadline

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

ROLLUPS_APPLIED = Counter(
    "viewtrack_rollup_events_applied_total",
    "Events applied to rollups incrementally",
)

AGGREGATION_QUEUE_DEPTH = Gauge(
    "viewtrack_aggregation_queue_depth",
    "Applied-event signals waiting for the rollup worker",
)

RECONCILE_DURATION = Histogram(
    "viewtrack_reconcile_seconds",
    "Time spent in a reconciliation sweep",
    ["mode"],
)

RECONCILE_FAILURES = Counter(
    "viewtrack_reconcile_failures_total",
    "Reconciliation sweeps that raised",
)


_DIMENSION_COLUMNS = (
    (BreakdownDimension.DEVICE, ViewEvent.device),
    (BreakdownDimension.SOURCE, ViewEvent.source),
    (BreakdownDimension.COUNTRY, ViewEvent.country_code),
)


def breakdown_key(value) -> str:
    """Stored key for a device / source / country value."""
    if value is None:
        return UNKNOWN_COUNTRY
    return getattr(value, "value", value)


_unique_sum = func.sum(case((ViewEvent.is_unique.is_(True), 1), else_=0))


class RollupAggregator:
    """
    Daily rollup and breakdown maintenance.

    Example:
        aggregator = RollupAggregator(session_factory)
        aggregator.submit(result.event_id)
        await aggregator.process_pending()
        await aggregator.reconcile()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[AggregationSettings] = None,
        database: Optional[DatabaseSettings] = None,
        clock=None,
    ):
        self.session_factory = session_factory
        self.settings = settings or AggregationSettings()
        self.database = database or DatabaseSettings()
        self.clock = clock or SystemClock()
        self.queue: "asyncio.Queue[uuid.UUID]" = asyncio.Queue()

    # -------------------------------------------------------------------------
    # Incremental mode
    # -------------------------------------------------------------------------

    @property
    def depth(self) -> int:
        return self.queue.qsize()

    def submit(self, event_id: uuid.UUID) -> None:
        """Signal that an event's raw row and counters are written."""
        self.queue.put_nowait(event_id)
        AGGREGATION_QUEUE_DEPTH.set(self.queue.qsize())

    async def apply_event(self, event_id: uuid.UUID) -> bool:
        """
        Add one event to its day rollup and breakdown rows.

        Returns:
            False when the event was already rolled up
        """
        async def _apply() -> bool:
            async with session_scope(self.session_factory) as db:
                claimed = await db.execute(
                    update(ViewEvent)
                    .where(ViewEvent.event_id == event_id, ViewEvent.rolled_up.is_(False))
                    .values(rolled_up=True)
                    .returning(
                        ViewEvent.product_id,
                        ViewEvent.created_at,
                        ViewEvent.is_unique,
                        ViewEvent.device,
                        ViewEvent.source,
                        ViewEvent.country_code,
                    )
                    .execution_options(synchronize_session=False)
                )
                row = claimed.first()
                if row is None:
                    return False

                product_id, created_at, is_unique, device, source, country = row
                day = created_at.date()
                increments = {"view_count": 1, "unique_count": 1 if is_unique else 0}

                await upsert_increment(
                    db, DailyRollup, keys={"product_id": product_id, "day": day}, increments=increments
                )
                for dimension, value in (
                    (BreakdownDimension.DEVICE, device),
                    (BreakdownDimension.SOURCE, source),
                    (BreakdownDimension.COUNTRY, country),
                ):
                    await upsert_increment(
                        db,
                        ViewBreakdown,
                        keys={
                            "product_id": product_id,
                            "day": day,
                            "dimension": dimension,
                            "key": breakdown_key(value),
                        },
                        increments=increments,
                    )
                return True

        applied = await with_deadline(_apply(), self.database.write_timeout_seconds)
        if applied:
            ROLLUPS_APPLIED.inc()
        return applied

    async def process_pending(self) -> int:
        """Drain the signal queue without blocking. Returns events applied."""
        applied = 0
        while not self.queue.empty():
            event_id = self.queue.get_nowait()
            try:
                if await self.apply_event(event_id):
                    applied += 1
            except Exception as e:
                logger.error("Rollup apply failed", event_id=str(event_id), error=str(e))
            finally:
                self.queue.task_done()
        AGGREGATION_QUEUE_DEPTH.set(self.queue.qsize())
        return applied

    async def run(self) -> None:
        """Rollup worker: apply signalled events until cancelled."""
        logger.info("Rollup worker started")
        try:
            while True:
                event_id = await self.queue.get()
                try:
                    await self.apply_event(event_id)
                except Exception as e:
                    # Left for reconciliation
                    logger.error("Rollup apply failed", event_id=str(event_id), error=str(e))
                finally:
                    self.queue.task_done()
                    AGGREGATION_QUEUE_DEPTH.set(self.queue.qsize())
        finally:
            logger.info("Rollup worker stopped")

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    def is_sealed(self, day: date, now: Optional[datetime] = None) -> bool:
        """A day is sealed once its end is more than the seal horizon in the past."""
        now = now or self.clock.now()
        _, end = day_bounds(day)
        return now - end > timedelta(hours=self.settings.seal_after_hours)

    async def reconcile(self) -> Dict[str, int]:
        """
        Recompute the live and previous day and rewrite affected counters.

        Returns:
            Summary with days rewritten and products touched
        """
        started = time.perf_counter()
        now = self.clock.now()
        today = now.date()
        touched: Set[uuid.UUID] = set()
        days_rewritten = 0

        for day in (today - timedelta(days=1), today):
            if self.is_sealed(day, now):
                logger.debug("Skipping sealed day", day=day.isoformat())
                continue
            touched |= await self._rebuild_day(day)
            days_rewritten += 1

        await self.reconcile_counters(touched)
        RECONCILE_DURATION.labels(mode="sweep").observe(time.perf_counter() - started)
        logger.info(
            "Reconciliation completed",
            days=days_rewritten,
            products=len(touched),
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return {"days": days_rewritten, "products": len(touched)}

    async def reseal(self, product_id: uuid.UUID, day: date) -> Dict[str, int]:
        """
        Rebuild one product-day from the raw log, sealed or not.

        Returns:
            The rebuilt ``view_count`` and ``unique_count``
        """
        started = time.perf_counter()
        await self._rebuild_day(day, product_id=product_id)
        await self.reconcile_counters({product_id})

        async with session_scope(self.session_factory) as db:
            row = await db.get(DailyRollup, (product_id, day))
        RECONCILE_DURATION.labels(mode="reseal").observe(time.perf_counter() - started)

        result = {
            "view_count": row.view_count if row else 0,
            "unique_count": row.unique_count if row else 0,
        }
        logger.info(
            "Day resealed",
            product_id=str(product_id),
            day=day.isoformat(),
            sealed=self.is_sealed(day),
            **result,
        )
        return result

    async def backfill(self, start: date, end: date) -> Dict[str, int]:
        """Rebuild every day in ``[start, end]`` for all products, sealed or not."""
        started = time.perf_counter()
        touched: Set[uuid.UUID] = set()
        day = start
        days = 0
        while day <= end:
            touched |= await self._rebuild_day(day)
            day += timedelta(days=1)
            days += 1

        await self.reconcile_counters(touched)
        RECONCILE_DURATION.labels(mode="backfill").observe(time.perf_counter() - started)
        logger.info("Backfill completed", start=start.isoformat(), end=end.isoformat(), products=len(touched))
        return {"days": days, "products": len(touched)}

    async def _rebuild_day(self, day: date, product_id: Optional[uuid.UUID] = None) -> Set[uuid.UUID]:
        start, end = day_bounds(day)
        in_day = [ViewEvent.created_at >= start, ViewEvent.created_at < end]
        if product_id is not None:
            in_day.append(ViewEvent.product_id == product_id)

        async def _rebuild(db: AsyncSession) -> list:
            await db.execute(
                update(ViewEvent)
                .where(*in_day, ViewEvent.rolled_up.is_(False))
                .values(rolled_up=True)
                .execution_options(synchronize_session=False)
            )

            daily = (
                await db.execute(
                    select(ViewEvent.product_id, func.count(), _unique_sum)
                    .where(*in_day)
                    .group_by(ViewEvent.product_id)
                )
            ).all()

            breakdowns: List[Tuple[uuid.UUID, BreakdownDimension, str, int, int]] = []
            for dimension, column in _DIMENSION_COLUMNS:
                rows = (
                    await db.execute(
                        select(ViewEvent.product_id, column, func.count(), _unique_sum)
                        .where(*in_day)
                        .group_by(ViewEvent.product_id, column)
                    )
                ).all()
                breakdowns.extend(
                    (pid, dimension, breakdown_key(value), count, int(uniques or 0))
                    for pid, value, count, uniques in rows
                )

            # Rows for products with no events left that day go away
            stale_daily = delete(DailyRollup).where(DailyRollup.day == day)
            stale_breakdowns = delete(ViewBreakdown).where(ViewBreakdown.day == day)
            if product_id is not None:
                stale_daily = stale_daily.where(DailyRollup.product_id == product_id)
                stale_breakdowns = stale_breakdowns.where(ViewBreakdown.product_id == product_id)
            await db.execute(stale_daily)
            await db.execute(stale_breakdowns)

            for pid, count, uniques in daily:
                await upsert_replace(
                    db,
                    DailyRollup,
                    keys={"product_id": pid, "day": day},
                    values={"view_count": count, "unique_count": int(uniques or 0)},
                )
            for pid, dimension, key, count, uniques in breakdowns:
                await upsert_replace(
                    db,
                    ViewBreakdown,
                    keys={"product_id": pid, "day": day, "dimension": dimension, "key": key},
                    values={"view_count": count, "unique_count": uniques},
                )
            return daily

        daily = await run_in_snapshot(self.session_factory, _rebuild, name="rebuild_day")
        touched = {pid for pid, _, _ in daily}
        if product_id is not None:
            touched.add(product_id)
        logger.debug("Day rebuilt", day=day.isoformat(), products=len(touched))
        return touched

    async def reconcile_counters(self, product_ids: Iterable[uuid.UUID]) -> int:
        """Rewrite ``ProductCounters`` for the given products from the raw log."""
        product_ids = list(product_ids)
        if not product_ids:
            return 0

        now = self.clock.now()

        async def _reconcile(db: AsyncSession) -> None:
            await db.execute(
                update(ViewEvent)
                .where(ViewEvent.product_id.in_(product_ids), ViewEvent.counters_applied.is_(False))
                .values(counters_applied=True)
                .execution_options(synchronize_session=False)
            )
            rows = (
                await db.execute(
                    select(
                        ViewEvent.product_id,
                        func.count(),
                        _unique_sum,
                        func.avg(ViewEvent.duration_seconds),
                        func.count(ViewEvent.duration_seconds),
                    )
                    .where(ViewEvent.product_id.in_(product_ids))
                    .group_by(ViewEvent.product_id)
                )
            ).all()

            totals = defaultdict(lambda: (0, 0, 0.0, 0))
            for pid, count, uniques, avg_duration, samples in rows:
                totals[pid] = (count, int(uniques or 0), float(avg_duration or 0.0), samples)

            for pid in product_ids:
                count, uniques, avg_duration, samples = totals[pid]
                await upsert_replace(
                    db,
                    ProductCounters,
                    keys={"product_id": pid},
                    values={
                        "total_views": count,
                        "unique_views": uniques,
                        "avg_duration_seconds": avg_duration,
                        "duration_samples": samples,
                        "updated_at": now,
                    },
                )

        await run_in_snapshot(self.session_factory, _reconcile, name="reconcile_counters")
        return len(product_ids)

    async def run_reconciliation(self) -> None:
        """Periodic reconciliation loop; errors are logged and retried next run."""
        interval = self.settings.reconcile_interval_seconds
        logger.info("Reconciliation loop started", interval_seconds=interval)
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    await self.reconcile()
                except Exception as e:
                    RECONCILE_FAILURES.inc()
                    logger.error("Reconciliation failed", error=str(e), exc_info=True)
        finally:
            logger.info("Reconciliation loop stopped")
