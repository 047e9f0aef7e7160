"""
Prefect Workflow Orchestration - View Reconciliation

Scheduled rollup maintenance outside the API process:
- Reconcile the live and previous day against the raw log
- Reseal a sealed product-day on demand
- Backfill rollups over a date range
"""

from contextlib import asynccontextmanager
from datetime import date, timedelta
from typing import Optional
from uuid import UUID

from prefect import flow, task, get_run_logger

from viewtrack.clock import SystemClock
from viewtrack.config import get_settings
from viewtrack.config.logging import configure_logging
from viewtrack.database.connection import close_database, get_session_factory, init_database
from viewtrack.pipeline import ViewPipeline
from viewtrack.serving.cache import close_redis, init_redis

settings = get_settings()


@asynccontextmanager
async def pipeline_scope():
    """Pipeline over fresh store connections, without background tasks."""
    configure_logging()
    await init_database()
    redis = await init_redis()
    try:
        yield ViewPipeline(get_session_factory(), redis, settings=settings)
    finally:
        await close_redis()
        await close_database()


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="reconcile_rollups",
    description="Recompute unsealed days and product counters from the raw log",
    retries=3,
    retry_delay_seconds=60,
)
async def reconcile_rollups() -> dict:
    logger = get_run_logger()

    async with pipeline_scope() as pipeline:
        summary = await pipeline.aggregator.reconcile()

    logger.info(f"Reconciled {summary['days']} days across {summary['products']} products")
    return summary


@task(
    name="reseal_product_day",
    description="Rebuild one sealed product-day",
    retries=2,
    retry_delay_seconds=30,
)
async def reseal_product_day(product_id: str, day: str) -> dict:
    logger = get_run_logger()

    async with pipeline_scope() as pipeline:
        result = await pipeline.aggregator.reseal(UUID(product_id), date.fromisoformat(day))

    logger.info(f"Resealed {product_id} on {day}: {result['view_count']} views")
    return {"product_id": product_id, "date": day, **result}


@task(
    name="backfill_rollups",
    description="Rebuild rollups for a date range",
    retries=1,
    retry_delay_seconds=300,
)
async def backfill_rollups(start: str, end: str) -> dict:
    logger = get_run_logger()

    async with pipeline_scope() as pipeline:
        summary = await pipeline.aggregator.backfill(date.fromisoformat(start), date.fromisoformat(end))

    logger.info(f"Backfilled {summary['days']} days across {summary['products']} products")
    return summary


@task(
    name="send_alert",
    description="Send alert notification",
)
async def send_alert(
    alert_type: str,
    message: str,
    severity: str = "info",
) -> None:
    logger = get_run_logger()
    logger.warning(f"[{severity.upper()}] {alert_type}: {message}")


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="reconcile_views",
    description="Hourly reconciliation of view rollups and counters",
    retries=1,
    retry_delay_seconds=300,
)
async def reconcile_views() -> dict:
    """
    Hourly reconciliation.

    Corrects drift left by shed events, failed counter updates and late
    writes for days that are not yet sealed.
    """
    logger = get_run_logger()
    logger.info(f"Starting view reconciliation at {SystemClock().now().isoformat()}")

    try:
        summary = await reconcile_rollups()
    except Exception as e:
        await send_alert(
            alert_type="Reconciliation Failed",
            message=f"View reconciliation failed: {e}",
            severity="critical",
        )
        raise

    return {"status": "success", **summary}


@flow(
    name="reseal_day",
    description="Operator-initiated rebuild of a sealed product-day",
)
async def reseal_day(product_id: str, day: Optional[str] = None) -> dict:
    day = day or (SystemClock().now().date() - timedelta(days=3)).isoformat()
    return await reseal_product_day(product_id, day)


@flow(
    name="backfill_views",
    description="Rebuild view rollups over a date range",
)
async def backfill_views(start: Optional[str] = None, end: Optional[str] = None) -> dict:
    today = SystemClock().now().date()
    start = start or (today - timedelta(days=30)).isoformat()
    end = end or today.isoformat()
    return await backfill_rollups(start, end)


# =============================================================================
# DEPLOYMENT CONFIGURATION
# =============================================================================

if __name__ == "__main__":
    import asyncio

    asyncio.run(reconcile_views())
