"""
Demo Data Seeder
Creates a product catalog and replays synthetic view traffic through the
real ingress, then rebuilds rollups for the seeded range.

Usage:
    python scripts/seed_views.py --products 25 --days 45 --visits-per-day 300
"""

import argparse
import asyncio
import random
from datetime import datetime, timedelta

from faker import Faker

from viewtrack.clock import SystemClock
from viewtrack.config import get_settings
from viewtrack.config.logging import configure_logging
from viewtrack.data.generators import ProductGenerator, VisitGenerator
from viewtrack.database.connection import (
    close_database,
    get_session_factory,
    init_database,
    session_scope,
)
from viewtrack.errors import ViewTrackingError
from viewtrack.ingestion.ingress import ClientContext
from viewtrack.pipeline import ViewPipeline
from viewtrack.serving.cache import close_redis, init_redis

random.seed(42)
Faker.seed(42)


class ReplayClock(SystemClock):
    """Clock pinned to the visit being replayed"""

    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current


async def seed(products: int, days: int, visits_per_day: int) -> None:
    configure_logging()
    settings = get_settings()

    await init_database(create_schema=True)
    redis = await init_redis()
    factory = get_session_factory()

    catalog = ProductGenerator().generate(products)
    async with session_scope(factory) as db:
        db.add_all(catalog)
    print(f"📦 Created {len(catalog):,} products")

    now = SystemClock().now()
    start = (now - timedelta(days=days)).replace(hour=0, minute=0, second=0, microsecond=0)
    clock = ReplayClock(start)
    pipeline = ViewPipeline(factory, redis, settings=settings, clock=clock)

    visits = VisitGenerator([product.product_id for product in catalog]).generate(start, days + 1, visits_per_day)
    visits = [visit for visit in visits if visit.at <= now]
    print(f"📊 Replaying {len(visits):,} visits over {days} days...")

    accepted = rejected = 0
    for i, visit in enumerate(visits):
        clock.current = visit.at
        headers = {"CF-IPCountry": visit.country} if visit.country else {}
        context = ClientContext(
            user_id=visit.user_id,
            client_ip=visit.client_ip,
            user_agent=visit.user_agent,
            headers=headers,
        )
        try:
            outcome = await pipeline.ingress.start_view(
                visit.product_id, context, source=visit.source, referrer=visit.referrer
            )
            if visit.duration_seconds is not None and outcome.handle:
                await pipeline.ingress.end_view(outcome.handle, visit.duration_seconds)
            accepted += 1
        except ViewTrackingError:
            rejected += 1

        if i % 500 == 0:
            await pipeline.aggregator.process_pending()

    await pipeline.aggregator.process_pending()
    summary = await pipeline.aggregator.backfill(start.date(), now.date())

    print(f"   ✅ {accepted:,} views accepted, {rejected:,} rejected")
    print(f"   ✅ Rollups rebuilt for {summary['days']} days, {summary['products']} products")

    await close_redis()
    await close_database()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed demo products and view traffic")
    parser.add_argument("--products", type=int, default=20)
    parser.add_argument("--days", type=int, default=30)
    parser.add_argument("--visits-per-day", type=int, default=200)
    args = parser.parse_args()

    asyncio.run(seed(args.products, args.days, args.visits_per_day))


if __name__ == "__main__":
    main()
