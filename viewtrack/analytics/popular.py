"""
Popular products ranking from the daily rollups, cached in Redis.
"""

from datetime import timedelta
from typing import List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from viewtrack.analytics.history import product_summary
from viewtrack.analytics.schemas import PopularProduct
from viewtrack.clock import SystemClock
from viewtrack.config.settings import DatabaseSettings
from viewtrack.database.connection import session_scope
from viewtrack.database.models import DailyRollup, Product
from viewtrack.errors import BadRequest
from viewtrack.resilience import guarded
from viewtrack.serving.cache import CacheManager

logger = structlog.get_logger(__name__)

CACHE_TTL_SECONDS = 300


class PopularProductsService:
    """Most viewed products over the last N UTC days"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Optional[CacheManager] = None,
        database: Optional[DatabaseSettings] = None,
        clock=None,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.database = database or DatabaseSettings()
        self.clock = clock or SystemClock()

    async def get_popular(self, days: int = 7, limit: int = 10) -> List[PopularProduct]:
        if not 1 <= days <= 365:
            raise BadRequest("days must be between 1 and 365")
        if not 1 <= limit <= 50:
            raise BadRequest("limit must be between 1 and 50")

        today = self.clock.today()

        async def _compute() -> list:
            ranking = await guarded(
                self._rank(today - timedelta(days=days - 1), limit),
                name="popular_products",
                timeout=self.database.read_timeout_seconds,
            )
            return [item.model_dump(mode="json") for item in ranking]

        if self.cache is None:
            payload = await _compute()
        else:
            payload = await self.cache.get_or_set(
                f"{today.isoformat()}:{days}:{limit}", _compute, ttl=CACHE_TTL_SECONDS
            )
        return [PopularProduct.model_validate(item) for item in payload]

    async def _rank(self, since, limit: int) -> List[PopularProduct]:
        views = func.sum(DailyRollup.view_count).label("views")
        uniques = func.sum(DailyRollup.unique_count).label("uniques")
        ranked = (
            select(DailyRollup.product_id, views, uniques)
            .where(DailyRollup.day >= since)
            .group_by(DailyRollup.product_id)
            .subquery()
        )

        async with session_scope(self.session_factory) as db:
            rows = (
                await db.execute(
                    select(ranked.c.product_id, ranked.c.views, ranked.c.uniques, Product)
                    .outerjoin(Product, Product.product_id == ranked.c.product_id)
                    .where(ranked.c.views > 0)
                    .order_by(ranked.c.views.desc(), ranked.c.product_id)
                    .limit(limit)
                )
            ).all()

        logger.debug("Popular products ranked", since=since.isoformat(), results=len(rows))
        return [
            PopularProduct(
                product_id=product_id,
                views=int(total or 0),
                unique_views=int(unique or 0),
                product=product_summary(product),
            )
            for product_id, total, unique, product in rows
        ]
