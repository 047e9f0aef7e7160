"""
Related products from co-views.

Two products are related when the same signed-in users viewed both. Over the
last 30 days we take the product's most recent distinct viewers (at most
1000) from ``user_view_index`` and rank the other products they viewed by how
many of those viewers they share. Only authenticated, non-crawler views reach
the index, so anonymous and bot traffic never counts.
"""

from datetime import timedelta
from typing import List, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from viewtrack.analytics.history import product_summary
from viewtrack.analytics.schemas import RelatedProduct
from viewtrack.clock import SystemClock
from viewtrack.config.settings import DatabaseSettings
from viewtrack.database.connection import session_scope
from viewtrack.database.models import Product, UserViewIndex
from viewtrack.errors import BadRequest
from viewtrack.resilience import guarded
from viewtrack.serving.cache import CacheManager

logger = structlog.get_logger(__name__)

CACHE_TTL_SECONDS = 7200
WINDOW_DAYS = 30
MAX_VIEWERS = 1000
MAX_LIMIT = 15


class RelatedProductsService:
    """Products most often co-viewed with a given product"""

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

    async def get_related(self, product_id: UUID, limit: int = 5) -> List[RelatedProduct]:
        """
        Rank co-viewed products by shared viewers, strongest first.

        Empty results are not cached, so a product's first co-views show up
        without waiting for the cache to expire.

        Raises:
            BadRequest: ``limit`` outside 1..15
        """
        if not 1 <= limit <= MAX_LIMIT:
            raise BadRequest(f"limit must be between 1 and {MAX_LIMIT}")

        key = f"{product_id}:{limit}"
        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                return [RelatedProduct.model_validate(item) for item in cached]

        since = self.clock.now() - timedelta(days=WINDOW_DAYS)
        related = await guarded(
            self._rank(product_id, since, limit),
            name="related_products",
            timeout=self.database.read_timeout_seconds,
        )

        if self.cache is not None and related:
            await self.cache.set(key, [item.model_dump(mode="json") for item in related], ttl=CACHE_TTL_SECONDS)
        return related

    async def _rank(self, product_id: UUID, since, limit: int) -> List[RelatedProduct]:
        viewers = (
            select(UserViewIndex.user_id)
            .where(UserViewIndex.product_id == product_id, UserViewIndex.created_at >= since)
            .group_by(UserViewIndex.user_id)
            .order_by(func.max(UserViewIndex.created_at).desc())
            .limit(MAX_VIEWERS)
            .subquery()
        )
        strength = func.count(func.distinct(UserViewIndex.user_id)).label("strength")
        co_viewed = (
            select(UserViewIndex.product_id, strength)
            .where(
                UserViewIndex.user_id.in_(select(viewers.c.user_id)),
                UserViewIndex.product_id != product_id,
                UserViewIndex.created_at >= since,
            )
            .group_by(UserViewIndex.product_id)
            .subquery()
        )

        async with session_scope(self.session_factory) as db:
            rows = (
                await db.execute(
                    select(co_viewed.c.product_id, co_viewed.c.strength, Product)
                    .join(Product, Product.product_id == co_viewed.c.product_id)
                    .where(Product.status == "published")
                    .order_by(co_viewed.c.strength.desc(), co_viewed.c.product_id)
                    .limit(limit)
                )
            ).all()

        logger.debug("Related products ranked", product_id=str(product_id), results=len(rows))
        return [
            RelatedProduct(
                product_id=related_id,
                relation_strength=int(shared),
                product=product_summary(product),
            )
            for related_id, shared, product in rows
        ]
