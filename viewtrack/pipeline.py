"""
Service container for the view pipeline.

Wires the ingress, ingestor, aggregator, read services and notifier over a
shared session factory and Redis client, and owns the background tasks that
run inside the API process.
"""

import asyncio
from datetime import timedelta
from typing import List, Optional

import structlog
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from viewtrack.aggregation.aggregator import RollupAggregator
from viewtrack.analytics.history import HistoryService
from viewtrack.analytics.popular import CACHE_TTL_SECONDS, PopularProductsService
from viewtrack.analytics.related import CACHE_TTL_SECONDS as RELATED_CACHE_TTL_SECONDS
from viewtrack.analytics.related import RelatedProductsService
from viewtrack.analytics.stats import ViewStatsService
from viewtrack.clock import SystemClock
from viewtrack.config.settings import Settings, get_settings
from viewtrack.ingestion.dedup import DedupStore
from viewtrack.ingestion.ingestor import ViewIngestor
from viewtrack.ingestion.ingress import ViewIngress
from viewtrack.ingestion.rate_limit import TokenBucketLimiter
from viewtrack.serving.cache import CacheManager
from viewtrack.serving.notifier import Notifier, RedisRelay, TopicHub

logger = structlog.get_logger(__name__)


class ViewPipeline:
    """
    All pipeline services for one process.

    Example:
        pipeline = ViewPipeline(session_factory, redis)
        pipeline.start()
        ...
        await pipeline.stop()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: Redis,
        settings: Optional[Settings] = None,
        clock=None,
        sleep=None,
        country_resolver=None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.redis = redis
        self.clock = clock or SystemClock()

        tracking = self.settings.tracking
        database = self.settings.database

        self.dedup = DedupStore(redis, window=timedelta(hours=tracking.dedup_window_hours))
        self.ingestor = ViewIngestor(
            session_factory,
            self.dedup,
            tracking=tracking,
            database=database,
            clock=self.clock,
            sleep=sleep,
        )
        self.aggregator = RollupAggregator(
            session_factory,
            settings=self.settings.aggregation,
            database=database,
            clock=self.clock,
        )

        self.hub = TopicHub(self.settings.notifier)
        self.relay = (
            RedisRelay(redis, self.hub, self.settings.notifier, sleep=sleep)
            if self.settings.notifier.redis_relay_enabled
            else None
        )
        self.notifier = Notifier(self.hub, self.relay)

        self.limiter = TokenBucketLimiter(
            redis,
            rate_per_minute=tracking.rate_per_minute,
            burst=tracking.burst,
            clock=self.clock,
            timeout=database.read_timeout_seconds,
        )
        self.ingress = ViewIngress(
            self.ingestor,
            self.aggregator,
            self.notifier,
            self.limiter,
            secret=self.settings.security.secret_key.get_secret_value(),
            tracking=tracking,
            country_resolver=country_resolver,
            clock=self.clock,
        )

        self.history = HistoryService(session_factory, database=database, clock=self.clock)
        self.stats = ViewStatsService(session_factory, database=database, clock=self.clock)
        self.popular = PopularProductsService(
            session_factory,
            cache=CacheManager(redis, "popular", default_ttl=CACHE_TTL_SECONDS),
            database=database,
            clock=self.clock,
        )
        self.related = RelatedProductsService(
            session_factory,
            cache=CacheManager(redis, "related", default_ttl=RELATED_CACHE_TTL_SECONDS),
            database=database,
            clock=self.clock,
        )

        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Start the rollup worker, reconciliation loop and relay listener."""
        if self._tasks:
            return
        self._tasks.append(asyncio.create_task(self.aggregator.run(), name="rollup-worker"))
        self._tasks.append(asyncio.create_task(self.aggregator.run_reconciliation(), name="reconciliation"))
        if self.relay is not None:
            self._tasks.append(asyncio.create_task(self.relay.run(), name="notifier-relay"))
        logger.info("Background tasks started", tasks=[task.get_name() for task in self._tasks])

    async def stop(self) -> None:
        """Cancel background tasks and close every subscription."""
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self.hub.close()
        logger.info("Background tasks stopped")
