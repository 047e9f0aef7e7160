"""
View Ingress

Entry point for view starts and ends: filters crawlers, resolves the viewer
identity, applies the per-viewer token bucket, classifies the request, hands
the event to the Ingestor and then signals the Aggregator and Notifier.

Under backpressure (aggregation queue at or above the shed threshold) the
raw write still happens; the rollup signal and notifications are skipped
and left to reconciliation.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

import structlog
from prometheus_client import Counter

from viewtrack.aggregation.aggregator import RollupAggregator
from viewtrack.clock import SystemClock
from viewtrack.config.settings import TrackingSettings
from viewtrack.errors import NotFound, RateLimited
from viewtrack.ingestion.classifiers import (
    HeaderCountryResolver,
    anonymous_fingerprint,
    classify_device,
    infer_source,
    is_bot,
    referrer_host,
)
from viewtrack.ingestion.ingestor import EndResult, IngestResult, ViewIngestor, ViewStart
from viewtrack.ingestion.rate_limit import TokenBucketLimiter
from viewtrack.serving.notifier import Notifier, NotifierEvent

logger = structlog.get_logger(__name__)


INGRESS_REQUESTS = Counter(
    "viewtrack_ingress_view_starts_total",
    "View start requests by outcome",
    ["outcome"],
)

SHED_EVENTS = Counter(
    "viewtrack_ingress_shed_total",
    "Accepted views whose rollup signal and notifications were shed",
)


@dataclass
class ClientContext:
    """Request metadata the ingress needs"""
    user_id: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class StartOutcome:
    handle: Optional[str]
    ignored: bool = False
    result: Optional[IngestResult] = None
    shed: bool = False


class ViewIngress:
    """
    Example:
        ingress = ViewIngress(ingestor, aggregator, notifier, limiter, secret="...")
        outcome = await ingress.start_view(product_id, ClientContext(user_id="42"))
        await ingress.end_view(outcome.handle, 37.5)
    """

    def __init__(
        self,
        ingestor: ViewIngestor,
        aggregator: RollupAggregator,
        notifier: Notifier,
        limiter: TokenBucketLimiter,
        secret: str,
        tracking: Optional[TrackingSettings] = None,
        country_resolver=None,
        clock=None,
    ):
        self.ingestor = ingestor
        self.aggregator = aggregator
        self.notifier = notifier
        self.limiter = limiter
        self.secret = secret
        self.tracking = tracking or TrackingSettings()
        self.country_resolver = country_resolver or HeaderCountryResolver()
        self.clock = clock or SystemClock()

    async def start_view(
        self,
        product_id: uuid.UUID,
        context: ClientContext,
        source: Optional[str] = None,
        referrer: Optional[str] = None,
        client_ts: Optional[datetime] = None,
    ) -> StartOutcome:
        """
        Record a view start.

        Raises:
            RateLimited: viewer exceeded its token bucket
            NotFound: unknown product
            Unavailable: store still failing after retries
        """
        if self.tracking.exclude_bots and is_bot(context.user_agent):
            INGRESS_REQUESTS.labels(outcome="bot").inc()
            logger.info("Bot view ignored", product_id=str(product_id), user_agent=context.user_agent)
            return StartOutcome(handle=None, ignored=True)

        fingerprint = None
        if not context.user_id:
            fingerprint = anonymous_fingerprint(
                context.client_ip,
                context.user_agent,
                self.secret,
                self.clock.now(),
                self.tracking.fingerprint_salt_rotation_hours,
            )

        host = referrer_host(referrer)
        command = ViewStart(
            product_id=product_id,
            device=classify_device(context.user_agent),
            source=infer_source(source, host),
            user_id=context.user_id,
            fingerprint=fingerprint,
            referrer_host=host,
            country_code=self.country_resolver.resolve(context.headers, context.client_ip),
            client_ts=_naive_utc(client_ts),
        )

        try:
            await self.limiter.acquire(command.viewer_key)
            result = await self.ingestor.record_start(command)
        except RateLimited:
            INGRESS_REQUESTS.labels(outcome="rate_limited").inc()
            raise
        except NotFound:
            INGRESS_REQUESTS.labels(outcome="not_found").inc()
            raise
        INGRESS_REQUESTS.labels(outcome="accepted").inc()

        if self.aggregator.depth >= self.tracking.ingest_queue_shed_threshold:
            SHED_EVENTS.inc()
            logger.warning(
                "Shedding aggregation and notifications",
                event_id=str(result.event_id),
                queue_depth=self.aggregator.depth,
                shed=True,
            )
            return StartOutcome(handle=result.handle, result=result, shed=True)

        self.aggregator.submit(result.event_id)
        if result.total_views is not None:
            count = {"productId": str(product_id), "count": result.total_views}
            await self.notifier.publish(product_id, NotifierEvent.VIEW.value, count)
            await self.notifier.publish(product_id, NotifierEvent.VIEW_COUNT.value, count)

        return StartOutcome(handle=result.handle, result=result)

    async def end_view(self, handle: str, duration_seconds: float) -> EndResult:
        """
        Record the end of a view.

        Raises:
            NotFound: unknown or expired handle
            Conflict: the view was already ended
        """
        return await self.ingestor.record_end(handle, duration_seconds)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
