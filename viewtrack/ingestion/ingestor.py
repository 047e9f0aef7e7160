"""
View Ingestor

Persists raw view events, decides uniqueness, and applies the per-product
counters.

The raw event and its user-index row are written in one transaction before
anything else happens. Counter application is a separate, idempotent step
keyed by event id (``counters_applied``), so a failed counter update never
loses the raw event and a retry never double counts. Reconciliation repairs
whatever is left unapplied.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import structlog
from prometheus_client import Counter
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from viewtrack.clock import SystemClock
from viewtrack.config.settings import DatabaseSettings, TrackingSettings
from viewtrack.database.connection import dialect_insert, session_scope, upsert_increment
from viewtrack.database.models import (
    DeviceType,
    Product,
    ProductCounters,
    UserViewIndex,
    ViewEvent,
    ViewSource,
)
from viewtrack.errors import BadRequest, Conflict, NotFound, Unavailable
from viewtrack.ingestion.dedup import DedupStore
from viewtrack.resilience import guarded, retry_transient

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

EVENTS_WRITTEN = Counter(
    "viewtrack_events_written_total",
    "Raw view events persisted",
    ["unique"],
)

COUNTER_FAILURES = Counter(
    "viewtrack_counter_apply_failures_total",
    "Counter applications left for reconciliation",
)

VIEW_ENDS = Counter(
    "viewtrack_view_ends_total",
    "End-of-view submissions",
    ["outcome"],
)


# =============================================================================
# COMMANDS AND RESULTS
# =============================================================================

@dataclass
class ViewStart:
    """A classified view start ready to persist"""
    product_id: uuid.UUID
    device: DeviceType
    source: ViewSource
    user_id: Optional[str] = None
    fingerprint: Optional[str] = None
    referrer_host: Optional[str] = None
    country_code: Optional[str] = None
    client_ts: Optional[datetime] = None
    event_id: uuid.UUID = field(default_factory=uuid.uuid4)

    @property
    def viewer_key(self) -> str:
        if self.user_id:
            return f"u:{self.user_id}"
        if self.fingerprint:
            return f"a:{self.fingerprint}"
        raise BadRequest("View has neither a user id nor a fingerprint")

    @property
    def authenticated(self) -> bool:
        return bool(self.user_id)


@dataclass
class IngestResult:
    """Outcome of a persisted view start"""
    event_id: uuid.UUID
    product_id: uuid.UUID
    created_at: datetime
    is_unique: bool
    counters_applied: bool
    total_views: Optional[int] = None

    @property
    def handle(self) -> str:
        return str(self.event_id)


@dataclass
class EndResult:
    """Outcome of a view end that was applied"""
    event_id: uuid.UUID
    product_id: uuid.UUID
    duration_seconds: float


# =============================================================================
# INGESTOR
# =============================================================================

class ViewIngestor:
    """
    Writes raw view events and maintains ``ProductCounters``.

    Example:
        ingestor = ViewIngestor(session_factory, dedup)
        result = await ingestor.record_start(ViewStart(product_id=pid, ...))
        await ingestor.record_end(result.handle, 42.0)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dedup: DedupStore,
        tracking: Optional[TrackingSettings] = None,
        database: Optional[DatabaseSettings] = None,
        clock=None,
        sleep=None,
    ):
        self.session_factory = session_factory
        self.dedup = dedup
        self.tracking = tracking or TrackingSettings()
        self.database = database or DatabaseSettings()
        self.clock = clock or SystemClock()
        self._retry_kwargs = {
            "attempts": self.tracking.retry_attempts,
            "base_delay": self.tracking.retry_base_delay_seconds,
            "timeout": self.database.write_timeout_seconds,
        }
        if sleep is not None:
            self._retry_kwargs["sleep"] = sleep

    # -------------------------------------------------------------------------
    # View start
    # -------------------------------------------------------------------------

    async def product_exists(self, product_id: uuid.UUID) -> bool:
        async def _lookup() -> bool:
            async with session_scope(self.session_factory) as db:
                found = await db.scalar(
                    select(Product.product_id).where(Product.product_id == product_id)
                )
                return found is not None

        return await guarded(_lookup(), name="product_lookup", timeout=self.database.read_timeout_seconds)

    async def record_start(self, command: ViewStart) -> IngestResult:
        """
        Persist a view start.

        Raises:
            NotFound: unknown product
            Unavailable: store still failing after retries
        """
        if not await self.product_exists(command.product_id):
            raise NotFound("Product not found", product_id=str(command.product_id))

        created_at = self.clock.now()
        viewer_key = command.viewer_key
        is_unique = await self._claim_unique(command, viewer_key, created_at)

        event = {
            "event_id": command.event_id,
            "product_id": command.product_id,
            "user_id": command.user_id,
            "fingerprint": None if command.authenticated else command.fingerprint,
            "viewer_key": viewer_key,
            "created_at": created_at,
            "client_ts": command.client_ts,
            "device": command.device,
            "source": command.source,
            "referrer_host": command.referrer_host,
            "country_code": command.country_code,
            "is_unique": is_unique,
        }

        try:
            await retry_transient(lambda: self._write_raw(event), name="raw_event_write", **self._retry_kwargs)
        except Unavailable:
            if is_unique:
                await self._release_unique(command, viewer_key, created_at)
            raise
        EVENTS_WRITTEN.labels(unique=str(is_unique).lower()).inc()

        result = IngestResult(
            event_id=command.event_id,
            product_id=command.product_id,
            created_at=created_at,
            is_unique=is_unique,
            counters_applied=False,
        )

        try:
            result.total_views = await retry_transient(
                lambda: self.apply_counters(command.event_id),
                name="counter_apply",
                **self._retry_kwargs,
            )
            result.counters_applied = True
        except Unavailable as e:
            # Raw event is durable; reconciliation will apply the counters
            COUNTER_FAILURES.inc()
            logger.error(
                "Counter application failed",
                event_id=str(command.event_id),
                product_id=str(command.product_id),
                error=str(e),
            )

        logger.info(
            "View recorded",
            event_id=str(command.event_id),
            product_id=str(command.product_id),
            unique=is_unique,
            authenticated=command.authenticated,
        )
        return result

    async def _claim_unique(self, command: ViewStart, viewer_key: str, at: datetime) -> bool:
        if self.tracking.authenticated_only_uniqueness and not command.authenticated:
            return False
        return await retry_transient(
            lambda: self.dedup.claim(command.product_id, viewer_key, at, claimant=str(command.event_id)),
            name="dedup_claim",
            **self._retry_kwargs,
        )

    async def _release_unique(self, command: ViewStart, viewer_key: str, at: datetime) -> None:
        """Hand the unique slot back when the view never reached the store."""
        try:
            await retry_transient(
                lambda: self.dedup.release(command.product_id, viewer_key, at, str(command.event_id)),
                name="dedup_release",
                **self._retry_kwargs,
            )
        except Unavailable as e:
            # The raw write error is the one the caller needs; the claim lapses with its TTL
            logger.error(
                "Dedup release failed",
                event_id=str(command.event_id),
                product_id=str(command.product_id),
                error=str(e),
            )

    async def _write_raw(self, event: dict) -> None:
        async with session_scope(self.session_factory) as db:
            # A timed-out attempt may still have committed
            if await db.get(ViewEvent, event["event_id"]) is not None:
                return
            db.add(ViewEvent(**event, counters_applied=False, rolled_up=False))
            if event["user_id"]:
                db.add(
                    UserViewIndex(
                        user_id=event["user_id"],
                        event_id=event["event_id"],
                        product_id=event["product_id"],
                        created_at=event["created_at"],
                    )
                )

    async def apply_counters(self, event_id: uuid.UUID) -> Optional[int]:
        """
        Apply one event to ``ProductCounters`` exactly once.

        Returns:
            The product's total views afterwards, or None if the event was
            already applied (or does not exist)
        """
        async with session_scope(self.session_factory) as db:
            return await apply_event_counters(db, event_id, self.clock.now())

    # -------------------------------------------------------------------------
    # View end
    # -------------------------------------------------------------------------

    async def record_end(self, handle: str, duration_seconds: float) -> EndResult:
        """
        Store the duration of a view, at most once.

        Raises:
            NotFound: unknown or expired handle
            Conflict: the view already has a duration
        """
        event_id = parse_handle(handle)
        duration = min(max(float(duration_seconds), 0.0), self.tracking.max_duration_seconds)
        now = self.clock.now()

        async def _apply() -> EndResult:
            async with session_scope(self.session_factory) as db:
                return await self._end_in_session(db, event_id, duration, now)

        return await retry_transient(_apply, name="view_end", **self._retry_kwargs)

    async def _end_in_session(
        self,
        db: AsyncSession,
        event_id: uuid.UUID,
        duration: float,
        now: datetime,
    ) -> EndResult:
        event = await db.get(ViewEvent, event_id)
        if event is None:
            VIEW_ENDS.labels(outcome="not_found").inc()
            raise NotFound("View handle not found", handle=str(event_id))
        if now - event.created_at > timedelta(seconds=self.tracking.handle_ttl_seconds):
            VIEW_ENDS.labels(outcome="expired").inc()
            logger.info("View end after handle expiry dropped", event_id=str(event_id))
            raise NotFound("View handle expired", handle=str(event_id))

        applied = await db.execute(
            update(ViewEvent)
            .where(ViewEvent.event_id == event_id, ViewEvent.duration_seconds.is_(None))
            .values(duration_seconds=duration, ended_at=now)
            .execution_options(synchronize_session=False)
        )
        if applied.rowcount != 1:
            VIEW_ENDS.labels(outcome="duplicate").inc()
            await db.refresh(event)
            raise Conflict(
                "View already ended",
                handle=str(event_id),
                duration_seconds=event.duration_seconds,
            )

        await add_duration_sample(db, event.product_id, duration, now)
        VIEW_ENDS.labels(outcome="applied").inc()
        logger.info(
            "View ended",
            event_id=str(event_id),
            product_id=str(event.product_id),
            duration_seconds=duration,
        )
        return EndResult(event_id=event_id, product_id=event.product_id, duration_seconds=duration)


# =============================================================================
# COUNTER STATEMENTS
# =============================================================================

def parse_handle(handle: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(handle))
    except ValueError:
        raise NotFound("View handle not found", handle=str(handle)) from None


async def apply_event_counters(db: AsyncSession, event_id: uuid.UUID, now: datetime) -> Optional[int]:
    """Flip ``counters_applied`` and increment counters in the caller's transaction."""
    claimed = await db.execute(
        update(ViewEvent)
        .where(ViewEvent.event_id == event_id, ViewEvent.counters_applied.is_(False))
        .values(counters_applied=True)
        .returning(ViewEvent.product_id, ViewEvent.is_unique)
        .execution_options(synchronize_session=False)
    )
    row = claimed.first()
    if row is None:
        return None

    product_id, is_unique = row
    await upsert_increment(
        db,
        ProductCounters,
        keys={"product_id": product_id},
        increments={"total_views": 1, "unique_views": 1 if is_unique else 0},
        extra_set={"updated_at": now},
    )
    return await db.scalar(
        select(ProductCounters.total_views).where(ProductCounters.product_id == product_id)
    )


async def add_duration_sample(db: AsyncSession, product_id: uuid.UUID, duration: float, now: datetime) -> None:
    """Fold one duration into the online mean: ``avg' = (avg * n + d) / (n + 1)``."""
    table = ProductCounters.__table__
    stmt = dialect_insert(db, ProductCounters).values(
        product_id=product_id,
        total_views=0,
        unique_views=0,
        avg_duration_seconds=duration,
        duration_samples=1,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["product_id"],
        set_={
            "avg_duration_seconds": (
                table.c.avg_duration_seconds * table.c.duration_samples + stmt.excluded.avg_duration_seconds
            ) / (table.c.duration_samples + 1),
            "duration_samples": table.c.duration_samples + 1,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    await db.execute(stmt)
