"""
History Store

Paginated per-user view history served from the user view index.

Listings are pinned to a snapshot: the first page fixes a server time
cutoff, returned as an opaque cursor. Later pages carrying that cursor never
see events recorded after the cutoff, so concurrent views do not shift items
across pages.
"""

import base64
import math
import uuid
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from viewtrack.analytics.schemas import (
    HistoryItem,
    HistoryPage,
    Pagination,
    ProductSummary,
    UserEngagement,
)
from viewtrack.clock import SystemClock
from viewtrack.config.settings import DatabaseSettings
from viewtrack.database.connection import session_scope
from viewtrack.database.models import DeviceType, Product, UserViewIndex, ViewEvent
from viewtrack.errors import BadRequest
from viewtrack.resilience import guarded

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 12
MAX_PAGE_SIZE = 50


_EPOCH = datetime(1970, 1, 1)


def encode_cursor(cutoff: datetime) -> str:
    micros = (cutoff - _EPOCH) // timedelta(microseconds=1)
    return base64.urlsafe_b64encode(str(micros).encode()).decode().rstrip("=")


def decode_cursor(token: str) -> datetime:
    try:
        padded = token + "=" * (-len(token) % 4)
        micros = int(base64.urlsafe_b64decode(padded.encode()).decode())
    except (ValueError, UnicodeDecodeError):
        raise BadRequest("Invalid pagination cursor") from None
    return _EPOCH + timedelta(microseconds=micros)


def product_summary(product: Optional[Product]) -> Optional[ProductSummary]:
    if product is None:
        return None
    return ProductSummary(
        id=product.product_id,
        name=product.name,
        tagline=product.tagline,
        slug=product.slug,
        thumbnail=product.thumbnail,
        gallery=list(product.gallery or []),
        pricing=product.pricing,
        status=product.status,
        maker_name=product.maker_name,
        category_name=product.category_name,
        tags=list(product.tags or []),
    )


def parse_device(device: Optional[str]) -> Optional[DeviceType]:
    if device is None:
        return None
    try:
        return DeviceType(device.lower())
    except ValueError:
        raise BadRequest(f"Unknown device {device!r}", allowed=[d.value for d in DeviceType]) from None


class HistoryService:
    """
    Per-user history and engagement reads.

    Example:
        history = HistoryService(session_factory)
        first = await history.list_user_history("42")
        second = await history.list_user_history("42", page=2, cursor=first.pagination.cursor)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        database: Optional[DatabaseSettings] = None,
        clock=None,
    ):
        self.session_factory = session_factory
        self.database = database or DatabaseSettings()
        self.clock = clock or SystemClock()

    async def list_user_history(
        self,
        user_id: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        product_id: Optional[uuid.UUID] = None,
        device: Optional[str] = None,
        cursor: Optional[str] = None,
    ) -> HistoryPage:
        """
        One page of the user's views, newest first.

        Raises:
            BadRequest: page < 1, limit outside 1..50, bad device or cursor
            Unavailable: store deadline exceeded
        """
        if page < 1:
            raise BadRequest("page must be >= 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise BadRequest(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        device_type = parse_device(device)
        cutoff = decode_cursor(cursor) if cursor else self.clock.now()

        return await guarded(
            self._list(user_id, page, limit, product_id, device_type, cutoff),
            name="history_list",
            timeout=self.database.read_timeout_seconds,
        )

    async def _list(
        self,
        user_id: str,
        page: int,
        limit: int,
        product_id: Optional[uuid.UUID],
        device: Optional[DeviceType],
        cutoff: datetime,
    ) -> HistoryPage:
        conditions = [UserViewIndex.user_id == user_id, UserViewIndex.created_at <= cutoff]
        if product_id is not None:
            conditions.append(UserViewIndex.product_id == product_id)
        if device is not None:
            conditions.append(ViewEvent.device == device)

        base = (
            select(UserViewIndex.event_id)
            .join(ViewEvent, ViewEvent.event_id == UserViewIndex.event_id)
            .where(*conditions)
        )

        async with session_scope(self.session_factory) as db:
            total = await db.scalar(select(func.count()).select_from(base.subquery())) or 0

            rows = (
                await db.execute(
                    select(ViewEvent, Product)
                    .join(UserViewIndex, UserViewIndex.event_id == ViewEvent.event_id)
                    .outerjoin(Product, Product.product_id == ViewEvent.product_id)
                    .where(*conditions)
                    .order_by(UserViewIndex.created_at.desc(), UserViewIndex.event_id.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                )
            ).all()

        items = [
            HistoryItem(
                id=event.event_id,
                created_at=event.created_at,
                duration_seconds=event.duration_seconds,
                device=event.device.value,
                source=event.source.value,
                referrer=event.referrer_host,
                product=product_summary(product),
            )
            for event, product in rows
        ]

        logger.debug("History page served", user_id=user_id, page=page, items=len(items), total=total)
        return HistoryPage(
            data=items,
            pagination=Pagination(
                page=page,
                pages=math.ceil(total / limit),
                total=total,
                limit=limit,
                cursor=encode_cursor(cutoff),
            ),
        )

    async def user_engagement(self, user_id: str, days: int = 30) -> UserEngagement:
        """Views, distinct products, mean duration and top device over ``days``."""
        if not 1 <= days <= 365:
            raise BadRequest("days must be between 1 and 365")
        since = self.clock.now() - timedelta(days=days)

        async def _read() -> UserEngagement:
            conditions = [UserViewIndex.user_id == user_id, UserViewIndex.created_at >= since]
            async with session_scope(self.session_factory) as db:
                views, products, avg_duration = (
                    await db.execute(
                        select(
                            func.count(),
                            func.count(func.distinct(UserViewIndex.product_id)),
                            func.avg(ViewEvent.duration_seconds),
                        )
                        .select_from(UserViewIndex)
                        .join(ViewEvent, ViewEvent.event_id == UserViewIndex.event_id)
                        .where(*conditions)
                    )
                ).one()
                top = (
                    await db.execute(
                        select(ViewEvent.device, func.count().label("views"))
                        .select_from(UserViewIndex)
                        .join(ViewEvent, ViewEvent.event_id == UserViewIndex.event_id)
                        .where(*conditions)
                        .group_by(ViewEvent.device)
                        .order_by(func.count().desc(), ViewEvent.device)
                        .limit(1)
                    )
                ).first()

            return UserEngagement(
                days=days,
                views=views,
                products=products,
                avg_duration=None if avg_duration is None else round(float(avg_duration), 2),
                top_device=top[0].value if top else None,
            )

        return await guarded(_read(), name="user_engagement", timeout=self.database.read_timeout_seconds)
