"""
Database Models - View Tracking Schema

Raw Log:
- ViewEvent: one row per accepted view start (append-only, duration set once)
- UserViewIndex: per-user history index over authenticated views

Counters and Rollups:
- ProductCounters: lifetime totals per product
- DailyRollup: per-product, per-UTC-day counts
- ViewBreakdown: per-product, per-day counts by device / source / country

Catalog (owned by the product service, read-only here):
- Product: the summary fields denormalized into history items
"""

from datetime import datetime, date
from enum import Enum
from typing import Optional, List
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    Float,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# =============================================================================
# ENUMERATIONS
# =============================================================================

class DeviceType(str, Enum):
    """Device class derived from the User-Agent"""
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"
    OTHER = "other"


class ViewSource(str, Enum):
    """Where a view came from; unrecognized values collapse to OTHER"""
    DIRECT = "direct"
    SEARCH = "search"
    SOCIAL = "social"
    RECOMMENDATION_FEED = "recommendation_feed"
    RECOMMENDATION_SIMILAR = "recommendation_similar"
    OTHER = "other"


class BreakdownDimension(str, Enum):
    """Breakdown axes maintained by the aggregator"""
    DEVICE = "device"
    SOURCE = "source"
    COUNTRY = "country"


UNKNOWN_COUNTRY = "unknown"


def _values(enum_cls):
    return [member.value for member in enum_cls]


# =============================================================================
# CATALOG
# =============================================================================

class Product(Base):
    """
    Product Summary Table

    Written by the product service. The pipeline only checks existence and
    reads the summary fields shown next to history items.
    """
    __tablename__ = "products"

    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    slug: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    tagline: Mapped[Optional[str]] = mapped_column(String(300))
    description: Mapped[Optional[str]] = mapped_column(Text)

    thumbnail: Mapped[Optional[str]] = mapped_column(String(1000))
    gallery: Mapped[Optional[List[str]]] = mapped_column(JSON)  # thumbnail URLs
    pricing: Mapped[Optional[dict]] = mapped_column(JSON)  # {"type": "free" | "paid" | ..., "amount", "currency"}
    status: Mapped[str] = mapped_column(String(30), default="published")

    maker_name: Mapped[Optional[str]] = mapped_column(String(200))
    category_name: Mapped[Optional[str]] = mapped_column(String(200))
    tags: Mapped[Optional[List[str]]] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


# =============================================================================
# RAW LOG
# =============================================================================

class ViewEvent(Base):
    """
    Raw View Event Table

    Grain: one accepted view start. The row is immutable apart from a
    single duration update at end-of-view. ``counters_applied`` and
    ``rolled_up`` make counter and rollup application idempotent per event.
    """
    __tablename__ = "view_events"

    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    # Viewer identity
    user_id: Mapped[Optional[str]] = mapped_column(String(64))
    fingerprint: Mapped[Optional[str]] = mapped_column(String(64))
    viewer_key: Mapped[str] = mapped_column(String(80), nullable=False)  # "u:<id>" or "a:<fingerprint>"

    # Timing
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    client_ts: Mapped[Optional[datetime]] = mapped_column(DateTime)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Context
    device: Mapped[DeviceType] = mapped_column(
        SQLEnum(DeviceType, native_enum=False, values_callable=_values, length=16),
        nullable=False,
    )
    source: Mapped[ViewSource] = mapped_column(
        SQLEnum(ViewSource, native_enum=False, values_callable=_values, length=32),
        nullable=False,
    )
    referrer_host: Mapped[Optional[str]] = mapped_column(String(255))
    country_code: Mapped[Optional[str]] = mapped_column(String(2))

    # Derived
    is_unique: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Application markers
    counters_applied: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    rolled_up: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("ix_view_events_product_created", "product_id", "created_at"),
        Index("ix_view_events_viewer", "product_id", "viewer_key", "created_at"),
        Index("ix_view_events_pending", "rolled_up", "created_at"),
    )


class UserViewIndex(Base):
    """
    User View Index

    Append-only; one row per authenticated view. Primary index for history.
    """
    __tablename__ = "user_view_index"

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("user_id", "event_id", name="pk_user_view_index"),
        Index("ix_user_view_index_user_created", "user_id", "created_at"),
    )


# =============================================================================
# COUNTERS AND ROLLUPS
# =============================================================================

class ProductCounters(Base):
    """
    Product Counters

    Lifetime totals. Incremented by the ingestor, reconciled by the
    aggregator. ``avg_duration_seconds`` is an online mean over the
    ``duration_samples`` events whose duration is known.
    """
    __tablename__ = "product_counters"

    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    total_views: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unique_views: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_duration_seconds: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    duration_samples: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class DailyRollup(Base):
    """
    Daily View Rollup

    Grain: one row per product per UTC day. Live for the current day,
    sealed once the day is older than the seal horizon.
    """
    __tablename__ = "agg_daily_views"

    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    view_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unique_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("product_id", "day", name="pk_agg_daily_views"),
        Index("ix_agg_daily_views_day", "day"),
    )


class ViewBreakdown(Base):
    """
    View Breakdown

    Grain: product x day x dimension x key. Keys are device classes,
    source tags or ISO country codes (``unknown`` when not resolved).
    """
    __tablename__ = "agg_view_breakdowns"

    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    dimension: Mapped[BreakdownDimension] = mapped_column(
        SQLEnum(BreakdownDimension, native_enum=False, values_callable=_values, length=16),
        nullable=False,
    )
    key: Mapped[str] = mapped_column(String(32), nullable=False)
    view_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unique_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("product_id", "day", "dimension", "key", name="pk_agg_view_breakdowns"),
    )
