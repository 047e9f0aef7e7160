"""
Read-side response models.

Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# =============================================================================
# HISTORY
# =============================================================================

class ProductSummary(CamelModel):
    """Denormalized product fields shown next to a history item"""
    id: UUID
    name: str
    tagline: Optional[str] = None
    slug: str
    thumbnail: Optional[str] = None
    gallery: List[str] = []
    pricing: Optional[Dict[str, Any]] = None
    status: str
    maker_name: Optional[str] = None
    category_name: Optional[str] = None
    tags: List[str] = []


class HistoryItem(CamelModel):
    id: UUID
    created_at: datetime
    duration_seconds: Optional[float] = None
    device: str
    source: str
    referrer: Optional[str] = None
    product: Optional[ProductSummary] = None


class Pagination(CamelModel):
    page: int
    pages: int
    total: int
    limit: int
    cursor: Optional[str] = None


class HistoryPage(CamelModel):
    data: List[HistoryItem]
    pagination: Pagination


class UserEngagement(CamelModel):
    """Viewing activity of one user over a window"""
    days: int
    views: int
    products: int
    avg_duration: Optional[float] = None
    top_device: Optional[str] = None


# =============================================================================
# PRODUCT STATS
# =============================================================================

class Totals(CamelModel):
    total_views: int
    unique_viewers: int
    avg_duration: float


class DailyPoint(CamelModel):
    day: date = Field(alias="date")
    count: int
    unique_count: int


class DeviceShare(CamelModel):
    device: str
    count: int
    unique_count: int
    percentage: float


class SourceShare(CamelModel):
    source: str
    count: int
    percentage: float


class CountryShare(CamelModel):
    country: str
    count: int
    percentage: float


class Insights(CamelModel):
    summary: List[str]
    reliability: str = "high"
    change_percent: Optional[float] = None


class ViewStats(CamelModel):
    """Analytics bundle for one product"""
    product_id: UUID
    days: int
    totals: Totals
    daily_views: List[DailyPoint]
    devices: List[DeviceShare]
    sources: List[SourceShare]
    geography: List[CountryShare]
    insights: Insights


class PopularProduct(CamelModel):
    product_id: UUID
    views: int
    unique_views: int
    product: Optional[ProductSummary] = None


class RelatedProduct(CamelModel):
    """A co-viewed product; ``relation_strength`` counts shared viewers"""
    product_id: UUID
    relation_strength: int
    product: ProductSummary
