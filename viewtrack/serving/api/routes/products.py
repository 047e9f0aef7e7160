"""
Products API Endpoints

Per-product view analytics.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response

from viewtrack.pipeline import ViewPipeline
from viewtrack.serving.api.caching import validated_json
from viewtrack.serving.api.deps import get_pipeline

router = APIRouter()


@router.get("/{product_id}/view-stats")
async def get_view_stats(
    request: Request,
    product_id: UUID,
    days: int = Query(30),
    pipeline: ViewPipeline = Depends(get_pipeline),
) -> Response:
    """
    View analytics bundle: totals, daily series, device / source / country
    breakdowns and insights over the last ``days`` UTC days (1-365).
    """
    stats = await pipeline.stats.get_stats(product_id, days=days)
    return validated_json(request, stats)
